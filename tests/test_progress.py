"""
Tests for derived goal fields.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

from models import Goal
from progress import (
    days_remaining,
    milestones,
    next_milestone,
    progress_percentage,
    remaining_amount,
    with_progress,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestPercentage:

    def test_quarter(self):
        assert progress_percentage(1250, 5000) == 25

    def test_rounds_half_up(self):
        assert progress_percentage(1, 8) == 13
        assert progress_percentage(5, 200) == 3

    def test_capped_at_100(self):
        assert progress_percentage(7000, 5000) == 100

    def test_zero_target(self):
        assert progress_percentage(10, 0) == 0


class TestRemaining:

    def test_remaining(self):
        assert remaining_amount(1250, 5000) == 3750

    def test_never_negative(self):
        assert remaining_amount(6000, 5000) == 0


class TestDaysRemaining:

    def test_no_target_date(self):
        assert days_remaining(None, NOW) is None

    def test_partial_day_rounds_up(self):
        # 12h until midnight Jan 2
        assert days_remaining(date(2024, 1, 2), NOW) == 1

    def test_ten_days(self):
        assert days_remaining(date(2024, 1, 11), NOW) == 10

    def test_past_date_is_negative(self):
        assert days_remaining(date(2023, 12, 31), NOW) == -1


class TestWithProgress:

    def goal(self, **fields):
        values = dict(id=1, user_id=1, name="Trip", target_amount=5000, current_amount=1250)
        values.update(fields)
        return Goal(**values)

    def test_active_goal(self):
        data = with_progress(self.goal(target_date=date(2024, 1, 11)), NOW)
        assert data["progress_percentage"] == 25
        assert data["remaining_amount"] == 3750
        assert data["days_remaining"] == 10
        assert data["is_overdue"] is False
        assert data["required_daily_savings"] == 375

    def test_overdue_goal(self):
        data = with_progress(self.goal(target_date=date(2023, 12, 1)), NOW)
        assert data["is_overdue"] is True
        assert data["required_daily_savings"] == 0

    def test_completed_goal_is_never_overdue(self):
        data = with_progress(self.goal(target_date=date(2023, 12, 1), current_amount=5000, is_completed=True), NOW)
        assert data["is_overdue"] is False
        assert data["remaining_amount"] == 0

    def test_no_target_date(self):
        data = with_progress(self.goal(), NOW)
        assert data["days_remaining"] is None
        assert data["is_overdue"] is False
        assert data["required_daily_savings"] == 0


class TestMilestones:

    def test_quarter_reached(self):
        items = milestones(1250, 5000)
        assert [m["percentage"] for m in items] == [25, 50, 75, 100]
        assert [m["achieved"] for m in items] == [True, False, False, False]
        assert next_milestone(items) == {"percentage": 50, "amount": 2500, "achieved": False}

    def test_all_reached(self):
        assert next_milestone(milestones(5000, 5000)) is None

    def test_none_reached(self):
        assert next_milestone(milestones(0, 5000))["percentage"] == 25


class TestFractionalAmounts:

    def test_exact_cents(self):
        current = Decimal("0.7") + Decimal("0.1")
        assert progress_percentage(current, Decimal("0.8")) == 100
        assert remaining_amount(current, Decimal("0.8")) == 0

    def test_float_literals_are_read_as_written(self):
        assert remaining_amount(0.7, 0.8) == Decimal("0.1")
        assert progress_percentage(0.8, 0.8) == 100

    def test_goal_reached_by_dimes(self):
        saved = sum((Decimal("0.1") for _ in range(10)), Decimal(0))
        data = with_progress(Goal(id=2, user_id=1, name="Jar", target_amount=Decimal("1.00"), current_amount=saved), NOW)
        assert data["progress_percentage"] == 100
        assert data["remaining_amount"] == 0
