"""Derived goal fields. Computed on read, never stored."""

import math
from datetime import datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from models import Goal, money

MILESTONE_PERCENTAGES = (25, 50, 75, 100)
SECONDS_PER_DAY = 86400


def progress_percentage(current, target) -> int:
    current, target = money(current), money(target)
    if target <= 0:
        return 0
    # half-up, not banker's rounding
    return min(100, int((current / target * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)))


def remaining_amount(current, target) -> Decimal:
    return max(Decimal(0), money(target) - money(current))


def days_remaining(target_date, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days until midnight UTC of ``target_date``, rounded up."""
    if target_date is None:
        return None
    now = now or datetime.now(timezone.utc)
    deadline = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
    return math.ceil((deadline - now).total_seconds() / SECONDS_PER_DAY)


def with_progress(goal: Goal, now: Optional[datetime] = None) -> dict:
    data = goal.model_dump()
    data["progress_percentage"] = progress_percentage(goal.current_amount, goal.target_amount)
    data["remaining_amount"] = remaining_amount(goal.current_amount, goal.target_amount)

    days = days_remaining(goal.target_date, now)
    data["days_remaining"] = days
    if days is None:
        data["is_overdue"] = False
        data["required_daily_savings"] = 0
    else:
        data["is_overdue"] = days < 0 and not goal.is_completed
        if days > 0 and not goal.is_completed:
            data["required_daily_savings"] = data["remaining_amount"] / days
        else:
            data["required_daily_savings"] = 0
    return data


def milestones(current, target) -> List[dict]:
    current, target = money(current), money(target)
    return [
        {
            "percentage": pct,
            "amount": target * pct / 100,
            "achieved": current >= target * pct / 100,
        }
        for pct in MILESTONE_PERCENTAGES
    ]


def next_milestone(items: List[dict]) -> Optional[dict]:
    return next((m for m in items if not m["achieved"]), None)
