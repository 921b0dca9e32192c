import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import case, or_
from sqlmodel import Session, func, select

from database import get_session
from errors import ConflictError, ValidationError
from models import Goal, utc_today
from permissions import Caller, apply_scope, resolve_owner, scope
from progress import milestones, next_milestone, progress_percentage, with_progress
from repository import (
    apply_changes,
    envelope,
    ensure_user_exists,
    find_category_for_owner,
    get_scoped,
    make_page,
    paginate,
)
from schemas import GoalCreate, GoalUpdate, ProgressRequest
from security import get_current_user, get_writer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/goals", tags=["goals"])

PRIORITY_RANK = case((Goal.priority == "high", 0), (Goal.priority == "medium", 1), else_=2)


def ensure_future(target_date: Optional[date]) -> None:
    if target_date is not None and target_date <= utc_today():
        raise ValidationError("Target date must be in the future")


def ensure_unique_name(session: Session, name: str, owner: int, exclude_id: Optional[int] = None) -> None:
    statement = select(Goal).where(Goal.user_id == owner, Goal.name == name)
    if exclude_id is not None:
        statement = statement.where(Goal.id != exclude_id)
    if session.exec(statement).first():
        raise ConflictError("Goal with this name already exists for this user")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_goal(
    payload: GoalCreate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    owner = resolve_owner(caller, payload.target_user_id)
    ensure_user_exists(session, owner)
    ensure_future(payload.target_date)
    if payload.category_id is not None:
        find_category_for_owner(session, payload.category_id, owner)
    ensure_unique_name(session, payload.name, owner)

    goal = Goal(
        user_id=owner,
        **payload.model_dump(exclude={"target_user_id", "color"}, exclude_none=True),
        color=payload.color or "#3b82f6",
        is_completed=payload.current_amount >= payload.target_amount,
    )
    session.add(goal)
    session.commit()
    session.refresh(goal)
    logger.info("Goal %s created for user %s", goal.id, owner)
    return with_progress(goal)


@router.get("")
def list_goals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    priority: Optional[Literal["low", "medium", "high"]] = None,
    is_completed: Optional[bool] = None,
    category_id: Optional[int] = None,
    status_filter: Optional[Literal["active", "completed", "overdue"]] = Query(None, alias="status"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    user_id: Optional[int] = None,
    summary: bool = False,
    progress: bool = False,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    owner = scope(caller, user_id)
    pager = make_page(page, limit)

    if summary:
        return goals_summary(session, owner)

    if progress:
        statement = apply_scope(select(Goal), Goal.user_id, owner).order_by(Goal.current_amount.desc())
        return {"data": [with_progress(g) for g in session.exec(statement)]}

    if search:
        term = search.strip().lower()
        statement = (
            select(Goal)
            .where(or_(func.lower(Goal.name).contains(term), func.lower(Goal.description).contains(term)))
            .order_by(case((func.lower(Goal.name) == term, 0), else_=1), Goal.name)
            .limit(pager.limit)
        )
        statement = apply_scope(statement, Goal.user_id, owner)
        return {"data": [with_progress(g) for g in session.exec(statement)], "search_term": search}

    statement = select(Goal)
    if priority:
        statement = statement.where(Goal.priority == priority)
    if is_completed is not None:
        statement = statement.where(Goal.is_completed == is_completed)
    if category_id:
        statement = statement.where(Goal.category_id == category_id)
    if status_filter == "active":
        statement = statement.where(Goal.is_completed == False)  # noqa: E712
    elif status_filter == "completed":
        statement = statement.where(Goal.is_completed == True)  # noqa: E712
    elif status_filter == "overdue":
        statement = statement.where(Goal.is_completed == False, Goal.target_date < utc_today())  # noqa: E712
    if start_date:
        statement = statement.where(Goal.target_date >= start_date)
    if end_date:
        statement = statement.where(Goal.target_date <= end_date)

    statement = apply_scope(statement, Goal.user_id, owner).order_by(
        Goal.is_completed, PRIORITY_RANK, Goal.target_date, Goal.created_at.desc(), Goal.id.desc()
    )
    total, rows = paginate(session, statement, pager)
    return envelope(total, pager, [with_progress(g) for g in rows])


def goals_summary(session: Session, owner: Optional[int]) -> dict:
    goals = [with_progress(g) for g in session.exec(apply_scope(select(Goal), Goal.user_id, owner))]

    total = len(goals)
    completed = sum(1 for g in goals if g["is_completed"])
    overdue = sum(1 for g in goals if g["is_overdue"])
    total_target = sum(g["target_amount"] for g in goals)
    total_saved = sum(g["current_amount"] for g in goals)

    by_priority = {}
    for level in ("high", "medium", "low"):
        bucket = [g for g in goals if g["priority"] == level]
        by_priority[level] = {
            "count": len(bucket),
            "completed": sum(1 for g in bucket if g["is_completed"]),
        }

    return {
        "overview": {
            "total_goals": total,
            "completed_goals": completed,
            "active_goals": total - completed,
            "overdue_goals": overdue,
            "completion_rate": round(completed / total * 100) if total else 0,
        },
        "financial": {
            "total_target": round(total_target, 2),
            "total_saved": round(total_saved, 2),
            "total_remaining": round(max(Decimal(0), total_target - total_saved), 2),
            "overall_progress": progress_percentage(total_saved, total_target),
        },
        "by_priority": by_priority,
    }


@router.get("/{goal_id}")
def get_goal(
    goal_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return with_progress(get_scoped(session, Goal, goal_id, scope(caller), "Goal"))


@router.put("/{goal_id}")
def update_goal(
    goal_id: int,
    payload: GoalUpdate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    goal = get_scoped(session, Goal, goal_id, scope(caller), "Goal")
    changes = payload.model_dump(exclude_unset=True)

    if changes.get("target_date") and changes["target_date"] != goal.target_date:
        ensure_future(changes["target_date"])
    if changes.get("category_id"):
        find_category_for_owner(session, changes["category_id"], goal.user_id)
    if changes.get("name") and changes["name"] != goal.name:
        ensure_unique_name(session, changes["name"], goal.user_id, exclude_id=goal.id)

    apply_changes(goal, changes, nullable={"target_date", "category_id", "description", "icon"})
    # completion never reverts
    goal.is_completed = goal.is_completed or goal.current_amount >= goal.target_amount
    session.add(goal)
    session.commit()
    session.refresh(goal)
    return with_progress(goal)


@router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_goal(
    goal_id: int,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    goal = get_scoped(session, Goal, goal_id, scope(caller), "Goal")
    session.delete(goal)
    session.commit()
    logger.info("Goal %s deleted by user %s", goal_id, caller.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{goal_id}/progress")
def add_progress(
    goal_id: int,
    payload: ProgressRequest,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    goal = get_scoped(session, Goal, goal_id, scope(caller), "Goal")
    if goal.is_completed:
        raise ValidationError("Goal is already completed")

    goal.current_amount = goal.current_amount + payload.amount
    goal.is_completed = goal.current_amount >= goal.target_amount
    goal.updated_at = datetime.now(timezone.utc)
    session.add(goal)
    session.commit()
    session.refresh(goal)

    if goal.is_completed:
        logger.info("Goal %s completed", goal.id)
        message = "Congratulations! Goal completed!"
    else:
        message = "Progress added successfully"
    return {"goal": with_progress(goal), "message": message, "progress_added": payload.amount}


@router.get("/{goal_id}/progress")
def get_progress(
    goal_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    goal = get_scoped(session, Goal, goal_id, scope(caller), "Goal")
    items = milestones(goal.current_amount, goal.target_amount)
    return {"goal": with_progress(goal), "milestones": items, "next_milestone": next_milestone(items)}
