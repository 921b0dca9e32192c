import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import case, or_
from sqlmodel import Session, func, select

from database import get_session
from errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    describe_counts,
)
from models import Category, Goal, Tag, Transaction, User
from permissions import Caller, Role, require_admin, resolve_user_id
from repository import apply_changes, envelope, make_page, paginate
from schemas import UserCreate, UserOut, UserUpdate
from security import get_current_user, get_user_by_email, hash_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def public(user: User) -> dict:
    return UserOut.model_validate(user, from_attributes=True).model_dump(mode="json")


def check_delegate(session: Session, delegate_id: Optional[int], viewer_id: Optional[int] = None) -> int:
    """A viewer's delegate must be an existing, non-viewer account."""
    if delegate_id is None:
        raise ValidationError("delegate_of is required for viewer accounts")
    if viewer_id is not None and delegate_id == viewer_id:
        raise ValidationError("A viewer cannot be delegated to itself")
    delegate = session.get(User, delegate_id)
    if delegate is None:
        raise ValidationError("Specified delegate user does not exist", f"delegate_of: {delegate_id}")
    if delegate.role == Role.viewer.value:
        raise ValidationError("Viewer accounts cannot be delegated to", f"delegate_of: {delegate_id}")
    return delegate_id


def scalar(session: Session, statement) -> float:
    return session.exec(statement).one() or 0


def ownership_counts(session: Session, user_id: int) -> dict:
    counts = {
        "transactions": scalar(session, select(func.count(Transaction.id)).where(Transaction.user_id == user_id)),
        "categories": scalar(session, select(func.count(Category.id)).where(Category.user_id == user_id)),
        "goals": scalar(session, select(func.count(Goal.id)).where(Goal.user_id == user_id)),
        "viewers": scalar(session, select(func.count(User.id)).where(User.delegate_of == user_id)),
    }
    counts["total"] = sum(counts.values())
    return counts


# ----------------------
# CRUD
# ----------------------

@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if caller.is_viewer:
        raise AuthorizationError("Viewer accounts cannot create other users")

    role = payload.role
    if not caller.is_admin:
        if role is not Role.viewer:
            raise AuthorizationError(
                "Regular users can only create viewer accounts",
                {"allowed_roles": [Role.viewer.value], "requested_role": role.value},
            )
        if payload.delegate_of is not None and payload.delegate_of != caller.id:
            raise AuthorizationError(
                "You can only create viewers for your own account",
                {"your_user_id": caller.id, "requested_delegate_of": payload.delegate_of},
            )

    email = payload.email.strip().lower()
    if get_user_by_email(session, email):
        raise ConflictError("Email already exists")

    delegate_of = None
    if role is Role.viewer:
        delegate_of = check_delegate(session, payload.delegate_of) if caller.is_admin else caller.id

    user = User(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role=role.value,
        active=payload.active,
        delegate_of=delegate_of,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("User %s created user %s (%s)", caller.id, user.id, user.role)

    data = public(user)
    data["created_by"] = {"id": caller.id, "role": caller.role.value}
    return data


@router.get("")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    role: Optional[Role] = None,
    active: Optional[bool] = None,
    search: Optional[str] = None,
    summary: bool = False,
    with_stats: bool = False,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    require_admin(caller, "Only administrators can list all users")
    pager = make_page(page, limit)

    if summary:
        return users_summary(session)

    if with_stats:
        total, users = paginate(session, select(User).order_by(User.created_at.desc(), User.id.desc()), pager)
        data = []
        for user in users:
            item = public(user)
            item["stats"] = {
                "transactions": scalar(session, select(func.count(Transaction.id)).where(Transaction.user_id == user.id)),
                "goals": scalar(session, select(func.count(Goal.id)).where(Goal.user_id == user.id)),
                "completed_goals": scalar(
                    session, select(func.count(Goal.id)).where(Goal.user_id == user.id, Goal.is_completed == True)  # noqa: E712
                ),
            }
            data.append(item)
        return envelope(total, pager, data)

    if search:
        term = search.strip().lower()
        statement = (
            select(User)
            .where(or_(func.lower(User.name).contains(term), func.lower(User.email).contains(term)))
            .order_by(
                case((func.lower(User.name) == term, 0), else_=1),
                case((func.lower(User.email) == term, 0), else_=1),
                User.name,
            )
            .limit(pager.limit)
        )
        return {"data": [public(u) for u in session.exec(statement)], "search_term": search}

    statement = select(User)
    if role is not None:
        statement = statement.where(User.role == role.value)
    if active is not None:
        statement = statement.where(User.active == active)
    statement = statement.order_by(User.active.desc(), User.role, User.created_at.desc(), User.id.desc())

    total, users = paginate(session, statement, pager)
    return envelope(total, pager, [public(u) for u in users])


def users_summary(session: Session) -> dict:
    total = scalar(session, select(func.count(User.id)))
    active = scalar(session, select(func.count(User.id)).where(User.active == True))  # noqa: E712
    by_role = {
        r.value: scalar(session, select(func.count(User.id)).where(User.role == r.value)) for r in Role
    }
    since = datetime.now(timezone.utc) - timedelta(days=30)
    recent = scalar(session, select(func.count(User.id)).where(User.created_at >= since))
    return {
        "overview": {
            "total_users": total,
            "active_users": active,
            "inactive_users": total - active,
            "activation_rate": round(active / total * 100) if total else 0,
        },
        "by_role": by_role,
        "recent_activity": {"registrations_last_30_days": recent},
    }


@router.get("/{user_id}")
def get_user(
    user_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    target = resolve_user_id(caller, user_id)
    # viewers may also read the profile they are delegated to
    if not caller.is_admin and target not in (caller.id, caller.scope_owner):
        raise NotFoundError("User not found")

    user = session.get(User, target)
    if user is None:
        raise NotFoundError("User not found")
    return public(user)


@router.put("/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    target = resolve_user_id(caller, user_id)
    if not caller.is_admin and target != caller.id:
        raise AuthorizationError("You can only update your own account")

    user = session.get(User, target)
    if user is None:
        raise NotFoundError("User not found")

    allowed = {"name", "email", "password"}
    if caller.is_admin:
        allowed |= {"role", "active", "delegate_of"}
    changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if k in allowed}

    if changes.get("email"):
        changes["email"] = changes["email"].strip().lower()
        if changes["email"] != user.email:
            conflict = get_user_by_email(session, changes["email"])
            if conflict and conflict.id != user.id:
                raise ConflictError("Email already exists")

    if changes.get("password"):
        changes["password_hash"] = hash_password(changes.pop("password"))
    else:
        changes.pop("password", None)

    if "role" in changes or "delegate_of" in changes:
        role = changes.get("role") or Role(user.role)
        changes["role"] = role.value
        if role is Role.viewer:
            if scalar(session, select(func.count(User.id)).where(User.delegate_of == user.id)):
                raise ConflictError("Cannot turn a user with delegated viewers into a viewer")
            delegate = changes["delegate_of"] if "delegate_of" in changes else user.delegate_of
            changes["delegate_of"] = check_delegate(session, delegate, viewer_id=user.id)
        else:
            changes["delegate_of"] = None

    apply_changes(user, changes, nullable={"delegate_of"})
    session.add(user)
    session.commit()
    session.refresh(user)
    return public(user)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    target = resolve_user_id(caller, user_id)
    # self-deletion is the one write a viewer may make
    if not caller.is_admin and target != caller.id:
        raise AuthorizationError("You can only delete your own account")

    user = session.get(User, target)
    if user is None:
        raise NotFoundError("User not found")

    blockers = ownership_counts(session, user.id)
    if blockers.pop("total") > 0:
        raise ConflictError("Cannot delete user with existing data", describe_counts(blockers))

    for tag in session.exec(select(Tag).where(Tag.user_id == user.id)).all():
        session.delete(tag)
    session.delete(user)
    session.commit()
    logger.info("User %s deleted user %s", caller.id, target)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------
# Actions & sub-resources
# ----------------------

def set_active(session: Session, caller: Caller, user_id: str, active: bool) -> dict:
    verb = "activate" if active else "deactivate"
    require_admin(caller, f"Only administrators can {verb} users")
    target = resolve_user_id(caller, user_id)
    if not active and target == caller.id:
        raise ValidationError("Cannot deactivate your own account")

    user = session.get(User, target)
    if user is None:
        raise NotFoundError("User not found")
    if user.active == active:
        raise ValidationError(f"User is already {'active' if active else 'deactivated'}")

    apply_changes(user, {"active": active})
    session.add(user)
    session.commit()
    session.refresh(user)

    data = public(user)
    data["message"] = f"User {verb}d successfully"
    return data


@router.post("/{user_id}/activate")
def activate_user(
    user_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return set_active(session, caller, user_id, True)


@router.post("/{user_id}/deactivate")
def deactivate_user(
    user_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return set_active(session, caller, user_id, False)


@router.get("/{user_id}/stats")
def user_stats(
    user_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    target = resolve_user_id(caller, user_id)

    if caller.is_viewer:
        viewable = caller.scope_owner
        if user_id == "me" or target == caller.id:
            target = viewable
        elif target != viewable:
            raise AuthorizationError(
                "Viewer can only access their assigned user's statistics",
                {"your_delegate_of": viewable, "requested_user_id": target},
            )
    elif not caller.is_admin and target != caller.id:
        raise NotFoundError("User not found")

    user = session.get(User, target)
    if user is None:
        raise NotFoundError("User not found")

    def total(kind: str) -> float:
        return float(
            scalar(
                session,
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.user_id == user.id, Transaction.type == kind
                ),
            )
        )

    income = total("income")
    expenses = total("expense")
    goals = scalar(session, select(func.count(Goal.id)).where(Goal.user_id == user.id))
    completed = scalar(
        session, select(func.count(Goal.id)).where(Goal.user_id == user.id, Goal.is_completed == True)  # noqa: E712
    )

    stats = {
        "user": {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "active": user.active,
            "member_since": user.created_at,
        },
        "financial": {
            "total_transactions": scalar(
                session, select(func.count(Transaction.id)).where(Transaction.user_id == user.id)
            ),
            "total_income": income,
            "total_expenses": expenses,
            "net_balance": income - expenses,
        },
        "organization": {
            "total_categories": scalar(session, select(func.count(Category.id)).where(Category.user_id == user.id)),
        },
        "goals": {
            "total_goals": goals,
            "completed_goals": completed,
            "completion_rate": round(completed / goals * 100) if goals else 0,
        },
    }
    if caller.is_viewer:
        stats["viewer_context"] = {
            "viewer_id": caller.id,
            "viewing_user_id": user.id,
            "is_viewing_assigned_user": True,
        }
    return stats
