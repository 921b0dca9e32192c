import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import case
from sqlmodel import Session, func, select

from database import get_session
from errors import ConflictError, describe_counts
from models import Category, Goal, Transaction, User
from permissions import Caller, apply_scope, resolve_owner, scope
from repository import (
    apply_changes,
    category_brief,
    envelope,
    ensure_user_exists,
    get_scoped,
    make_page,
    paginate,
    serialize_transactions,
    user_brief,
)
from schemas import CategoryCreate, CategoryUpdate
from security import get_current_user, get_writer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/categories", tags=["categories"])


def with_user(session: Session, category: Category) -> dict:
    data = category.model_dump()
    data["user"] = user_brief(session.get(User, category.user_id))
    return data


def ensure_unique_name(session: Session, name: str, owner: int, exclude_id: Optional[int] = None) -> None:
    statement = select(Category).where(Category.user_id == owner, Category.name == name)
    if exclude_id is not None:
        statement = statement.where(Category.id != exclude_id)
    if session.exec(statement).first():
        raise ConflictError("Category with this name already exists for this user")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_category(
    payload: CategoryCreate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    owner = resolve_owner(caller, payload.target_user_id)
    ensure_user_exists(session, owner)
    ensure_unique_name(session, payload.name, owner)

    category = Category(
        user_id=owner,
        name=payload.name,
        description=payload.description,
        color=payload.color or "#3B82F6",
        icon=payload.icon or "folder",
    )
    session.add(category)
    session.commit()
    session.refresh(category)
    return with_user(session, category)


@router.get("")
def list_categories(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    name: Optional[str] = None,
    color: Optional[str] = None,
    search: Optional[str] = None,
    user_id: Optional[int] = None,
    summary: bool = False,
    with_counts: bool = False,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    owner = scope(caller, user_id)
    pager = make_page(page, limit, default_limit=50)

    if summary:
        return categories_summary(session, owner)

    if with_counts:
        transaction_count = func.count(Transaction.id)
        statement = (
            select(Category, transaction_count, func.coalesce(func.sum(Transaction.amount), 0))
            .outerjoin(Transaction, Transaction.category_id == Category.id)
            .group_by(Category.id)
            .order_by(transaction_count.desc(), Category.name)
        )
        statement = apply_scope(statement, Category.user_id, owner)
        data = []
        for category, count, amount in session.exec(statement):
            item = with_user(session, category)
            item["transaction_count"] = count
            item["total_amount"] = float(amount)
            data.append(item)
        return {"data": data}

    if search:
        term = search.strip().lower()
        statement = (
            select(Category)
            .where(func.lower(Category.name).contains(term))
            .order_by(case((func.lower(Category.name) == term, 0), else_=1), func.length(Category.name), Category.name)
            .limit(pager.limit)
        )
        statement = apply_scope(statement, Category.user_id, owner)
        return {"data": [with_user(session, c) for c in session.exec(statement)], "search_term": search}

    statement = select(Category)
    if name:
        statement = statement.where(func.lower(Category.name).contains(name.lower()))
    if color:
        statement = statement.where(Category.color == color)
    statement = apply_scope(statement, Category.user_id, owner).order_by(Category.name, Category.id)

    total, rows = paginate(session, statement, pager)
    return envelope(total, pager, [with_user(session, c) for c in rows])


def categories_summary(session: Session, owner: Optional[int]) -> dict:
    statement = (
        select(Category.id, func.count(Transaction.id), func.coalesce(func.sum(Transaction.amount), 0))
        .outerjoin(Transaction, Transaction.category_id == Category.id)
        .group_by(Category.id)
    )
    rows = session.exec(apply_scope(statement, Category.user_id, owner)).all()

    used = sum(1 for _, count, _ in rows if count > 0)
    return {
        "total_categories": len(rows),
        "used_categories": used,
        "unused_categories": len(rows) - used,
        "total_transactions": sum(count for _, count, _ in rows),
        "total_amount": float(sum(amount for _, _, amount in rows)),
    }


@router.get("/{category_id}")
def get_category(
    category_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    category = get_scoped(session, Category, category_id, scope(caller), "Category")
    return with_user(session, category)


@router.put("/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    category = get_scoped(session, Category, category_id, scope(caller), "Category")
    changes = payload.model_dump(exclude_unset=True)

    if changes.get("name") and changes["name"] != category.name:
        ensure_unique_name(session, changes["name"], category.user_id, exclude_id=category.id)

    apply_changes(category, changes, nullable={"description"})
    session.add(category)
    session.commit()
    session.refresh(category)
    return with_user(session, category)


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_category(
    category_id: int,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    category = get_scoped(session, Category, category_id, scope(caller), "Category")

    in_use = session.exec(select(func.count(Transaction.id)).where(Transaction.category_id == category.id)).one()
    if in_use > 0:
        raise ConflictError(
            f"Cannot delete category. It is being used by {in_use} transaction(s)",
            describe_counts({"transactions": in_use}),
        )

    for goal in session.exec(select(Goal).where(Goal.category_id == category.id)).all():
        goal.category_id = None
        session.add(goal)
    session.delete(category)
    session.commit()
    logger.info("Category %s deleted by user %s", category_id, caller.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{category_id}/transactions")
def category_transactions(
    category_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    category = get_scoped(session, Category, category_id, scope(caller), "Category")
    pager = make_page(page, limit)

    statement = (
        select(Transaction)
        .where(Transaction.category_id == category.id, Transaction.user_id == category.user_id)
        .order_by(Transaction.date.desc(), Transaction.id.desc())
    )
    total, rows = paginate(session, statement, pager)

    result = envelope(total, pager, serialize_transactions(session, rows), key="transactions")
    return {"category": category_brief(category), **result}
