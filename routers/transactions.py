import logging
from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session, func, select

from database import get_session
from errors import ValidationError
from models import Category, Transaction, TransactionTag, money, utc_today
from permissions import Caller, apply_scope, resolve_owner, scope
from repository import (
    apply_changes,
    category_brief,
    clear_transaction_tags,
    envelope,
    ensure_user_exists,
    find_category_for_owner,
    get_scoped,
    make_page,
    paginate,
    serialize_transaction,
    serialize_transactions,
    set_transaction_tags,
    tags_for_owner,
)
from schemas import TransactionCreate, TransactionUpdate
from security import get_current_user, get_writer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])


def parse_ids(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValidationError("tags must be a comma separated list of ids", raw)


def in_period(statement, start_date: Optional[date], end_date: Optional[date]):
    if start_date:
        statement = statement.where(Transaction.date >= start_date)
    if end_date:
        statement = statement.where(Transaction.date <= end_date)
    return statement


@router.post("", status_code=status.HTTP_201_CREATED)
def create_transaction(
    payload: TransactionCreate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    owner = resolve_owner(caller, payload.target_user_id)
    ensure_user_exists(session, owner)
    category = find_category_for_owner(session, payload.category_id, owner)

    transaction = Transaction(
        user_id=owner,
        category_id=category.id,
        amount=payload.amount,
        type=payload.type,
        description=payload.description,
        date=payload.date or utc_today(),
        payment_method=payload.payment_method,
        is_paid=payload.is_paid,
        notes=payload.notes,
    )
    session.add(transaction)
    session.flush()

    if payload.tags:
        set_transaction_tags(session, transaction.id, tags_for_owner(session, payload.tags, owner))

    session.commit()
    session.refresh(transaction)
    logger.info("Transaction %s created for user %s", transaction.id, owner)
    return serialize_transaction(session, transaction)


@router.get("")
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    type: Optional[Literal["income", "expense"]] = None,
    category_id: Optional[int] = None,
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    is_paid: Optional[bool] = None,
    tags: Optional[str] = None,
    search: Optional[str] = None,
    user_id: Optional[int] = None,
    summary: bool = False,
    by_category: bool = False,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    owner = scope(caller, user_id)

    if summary:
        return transactions_summary(session, owner, start_date, end_date)

    if by_category:
        return transactions_by_category(session, owner, start_date, end_date, type)

    statement = select(Transaction)
    if type:
        statement = statement.where(Transaction.type == type)
    if category_id:
        statement = statement.where(Transaction.category_id == category_id)
    if is_paid is not None:
        statement = statement.where(Transaction.is_paid == is_paid)
    if search:
        statement = statement.where(func.lower(Transaction.description).contains(search.strip().lower()))
    if tags:
        tagged = select(TransactionTag.transaction_id).where(TransactionTag.tag_id.in_(parse_ids(tags)))
        statement = statement.where(Transaction.id.in_(tagged))
    statement = in_period(statement, start_date, end_date)
    statement = apply_scope(statement, Transaction.user_id, owner)
    statement = statement.order_by(Transaction.date.desc(), Transaction.id.desc())

    pager = make_page(page, limit)
    total, rows = paginate(session, statement, pager)
    return envelope(total, pager, serialize_transactions(session, rows))


def transactions_summary(session: Session, owner: Optional[int], start_date=None, end_date=None) -> dict:
    statement = select(Transaction.type, func.sum(Transaction.amount), func.count(Transaction.id)).group_by(
        Transaction.type
    )
    statement = apply_scope(in_period(statement, start_date, end_date), Transaction.user_id, owner)

    summary = {
        "income": {"total": 0, "count": 0},
        "expense": {"total": 0, "count": 0},
        "balance": 0,
    }
    for kind, total, count in session.exec(statement):
        if kind in ("income", "expense"):
            summary[kind] = {"total": money(total or 0), "count": int(count or 0)}

    summary["balance"] = money(summary["income"]["total"]) - money(summary["expense"]["total"])
    return summary


def transactions_by_category(session: Session, owner: Optional[int], start_date=None, end_date=None, kind=None):
    total = func.sum(Transaction.amount)
    statement = (
        select(Category, total, func.count(Transaction.id))
        .join(Transaction, Transaction.category_id == Category.id)
        .group_by(Category.id)
        .order_by(total.desc())
    )
    if kind:
        statement = statement.where(Transaction.type == kind)
    statement = apply_scope(in_period(statement, start_date, end_date), Transaction.user_id, owner)

    return [
        {
            "category_id": category.id,
            "total": round(float(amount or 0), 2),
            "count": count,
            "category": category_brief(category),
        }
        for category, amount, count in session.exec(statement)
    ]


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    transaction = get_scoped(session, Transaction, transaction_id, scope(caller), "Transaction")
    return serialize_transaction(session, transaction)


@router.put("/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    transaction = get_scoped(session, Transaction, transaction_id, scope(caller), "Transaction")
    changes = payload.model_dump(exclude_unset=True)
    tag_ids = changes.pop("tags", None)

    if changes.get("category_id"):
        find_category_for_owner(session, changes["category_id"], transaction.user_id)

    apply_changes(transaction, changes, nullable={"notes"})
    session.add(transaction)

    if tag_ids is not None:
        set_transaction_tags(session, transaction.id, tags_for_owner(session, tag_ids, transaction.user_id))

    session.commit()
    session.refresh(transaction)
    return serialize_transaction(session, transaction)


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_transaction(
    transaction_id: int,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    transaction = get_scoped(session, Transaction, transaction_id, scope(caller), "Transaction")
    clear_transaction_tags(session, transaction.id)
    session.delete(transaction)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
