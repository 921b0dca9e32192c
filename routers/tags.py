import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import case
from sqlmodel import Session, func, select

from database import get_session
from errors import ConflictError, describe_counts
from models import Tag, Transaction, TransactionTag
from permissions import Caller, apply_scope, resolve_owner, scope
from repository import (
    apply_changes,
    envelope,
    ensure_user_exists,
    get_scoped,
    make_page,
    paginate,
    serialize_transactions,
    tag_brief,
)
from schemas import TagCreate, TagUpdate
from security import get_current_user, get_writer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tags", tags=["tags"])


def ensure_unique_name(session: Session, name: str, owner: int, exclude_id: Optional[int] = None) -> None:
    statement = select(Tag).where(Tag.user_id == owner, Tag.name == name)
    if exclude_id is not None:
        statement = statement.where(Tag.id != exclude_id)
    if session.exec(statement).first():
        raise ConflictError("Tag with this name already exists for this user")


def tagged_transactions(tag: Tag):
    return (
        select(Transaction)
        .join(TransactionTag, TransactionTag.transaction_id == Transaction.id)
        .where(TransactionTag.tag_id == tag.id, Transaction.user_id == tag.user_id)
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_tag(
    payload: TagCreate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    owner = resolve_owner(caller, payload.target_user_id)
    ensure_user_exists(session, owner)
    name = payload.name.lower()
    ensure_unique_name(session, name, owner)

    tag = Tag(user_id=owner, name=name, color=payload.color or "#6B7280")
    session.add(tag)
    session.commit()
    session.refresh(tag)
    return tag


@router.get("")
def list_tags(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    name: Optional[str] = None,
    color: Optional[str] = None,
    search: Optional[str] = None,
    popular: bool = False,
    stats: bool = False,
    user_id: Optional[int] = None,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    owner = scope(caller, user_id)
    pager = make_page(page, limit, default_limit=50)

    if search:
        term = search.strip().lower()
        statement = (
            select(Tag)
            .where(Tag.name.contains(term))
            .order_by(case((Tag.name == term, 0), else_=1), func.length(Tag.name), Tag.name)
            .limit(pager.limit)
        )
        statement = apply_scope(statement, Tag.user_id, owner)
        return {"data": session.exec(statement).all(), "search_term": search}

    if popular or stats:
        usage = func.count(TransactionTag.transaction_id)
        statement = select(Tag, usage).group_by(Tag.id)
        if popular:
            statement = statement.join(TransactionTag, TransactionTag.tag_id == Tag.id)
            statement = statement.order_by(usage.desc(), Tag.name).limit(pager.limit)
        else:
            statement = statement.outerjoin(TransactionTag, TransactionTag.tag_id == Tag.id)
            statement = statement.order_by(usage.desc(), Tag.name)
        statement = apply_scope(statement, Tag.user_id, owner)
        data = []
        for tag, count in session.exec(statement):
            item = tag.model_dump()
            item["usage_count"] = count
            data.append(item)
        return {"data": data}

    statement = select(Tag)
    if name:
        statement = statement.where(Tag.name.contains(name.lower()))
    if color:
        statement = statement.where(Tag.color == color)
    statement = apply_scope(statement, Tag.user_id, owner).order_by(Tag.name, Tag.id)

    total, rows = paginate(session, statement, pager)
    return envelope(total, pager, rows)


@router.get("/{tag_id}")
def get_tag(
    tag_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    return get_scoped(session, Tag, tag_id, scope(caller), "Tag")


@router.put("/{tag_id}")
def update_tag(
    tag_id: int,
    payload: TagUpdate,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    tag = get_scoped(session, Tag, tag_id, scope(caller), "Tag")
    changes = payload.model_dump(exclude_unset=True)

    if changes.get("name"):
        changes["name"] = changes["name"].lower()
        if changes["name"] != tag.name:
            ensure_unique_name(session, changes["name"], tag.user_id, exclude_id=tag.id)

    apply_changes(tag, changes)
    session.add(tag)
    session.commit()
    session.refresh(tag)
    return tag


@router.delete("/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tag(
    tag_id: int,
    caller: Caller = Depends(get_writer),
    session: Session = Depends(get_session),
):
    tag = get_scoped(session, Tag, tag_id, scope(caller), "Tag")

    in_use = session.exec(
        select(func.count(TransactionTag.transaction_id)).where(TransactionTag.tag_id == tag.id)
    ).one()
    if in_use > 0:
        raise ConflictError(
            f"Cannot delete tag. It is being used by {in_use} transaction(s)",
            describe_counts({"transactions": in_use}),
        )

    session.delete(tag)
    session.commit()
    logger.info("Tag %s deleted by user %s", tag_id, caller.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{tag_id}/stats")
def tag_stats(
    tag_id: int,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    tag = get_scoped(session, Tag, tag_id, scope(caller), "Tag")
    transactions = session.exec(
        tagged_transactions(tag).order_by(Transaction.date.desc(), Transaction.id.desc())
    ).all()

    return {
        "tag": tag_brief(tag),
        "usage_count": len(transactions),
        "total_amount": round(sum(t.amount for t in transactions), 2),
        "income_count": sum(1 for t in transactions if t.type == "income"),
        "expense_count": sum(1 for t in transactions if t.type == "expense"),
        "recent_transactions": [
            {"id": t.id, "amount": t.amount, "type": t.type, "date": t.date} for t in transactions[:5]
        ],
    }


@router.get("/{tag_id}/transactions")
def tag_transactions(
    tag_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    tag = get_scoped(session, Tag, tag_id, scope(caller), "Tag")
    pager = make_page(page, limit)

    statement = tagged_transactions(tag).order_by(Transaction.date.desc(), Transaction.id.desc())
    total, rows = paginate(session, statement, pager)

    result = envelope(total, pager, serialize_transactions(session, rows), key="transactions")
    return {"tag": tag_brief(tag), **result}
