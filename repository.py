"""
Explicit data access helpers shared by the routers.

Each helper takes the owner predicate computed by ``permissions.scope``.
There are no ORM relationships, so associations are loaded here by hand.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Type

from sqlmodel import Session, SQLModel, func, select

import config
from errors import NotFoundError
from models import Category, Tag, Transaction, TransactionTag, User


@dataclass(frozen=True)
class Page:
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def make_page(page: Optional[int], limit: Optional[int], default_limit: int = config.DEFAULT_PAGE_SIZE) -> Page:
    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    return Page(page=page, limit=min(limit, config.MAX_PAGE_SIZE))


def envelope(total: int, page: Page, data: list, key: str = "data") -> dict:
    return {
        "total": total,
        "page": page.page,
        "totalPages": math.ceil(total / page.limit) if page.limit else 0,
        key: data,
    }


def count(session: Session, statement) -> int:
    return session.exec(select(func.count()).select_from(statement.order_by(None).subquery())).one()


def paginate(session: Session, statement, page: Page):
    """Return ``(total, rows)`` for one page of ``statement``."""
    total = count(session, statement)
    rows = session.exec(statement.offset(page.offset).limit(page.limit)).all()
    return total, rows


def get_scoped(session: Session, model: Type[SQLModel], row_id: int, owner: Optional[int], label: str):
    """Load a row visible to ``owner``; outside scope reads as missing."""
    row = session.get(model, row_id)
    if row is None or (owner is not None and row.user_id != owner):
        raise NotFoundError(f"{label} not found")
    return row


def ensure_user_exists(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("Target user not found")
    return user


def find_category_for_owner(session: Session, category_id: int, owner: int) -> Category:
    category = session.get(Category, category_id)
    if category is None or category.user_id != owner:
        raise NotFoundError("Category not found or access denied")
    return category


def tags_for_owner(session: Session, tag_ids: Iterable[int], owner: int) -> List[Tag]:
    """Tags among ``tag_ids`` owned by ``owner``; other ids are dropped."""
    ids = set(tag_ids)
    if not ids:
        return []
    return session.exec(select(Tag).where(Tag.id.in_(ids), Tag.user_id == owner).order_by(Tag.id)).all()


def clear_transaction_tags(session: Session, transaction_id: int) -> None:
    links = session.exec(select(TransactionTag).where(TransactionTag.transaction_id == transaction_id)).all()
    for link in links:
        session.delete(link)
    session.flush()


def set_transaction_tags(session: Session, transaction_id: int, tags: Iterable[Tag]) -> None:
    clear_transaction_tags(session, transaction_id)
    for tag in tags:
        session.add(TransactionTag(transaction_id=transaction_id, tag_id=tag.id))


def apply_changes(row: SQLModel, changes: Dict, nullable: Iterable[str] = ()) -> SQLModel:
    """Partial merge: None only clears fields listed in ``nullable``."""
    nullable = set(nullable)
    for field, value in changes.items():
        if value is None and field not in nullable:
            continue
        setattr(row, field, value)
    if hasattr(row, "updated_at"):
        row.updated_at = datetime.now(timezone.utc)
    return row


# ----------------------
# Serialization
# ----------------------

def user_brief(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def category_brief(category: Optional[Category]) -> Optional[dict]:
    if category is None:
        return None
    return {"id": category.id, "name": category.name, "color": category.color, "icon": category.icon}


def tag_brief(tag: Tag) -> dict:
    return {"id": tag.id, "name": tag.name, "color": tag.color}


def serialize_transactions(session: Session, transactions: List[Transaction]) -> List[dict]:
    """Transactions with ``user``, ``category`` and ``tags`` loaded in bulk."""
    if not transactions:
        return []
    ids = [t.id for t in transactions]
    links = session.exec(
        select(TransactionTag.transaction_id, Tag)
        .join(Tag, Tag.id == TransactionTag.tag_id)
        .where(TransactionTag.transaction_id.in_(ids))
        .order_by(Tag.id)
    ).all()
    tags_by_tx: Dict[int, List[dict]] = {}
    for tx_id, tag in links:
        tags_by_tx.setdefault(tx_id, []).append(tag_brief(tag))

    users = {u.id: u for u in session.exec(select(User).where(User.id.in_({t.user_id for t in transactions})))}
    categories = {
        c.id: c for c in session.exec(select(Category).where(Category.id.in_({t.category_id for t in transactions})))
    }

    result = []
    for tx in transactions:
        data = tx.model_dump()
        data["user"] = user_brief(users.get(tx.user_id))
        data["category"] = category_brief(categories.get(tx.category_id))
        data["tags"] = tags_by_tx.get(tx.id, [])
        result.append(data)
    return result


def serialize_transaction(session: Session, transaction: Transaction) -> dict:
    return serialize_transactions(session, [transaction])[0]
