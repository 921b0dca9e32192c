import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> dt.date:
    return utcnow().date()


def money(value) -> Decimal:
    """Exact amount from a column, payload or literal; floats go through ``str``."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: str = Field(default="regular", index=True)  # "regular", "admin" or "viewer"
    active: bool = True
    # viewer accounts only: whose data they may read
    delegate_of: Optional[int] = Field(default=None, foreign_key="users.id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Category(SQLModel, table=True):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    name: str
    description: Optional[str] = None
    color: str = "#3B82F6"
    icon: str = "folder"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    name: str  # stored lower-cased
    color: str = "#6B7280"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Transaction(SQLModel, table=True):
    __tablename__ = "transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    category_id: int = Field(foreign_key="categories.id", index=True)
    amount: Decimal = Field(max_digits=10, decimal_places=2)
    type: str  # "income" or "expense"
    description: str
    date: dt.date = Field(default_factory=utc_today, index=True)
    payment_method: str = "other"
    is_paid: bool = True
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TransactionTag(SQLModel, table=True):
    __tablename__ = "transaction_tags"

    transaction_id: int = Field(foreign_key="transactions.id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True, index=True)


class Goal(SQLModel, table=True):
    __tablename__ = "goals"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    name: str
    target_amount: Decimal = Field(max_digits=10, decimal_places=2)
    current_amount: Decimal = Field(default=Decimal(0), max_digits=10, decimal_places=2)
    target_date: Optional[dt.date] = None
    category_id: Optional[int] = Field(default=None, foreign_key="categories.id")
    description: Optional[str] = None
    color: str = "#3b82f6"
    icon: Optional[str] = None
    priority: str = "medium"  # "low", "medium" or "high"
    is_completed: bool = False
    auto_deduct: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
