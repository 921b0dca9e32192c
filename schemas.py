"""
API Schemas

Request bodies are strict: unknown fields are rejected before reaching a handler.
Partial updates use ``model_dump(exclude_unset=True)``.

The audit log lives in MongoDB; ``AuditLog`` is its collection schema.
- AuditLog -> "logs"
"""

import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, condecimal, constr

from permissions import Role

Name = constr(strip_whitespace=True, min_length=1)
HexColor = constr(pattern=r"^#[0-9A-Fa-f]{6}$")
Password = constr(min_length=6)
Amount = condecimal(gt=0, max_digits=10, decimal_places=2)
Saved = condecimal(ge=0, max_digits=10, decimal_places=2)

TransactionType = Literal["income", "expense"]
PaymentMethod = Literal["cash", "credit_card", "debit_card", "transfer", "pix", "other"]
Priority = Literal["low", "medium", "high"]


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ----------------------
# Auth
# ----------------------

class RegisterRequest(StrictModel):
    name: Name
    email: EmailStr
    password: Password


class LoginRequest(StrictModel):
    email: str
    password: str


# ----------------------
# Users
# ----------------------

class UserCreate(StrictModel):
    name: Name
    email: EmailStr
    password: Password
    role: Role = Role.regular
    active: bool = True
    delegate_of: Optional[int] = None


class UserUpdate(StrictModel):
    name: Optional[Name] = None
    email: Optional[EmailStr] = None
    password: Optional[Password] = None
    role: Optional[Role] = None
    active: Optional[bool] = None
    delegate_of: Optional[int] = None


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    active: bool
    delegate_of: Optional[int] = None
    created_at: datetime
    updated_at: datetime


# ----------------------
# Categories & Tags
# ----------------------

class CategoryCreate(StrictModel):
    name: Name
    description: Optional[str] = None
    color: Optional[HexColor] = None
    icon: Optional[str] = None
    target_user_id: Optional[int] = None


class CategoryUpdate(StrictModel):
    name: Optional[Name] = None
    description: Optional[str] = None
    color: Optional[HexColor] = None
    icon: Optional[str] = None


class TagCreate(StrictModel):
    name: Name
    color: Optional[HexColor] = None
    target_user_id: Optional[int] = None


class TagUpdate(StrictModel):
    name: Optional[Name] = None
    color: Optional[HexColor] = None


# ----------------------
# Transactions
# ----------------------

class TransactionCreate(StrictModel):
    amount: Amount
    type: TransactionType
    description: Name
    category_id: int
    date: Optional[dt.date] = None
    payment_method: PaymentMethod = "other"
    is_paid: bool = True
    notes: Optional[str] = None
    tags: Optional[List[int]] = None
    target_user_id: Optional[int] = None


class TransactionUpdate(StrictModel):
    amount: Optional[Amount] = None
    type: Optional[TransactionType] = None
    description: Optional[Name] = None
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    payment_method: Optional[PaymentMethod] = None
    is_paid: Optional[bool] = None
    notes: Optional[str] = None
    tags: Optional[List[int]] = None


# ----------------------
# Goals
# ----------------------

class GoalCreate(StrictModel):
    name: constr(strip_whitespace=True, min_length=1, max_length=100)
    target_amount: Amount
    current_amount: Saved = Decimal(0)
    target_date: Optional[dt.date] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    color: Optional[HexColor] = None
    icon: Optional[str] = None
    priority: Priority = "medium"
    auto_deduct: bool = False
    target_user_id: Optional[int] = None


class GoalUpdate(StrictModel):
    name: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    target_amount: Optional[Amount] = None
    current_amount: Optional[Saved] = None
    target_date: Optional[dt.date] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    color: Optional[HexColor] = None
    icon: Optional[str] = None
    priority: Optional[Priority] = None
    auto_deduct: Optional[bool] = None


class ProgressRequest(StrictModel):
    amount: Amount = Field(description="Amount saved towards the goal")


# ----------------------
# Audit logs
# ----------------------

class LogCreate(StrictModel):
    action: Name
    entity_type: Name
    entity_id: Optional[Union[str, int]] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    target_user_id: Optional[Union[str, int]] = None


class AuditLog(BaseModel):
    """
    Audit log collection schema
    Collection name: "logs"
    """
    log_id: str = Field(..., description="Time + random based identifier")
    user_id: str = Field(..., description="Acting user id, or 'anonymous'")
    action: str = Field(..., description="create, update, delete, add_progress, ...")
    entity_type: str = Field(..., description="user, transaction, category, tag, goal, log, auth")
    entity_id: Optional[str] = Field(None, description="Id of the affected entity")
    old_value: Optional[Any] = Field(None, description="Opaque payload before the change")
    new_value: Optional[Any] = Field(None, description="Opaque payload after the change")
    ip_address: Optional[str] = Field(None, description="Client address")
    user_agent: Optional[str] = Field(None, description="Client User-Agent header")
    created_at: Optional[datetime] = None
