"""
Row scoping by role.

Every list/read/update/delete query on a domain resource goes through
``scope`` + ``apply_scope``. Non-admin callers cannot widen their scope by
putting another id in a path, query string or body.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from errors import AuthorizationError, ValidationError


class Role(str, Enum):
    regular = "regular"
    admin = "admin"
    viewer = "viewer"


@dataclass(frozen=True)
class Caller:
    """Identity of the authenticated caller, passed explicitly to handlers."""

    id: int
    role: Role
    delegate_of: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.admin

    @property
    def is_viewer(self) -> bool:
        return self.role is Role.viewer

    @property
    def scope_owner(self) -> int:
        if self.is_viewer and self.delegate_of is not None:
            return self.delegate_of
        return self.id


def scope(caller: Caller, requested_user_id: Optional[int] = None) -> Optional[int]:
    """Owner id a query must be restricted to, or None for unrestricted access."""
    if caller.is_admin:
        return requested_user_id
    return caller.scope_owner


def apply_scope(statement, column, owner: Optional[int]):
    if owner is None:
        return statement
    return statement.where(column == owner)


def require_writer(caller: Caller) -> Caller:
    if caller.is_viewer:
        raise AuthorizationError(
            "Viewer accounts have read-only access. Contact an administrator for write permissions."
        )
    return caller


def require_admin(caller: Caller, message: str = "Administrator access required") -> Caller:
    if not caller.is_admin:
        raise AuthorizationError(message)
    return caller


def resolve_owner(caller: Caller, target_user_id: Optional[int] = None) -> int:
    """Owner of a row being created: admins may pick one, everyone else owns it."""
    require_writer(caller)
    if caller.is_admin and target_user_id:
        return target_user_id
    return caller.id


def resolve_user_id(caller: Caller, raw: Union[str, int]) -> int:
    """Turn a ``{id}`` path segment into a user id; ``me`` is the caller."""
    if isinstance(raw, int):
        return raw
    if raw == "me":
        return caller.id
    try:
        return int(raw)
    except ValueError:
        raise ValidationError("Invalid user id", raw)
