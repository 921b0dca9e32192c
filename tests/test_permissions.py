"""
Tests for role scoping. Pure functions, no app or store.
"""

import pytest
from sqlmodel import select

from errors import AuthorizationError, ValidationError
from models import Transaction
from permissions import (
    Caller,
    Role,
    apply_scope,
    require_admin,
    require_writer,
    resolve_owner,
    resolve_user_id,
    scope,
)

ADMIN = Caller(id=1, role=Role.admin)
REGULAR = Caller(id=2, role=Role.regular)
VIEWER = Caller(id=3, role=Role.viewer, delegate_of=2)


class TestScope:

    def test_admin_is_unrestricted(self):
        assert scope(ADMIN) is None

    def test_admin_can_narrow_to_a_user(self):
        assert scope(ADMIN, 7) == 7

    def test_regular_user_sees_only_self(self):
        assert scope(REGULAR) == 2

    def test_regular_user_cannot_widen_scope(self):
        assert scope(REGULAR, 7) == 2

    def test_viewer_sees_delegate(self):
        assert scope(VIEWER) == 2
        assert scope(VIEWER, 1) == 2

    def test_viewer_without_delegate_falls_back_to_self(self):
        assert Caller(id=9, role=Role.viewer).scope_owner == 9

    def test_caller_is_immutable(self):
        with pytest.raises(Exception):
            REGULAR.id = 5


class TestApplyScope:

    def test_none_leaves_statement_alone(self):
        statement = select(Transaction)
        assert apply_scope(statement, Transaction.user_id, None) is statement

    def test_owner_adds_where_clause(self):
        statement = apply_scope(select(Transaction), Transaction.user_id, 2)
        assert "WHERE transactions.user_id" in str(statement)


class TestGuards:

    def test_viewer_is_not_a_writer(self):
        with pytest.raises(AuthorizationError, match="read-only"):
            require_writer(VIEWER)

    def test_regular_is_a_writer(self):
        assert require_writer(REGULAR) is REGULAR

    def test_require_admin_message(self):
        with pytest.raises(AuthorizationError, match="Only admins"):
            require_admin(REGULAR, "Only admins here")


class TestResolveOwner:

    def test_admin_may_target_another_user(self):
        assert resolve_owner(ADMIN, 5) == 5

    def test_admin_defaults_to_self(self):
        assert resolve_owner(ADMIN) == 1

    def test_regular_target_is_ignored(self):
        assert resolve_owner(REGULAR, 5) == 2

    def test_viewer_cannot_own_rows(self):
        with pytest.raises(AuthorizationError):
            resolve_owner(VIEWER)


class TestResolveUserId:

    def test_me_alias(self):
        assert resolve_user_id(REGULAR, "me") == 2

    def test_numeric_string(self):
        assert resolve_user_id(REGULAR, "42") == 42

    def test_garbage_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            resolve_user_id(REGULAR, "abc")
