"""
Tests for audit log classification, redaction and the log store.
"""

import re

import mongomock
import pytest

from audit import (
    REDACTED,
    ApiCall,
    AuditLogStore,
    determine_action,
    determine_entity_type,
    entry_for_call,
    extract_entity_id,
    generate_log_id,
    new_entry,
    record_api_call,
    sanitize,
    should_skip,
)


@pytest.fixture
def store():
    return AuditLogStore(mongomock.MongoClient()["audit_test"]["logs"])


class TestShouldSkip:

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/transactions"),
            ("HEAD", "/api/transactions"),
            ("OPTIONS", "/api/goals/3"),
            ("head", "/api/categories"),
            ("POST", "/api/auth/login"),
            ("POST", "/api/logs"),
            ("DELETE", "/api/logs/log_1_abc"),
            ("GET", "/health"),
            ("POST", "/status"),
        ],
    )
    def test_skipped(self, method, path):
        assert should_skip(method, path)

    @pytest.mark.parametrize("method", ["POST", "PUT", "DELETE"])
    def test_writes_are_recorded(self, method):
        assert not should_skip(method, "/api/goals/3")


class TestDetermineAction:

    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("POST", "/api/auth/register", "register"),
            ("POST", "/api/auth/login", "login"),
            ("POST", "/api/goals/4/progress", "add_progress"),
            ("GET", "/api/goals/4/progress", "get_progress"),
            ("GET", "/api/logs/entity/goal/4", "get_entity_logs"),
            ("POST", "/api/transactions", "create"),
            ("PUT", "/api/transactions/1", "update"),
            ("DELETE", "/api/transactions/1", "delete"),
            ("GET", "/api/transactions/1", "read_one"),
            ("GET", "/api/transactions", "read_all"),
            ("PATCH", "/api/transactions/1", "unknown"),
        ],
    )
    def test_actions(self, method, path, expected):
        assert determine_action(method, path) == expected


class TestEntity:

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/api/users/3", "user"),
            ("/api/categories", "category"),
            ("/api/goals/2/progress", "goal"),
            ("/api/auth/register", "auth"),
            ("/api/unknown/1", "unknown"),
        ],
    )
    def test_entity_type(self, path, expected):
        assert determine_entity_type(path) == expected

    def test_entity_id_is_first_numeric_segment(self):
        assert extract_entity_id("/api/goals/12/progress") == "12"

    def test_no_entity_id(self):
        assert extract_entity_id("/api/goals") is None


class TestSanitize:

    def test_redacts_nested_sensitive_keys(self):
        body = {
            "email": "a@finance.io",
            "password": "hunter22",
            "profile": {"api_key": "k", "name": "A"},
            "items": [{"access_token": "t"}, {"amount": 5}],
        }
        assert sanitize(body) == {
            "email": "a@finance.io",
            "password": REDACTED,
            "profile": {"api_key": REDACTED, "name": "A"},
            "items": [{"access_token": REDACTED}, {"amount": 5}],
        }

    def test_key_match_is_case_insensitive(self):
        assert sanitize({"Authorization": "Bearer x"}) == {"Authorization": REDACTED}

    def test_scalars_pass_through(self):
        assert sanitize("plain") == "plain"


def test_log_id_format():
    assert re.fullmatch(r"log_\d{13}_[0-9a-z]{9}", generate_log_id())


class TestStore:

    def test_insert_and_get(self, store):
        entry = store.insert(new_entry(1, "create", "goal", entity_id=5))
        found = store.get(entry.log_id)
        assert found["user_id"] == "1"
        assert found["entity_id"] == "5"
        assert "_id" not in found
        assert found["created_at"] is not None

    def test_find_is_newest_first(self, store):
        first = store.insert(new_entry(1, "create", "goal"))
        second = store.insert(new_entry(1, "update", "goal"))
        first_doc = store.get(first.log_id)
        store.collection.update_one(
            {"log_id": second.log_id}, {"$set": {"created_at": first_doc["created_at"].replace(year=2100)}}
        )
        assert [e["log_id"] for e in store.find({})] == [second.log_id, first.log_id]

    def test_aggregate_counts(self, store):
        for action in ("create", "create", "delete"):
            store.insert(new_entry(1, action, "tag"))
        assert store.aggregate_counts({}, "action") == [{"_id": "create", "count": 2}, {"_id": "delete", "count": 1}]

    def test_delete(self, store):
        entry = store.insert(new_entry(None, "create", "tag"))
        assert store.delete(entry.log_id) is True
        assert store.delete(entry.log_id) is False

    def test_anonymous_user(self, store):
        assert store.insert(new_entry(None, "register", "auth")).user_id == "anonymous"


class TestRecordApiCall:

    def call(self, **fields):
        values = dict(
            method="POST",
            path="/api/auth/register",
            query={},
            request_body={"email": "a@finance.io", "password": "secret123"},
            status_code=201,
            response_body={"id": 1},
            duration_ms=4,
        )
        values.update(fields)
        return ApiCall(**values)

    def test_entry_shape(self):
        entry = entry_for_call(self.call(user_id="1"))
        assert entry.action == "register"
        assert entry.entity_type == "auth"
        request = entry.new_value["request"]
        assert request["body"]["password"] == REDACTED
        assert request["url"] == "/api/auth/register"
        response = entry.new_value["response"]
        assert response["success"] is True
        assert response["body"] is None
        assert entry.new_value["metadata"]["authenticated"] is True

    def test_error_body_is_kept(self):
        entry = entry_for_call(self.call(status_code=400, response_body={"error": "Email already registered"}))
        assert entry.new_value["response"]["body"] == {"error": "Email already registered"}
        assert entry.new_value["metadata"]["authenticated"] is False

    def test_query_in_url(self):
        assert self.call(query={"page": "2"}).url == "/api/auth/register?page=2"

    def test_persists(self, store):
        entry = record_api_call(store, self.call())
        assert store.count({"log_id": entry.log_id}) == 1

    def test_store_failure_is_swallowed(self, caplog):
        class BrokenCollection:
            def insert_one(self, doc):
                raise RuntimeError("mongo is down")

        assert record_api_call(AuditLogStore(BrokenCollection()), self.call()) is None
        assert "Failed to record audit log" in caplog.text

    def test_no_store(self):
        assert record_api_call(None, self.call()) is None
