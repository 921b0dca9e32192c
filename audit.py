"""
Audit logging of mutating API calls.

``AuditMiddleware`` captures the request body and the final status code and
response body of every non-GET call. Once the response has been sent it
passes them as an ``ApiCall`` to ``record_api_call``. Recording failures are
logged and never reach the client.
"""

import json
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

from pymongo import DESCENDING
from pymongo.collection import Collection
from starlette.concurrency import run_in_threadpool

from database import create_document
from schemas import AuditLog
from security import decode_subject

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("password", "token", "secret", "key", "auth")
REDACTED = "[REDACTED]"

# logging these would recurse (/logs) or is noise
SKIP_PATHS = ("/logs", "/health", "/status", "/favicon.ico")
READ_METHODS = ("GET", "HEAD", "OPTIONS")

ENTITY_SEGMENTS = {
    "users": "user",
    "transactions": "transaction",
    "categories": "category",
    "tags": "tag",
    "goals": "goal",
    "logs": "log",
    "auth": "auth",
}

_ENTITY_ID = re.compile(r"/(\w+)/(\d+)")
_TRAILING_ID = re.compile(r"/\d+$")
_BASE36 = string.digits + string.ascii_lowercase


# ----------------------
# Classification
# ----------------------

def should_skip(method: str, path: str) -> bool:
    if method.upper() in READ_METHODS:
        return True
    if "/auth/login" in path:
        return True
    return any(skip in path for skip in SKIP_PATHS)


def determine_action(method: str, path: str) -> str:
    method = method.upper()
    if "/auth/register" in path:
        return "register"
    if "/auth/login" in path:
        return "login"
    if "/progress" in path and method == "POST":
        return "add_progress"
    if "/progress" in path and method == "GET":
        return "get_progress"
    if "/entity/" in path and method == "GET":
        return "get_entity_logs"

    if method == "POST":
        return "create"
    if method == "PUT":
        return "update"
    if method == "DELETE":
        return "delete"
    if method == "GET":
        return "read_one" if _TRAILING_ID.search(path) else "read_all"
    return "unknown"


def determine_entity_type(path: str) -> str:
    for segment in path.split("/"):
        if segment in ENTITY_SEGMENTS:
            return ENTITY_SEGMENTS[segment]
    return "unknown"


def extract_entity_id(path: str) -> Optional[str]:
    match = _ENTITY_ID.search(path)
    return match.group(2) if match else None


def sanitize(value: Any) -> Any:
    """Recursively replace values under sensitive-looking keys."""
    if isinstance(value, dict):
        clean = {}
        for key, item in value.items():
            if any(word in str(key).lower() for word in SENSITIVE_FIELDS):
                clean[key] = REDACTED
            else:
                clean[key] = sanitize(item)
        return clean
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    return value


def generate_log_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"log_{int(time.time() * 1000)}_{suffix}"


# ----------------------
# Store
# ----------------------

class AuditLogStore:
    """Append-mostly audit log on a MongoDB collection."""

    def __init__(self, collection: Collection):
        self.collection = collection

    def insert(self, entry: AuditLog) -> AuditLog:
        create_document(self.collection, entry)
        return entry

    def get(self, log_id: str) -> Optional[dict]:
        return self.collection.find_one({"log_id": log_id}, {"_id": 0})

    def find(self, where: dict, skip: int = 0, limit: int = 50) -> List[dict]:
        cursor = self.collection.find(where, {"_id": 0}).sort("created_at", DESCENDING)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, where: dict) -> int:
        return self.collection.count_documents(where)

    def aggregate_counts(self, where: dict, field_name: str) -> List[dict]:
        pipeline = [
            {"$match": where},
            {"$group": {"_id": f"${field_name}", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
        return list(self.collection.aggregate(pipeline))

    def delete(self, log_id: str) -> bool:
        return self.collection.delete_one({"log_id": log_id}).deleted_count > 0


def new_entry(
    user_id: Any,
    action: str,
    entity_type: str,
    entity_id: Any = None,
    old_value: Any = None,
    new_value: Any = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditLog:
    return AuditLog(
        log_id=generate_log_id(),
        user_id=str(user_id) if user_id is not None else "anonymous",
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        old_value=old_value,
        new_value=new_value,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=datetime.now(timezone.utc),
    )


# ----------------------
# Recording
# ----------------------

@dataclass
class ApiCall:
    """One finished API call, as plain values."""

    method: str
    path: str
    query: Dict[str, str]
    request_body: Any
    status_code: int
    response_body: Any
    duration_ms: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def url(self) -> str:
        if not self.query:
            return self.path
        return self.path + "?" + "&".join(f"{k}={v}" for k, v in self.query.items())


def entry_for_call(call: ApiCall) -> AuditLog:
    success = 200 <= call.status_code < 400
    new_value = {
        "request": {
            "method": call.method,
            "url": call.url,
            "query": call.query or None,
            "body": sanitize(call.request_body) if call.request_body else None,
            "timestamp": call.started_at.isoformat(),
        },
        "response": {
            "status_code": call.status_code,
            "response_time_ms": call.duration_ms,
            "success": success,
            "body": None if success else call.response_body,
        },
        "metadata": {
            "ip_address": call.ip_address,
            "user_agent": call.user_agent,
            "user_id": call.user_id,
            "authenticated": call.user_id is not None,
        },
    }
    return new_entry(
        call.user_id,
        determine_action(call.method, call.path),
        determine_entity_type(call.path),
        entity_id=extract_entity_id(call.path),
        new_value=new_value,
        ip_address=call.ip_address,
        user_agent=call.user_agent,
    )


def record_api_call(store: Optional[AuditLogStore], call: ApiCall) -> Optional[AuditLog]:
    if store is None:
        return None
    try:
        entry = store.insert(entry_for_call(call))
    except Exception:
        logger.exception("Failed to record audit log for %s %s", call.method, call.path)
        return None
    logger.info(
        "%s %s - %s (%sms) - User: %s",
        call.method, call.url, call.status_code, call.duration_ms, call.user_id or "anonymous",
    )
    return entry


def _decode_json(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _header(scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _bearer_subject(scope) -> Optional[str]:
    authorization = _header(scope, b"authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return decode_subject(token.strip())


class AuditMiddleware:
    """Pure ASGI middleware; audit store is read from ``app.state.log_store``."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or should_skip(scope["method"], scope["path"]):
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        started_at = datetime.now(timezone.utc)
        request_chunks: List[bytes] = []
        response_chunks: List[bytes] = []
        status_code = 500

        async def receive_and_keep():
            message = await receive()
            if message["type"] == "http.request":
                request_chunks.append(message.get("body", b""))
            return message

        async def send_and_keep(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            elif message["type"] == "http.response.body":
                response_chunks.append(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive_and_keep, send_and_keep)
        finally:
            client = scope.get("client")
            call = ApiCall(
                method=scope["method"],
                path=scope["path"],
                query=dict(parse_qsl(scope.get("query_string", b"").decode("latin-1"))),
                request_body=_decode_json(b"".join(request_chunks)),
                status_code=status_code,
                response_body=_decode_json(b"".join(response_chunks)),
                duration_ms=int((time.perf_counter() - started) * 1000),
                ip_address=client[0] if client else None,
                user_agent=_header(scope, b"user-agent"),
                user_id=_bearer_subject(scope),
                started_at=started_at,
            )
            store = getattr(scope["app"].state, "log_store", None) if "app" in scope else None
            await run_in_threadpool(record_api_call, store, call)
