import logging
import re
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlmodel import Session, select

from audit import AuditLogStore, new_entry
from database import get_session
from errors import AuthorizationError, MethodNotAllowedError, NotFoundError
from models import User
from permissions import Caller, require_admin, resolve_owner, resolve_user_id, scope
from repository import envelope, make_page, user_brief
from schemas import LogCreate
from security import get_current_user, get_writer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])


def get_store(request: Request) -> AuditLogStore:
    return request.app.state.log_store


def owner_filter(owner: Optional[int]) -> dict:
    return {} if owner is None else {"user_id": str(owner)}


def day_start(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def with_users(session: Session, entries: list) -> list:
    """Attach ``user {id, name, email}`` to entries written by a known user."""
    ids = {int(e["user_id"]) for e in entries if str(e.get("user_id", "")).isdigit()}
    users = {u.id: u for u in session.exec(select(User).where(User.id.in_(ids)))} if ids else {}
    for entry in entries:
        uid = entry.get("user_id")
        entry["user"] = user_brief(users.get(int(uid))) if str(uid).isdigit() else None
    return entries


def visible(caller: Caller, entry: dict) -> bool:
    return caller.is_admin or entry.get("user_id") == str(caller.scope_owner)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_log(
    payload: LogCreate,
    request: Request,
    caller: Caller = Depends(get_writer),
    store: AuditLogStore = Depends(get_store),
):
    target = resolve_user_id(caller, payload.target_user_id) if payload.target_user_id else None
    owner = resolve_owner(caller, target)
    entry = new_entry(
        owner,
        payload.action,
        payload.entity_type,
        entity_id=payload.entity_id,
        old_value=payload.old_value,
        new_value=payload.new_value,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    store.insert(entry)
    return entry


@router.get("")
def list_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    user_id: Optional[int] = None,
    summary: bool = False,
    activity: bool = False,
    hours: int = Query(24, ge=1),
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: AuditLogStore = Depends(get_store),
):
    where = owner_filter(scope(caller, user_id))
    pager = make_page(page, limit, default_limit=50)

    if summary:
        return logs_summary(store, where)

    if activity:
        return logs_activity(session, store, where, hours)

    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        where["$or"] = [{"action": pattern}, {"entity_type": pattern}, {"entity_id": pattern}]
        entries = store.find(where, limit=pager.limit)
        return {"data": with_users(session, entries), "search_term": search}

    for name, value in (("action", action), ("entity_type", entity_type), ("ip_address", ip_address)):
        if value:
            where[name] = value
    if entity_id:
        where["entity_id"] = str(entity_id)
    if start_date or end_date:
        window = {}
        if start_date:
            window["$gte"] = day_start(start_date)
        if end_date:
            window["$lt"] = day_start(end_date) + timedelta(days=1)
        where["created_at"] = window

    total = store.count(where)
    entries = store.find(where, skip=pager.offset, limit=pager.limit)
    return envelope(total, pager, with_users(session, entries))


def logs_summary(store: AuditLogStore, where: dict) -> dict:
    day_ago = datetime.now(timezone.utc) - timedelta(days=1)
    return {
        "overview": {
            "total_logs": store.count(where),
            "last_24h": store.count({**where, "created_at": {"$gte": day_ago}}),
        },
        "by_action": [
            {"action": row["_id"], "count": row["count"]} for row in store.aggregate_counts(where, "action")
        ],
        "by_entity_type": [
            {"entity_type": row["_id"], "count": row["count"]} for row in store.aggregate_counts(where, "entity_type")
        ],
    }


def logs_activity(session: Session, store: AuditLogStore, where: dict, hours: int) -> dict:
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    entries = store.find({**where, "created_at": {"$gte": since}}, limit=0)

    buckets = Counter(e["created_at"].strftime("%Y-%m-%dT%H:00") for e in entries if e.get("created_at"))
    return {
        "hours": hours,
        "total": len(entries),
        "hourly": [{"hour": hour, "count": buckets[hour]} for hour in sorted(buckets)],
        "recent": with_users(session, entries[:10]),
    }


@router.get("/entity/{entity_type}/{entity_id}")
def entity_logs(
    entity_type: str,
    entity_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: AuditLogStore = Depends(get_store),
):
    where = owner_filter(scope(caller))
    where.update(entity_type=entity_type, entity_id=entity_id)
    pager = make_page(page, limit, default_limit=50)

    total = store.count(where)
    entries = store.find(where, skip=pager.offset, limit=pager.limit)
    result = envelope(total, pager, with_users(session, entries))
    return {"entity": {"type": entity_type, "id": entity_id}, **result}


@router.get("/{log_id}")
def get_log(
    log_id: str,
    caller: Caller = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: AuditLogStore = Depends(get_store),
):
    entry = store.get(log_id)
    if entry is None:
        raise NotFoundError("Log not found")
    if not visible(caller, entry):
        raise AuthorizationError("Access denied to this log entry")
    return with_users(session, [entry])[0]


@router.put("/{log_id}")
def update_log(log_id: str, caller: Caller = Depends(get_current_user)):
    raise MethodNotAllowedError("Method not allowed. Logs are immutable for audit purposes.")


@router.delete("/{log_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_log(
    log_id: str,
    caller: Caller = Depends(get_current_user),
    store: AuditLogStore = Depends(get_store),
):
    require_admin(caller, "Only administrators can delete logs")
    if not store.delete(log_id):
        raise NotFoundError("Log not found")
    logger.warning("Log %s deleted by admin %s", log_id, caller.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
