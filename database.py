"""
Database access

- Relational store (users, categories, tags, transactions, goals) through SQLModel.
- Document store (audit logs) through pymongo.
"""

import logging
from datetime import datetime, timezone
from typing import Iterator, Optional

from fastapi import Request
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.collection import Collection
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

import config
import models  # noqa: F401  registers the tables on SQLModel.metadata
from models import User

logger = logging.getLogger(__name__)


def make_engine(url: str = config.SQL_DATABASE_URL) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def seed_admin(engine: Engine) -> Optional[User]:
    """Create the bootstrap administrator from ADMIN_EMAIL / ADMIN_PASSWORD."""
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        return None

    from security import hash_password

    email = config.ADMIN_EMAIL.strip().lower()
    with Session(engine) as session:
        existing = session.exec(select(User).where(User.email == email)).first()
        if existing:
            return existing
        admin = User(
            name=config.ADMIN_NAME,
            email=email,
            password_hash=hash_password(config.ADMIN_PASSWORD),
            role="admin",
        )
        session.add(admin)
        session.commit()
        session.refresh(admin)
        logger.info("Seeded administrator %s", email)
        return admin


def get_session(request: Request) -> Iterator[Session]:
    with Session(request.app.state.engine) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise


# ----------------------
# Document store
# ----------------------

def make_log_collection(
    url: str = config.MONGO_URL,
    db_name: str = config.MONGO_DB_NAME,
    collection: str = config.LOG_COLLECTION,
) -> Collection:
    client = MongoClient(url, serverSelectionTimeoutMS=2000)
    return client[db_name][collection]


def create_document(collection: Collection, data: BaseModel) -> str:
    """Insert a pydantic model as a document, stamping created_at/updated_at."""
    doc = data.model_dump()
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["created_at"] = doc["created_at"] or now
    doc["updated_at"] = now
    result = collection.insert_one(doc)
    return str(result.inserted_id)
