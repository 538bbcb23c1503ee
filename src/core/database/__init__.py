from src.core.database.session import async_session, engine, get_db
from src.core.database.base import Base, BigIntPK
from src.core.database.concurrency import commit_or_conflict, flush_or_conflict

__all__ = [
    "async_session",
    "engine",
    "get_db",
    "Base",
    "BigIntPK",
    "commit_or_conflict",
    "flush_or_conflict",
]
