"""Helpers that turn lost races into Conflict errors.

Every write that can lose a race (a stale ``version_id`` or a unique
constraint hit by a concurrent insert) goes through these helpers so callers
see ``ConflictError`` after the transaction has been rolled back.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.core.exceptions import ConflictError


async def flush_or_conflict(db: AsyncSession, message: str) -> None:
    """Flush pending changes; raise ConflictError if a concurrent writer won."""
    try:
        await db.flush()
    except (IntegrityError, StaleDataError) as exc:
        await db.rollback()
        raise ConflictError(message) from exc


async def commit_or_conflict(db: AsyncSession, message: str) -> None:
    """Commit the transaction; raise ConflictError if a concurrent writer won."""
    try:
        await db.commit()
    except (IntegrityError, StaleDataError) as exc:
        await db.rollback()
        raise ConflictError(message) from exc
