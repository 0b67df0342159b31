"""
Idempotency Repository

Lock and cached-result storage backed by PostgreSQL. Lock acquisition is
a single compare-and-swap statement:

    INSERT INTO idempotency_locks ... ON CONFLICT (lock_key)
    DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
    WHERE idempotency_locks.expires_at < now()
    RETURNING lock_key

A row comes back only when the lock was free or its holder's TTL had lapsed.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from storefront.domain.interfaces import IdempotencyStore
from storefront.infrastructure.db.database import session_scope
from storefront.infrastructure.db.models.base import utcnow
from storefront.infrastructure.db.models.idempotency import IdempotencyLock, IdempotencyResult


logger = logging.getLogger(__name__)


class IdempotencyRepository(IdempotencyStore):
    """PostgreSQL implementation of the idempotency lock/result store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # =========================================================================
    # Locks
    # =========================================================================

    async def try_acquire(self, lock_key: str, owner: str, ttl_seconds: int) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        stmt = pg_insert(IdempotencyLock).values(
            lock_key=lock_key,
            owner=owner,
            expires_at=expires_at,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["lock_key"],
            set_={
                "owner": stmt.excluded.owner,
                "expires_at": stmt.excluded.expires_at,
                "created_at": now,
            },
            where=IdempotencyLock.expires_at < now,
        ).returning(IdempotencyLock.lock_key)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            acquired = result.scalar_one_or_none() is not None

        if acquired:
            logger.debug(f"Lock {lock_key[:12]} acquired by {owner[:8]}")
        return acquired

    async def release(self, lock_key: str, owner: str) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                delete(IdempotencyLock)
                .where(IdempotencyLock.lock_key == lock_key)
                .where(IdempotencyLock.owner == owner)
            )

    # =========================================================================
    # Results
    # =========================================================================

    async def get_result(self, key: str) -> Optional[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            statement = select(IdempotencyResult.result).where(
                IdempotencyResult.key == key,
                IdempotencyResult.expires_at >= utcnow(),
            )
            result = await session.execute(statement)
            return result.scalar_one_or_none()

    async def save_result(self, key: str, result: Dict[str, Any], ttl_seconds: int) -> None:
        now = utcnow()
        stmt = pg_insert(IdempotencyResult).values(
            key=key,
            result=result,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "result": stmt.excluded.result,
                "expires_at": stmt.excluded.expires_at,
            },
        )

        async with session_scope(self.session_factory) as session:
            await session.execute(stmt)

    async def purge_expired(self) -> int:
        now = utcnow()
        async with session_scope(self.session_factory) as session:
            locks = await session.execute(
                delete(IdempotencyLock).where(IdempotencyLock.expires_at < now)
            )
            results = await session.execute(
                delete(IdempotencyResult).where(IdempotencyResult.expires_at < now)
            )
            removed = (locks.rowcount or 0) + (results.rowcount or 0)

        if removed:
            logger.info(f"Purged {removed} expired idempotency rows")
        return removed
