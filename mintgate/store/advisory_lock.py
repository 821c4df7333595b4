# /mintgate/store/advisory_lock.py
# Fail-fast named lock for rare heavyweight operations (contract deployment).

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from mintgate.core.errors import LockUnavailableError
from mintgate.core.logger import get_logger
from mintgate.store.database import Database

log = get_logger(__name__)

DEPLOYMENT_LOCK = "token-deployment-global"


def advisory_lock_id(name: str) -> int:
    """Stable signed 64-bit key for pg_try_advisory_xact_lock."""
    return int.from_bytes(hashlib.sha256(name.encode()).digest()[:8], "big", signed=True)


class AdvisoryLockGate:
    """
    Wraps a heavyweight operation in a transaction-scoped advisory lock.

    On PostgreSQL this is ``pg_try_advisory_xact_lock``: the lock lives exactly
    as long as the surrounding transaction and is dropped on commit/rollback.
    Other dialects have no advisory locks; there the gate degrades to a
    process-local try-lock, which is sufficient for the single-process SQLite
    deployments used in simulation.
    """
    def __init__(self, db: Database, retry_after: int = 5):
        self.db = db
        self.retry_after = retry_after
        self._local_locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncGenerator[AsyncSession, None]:
        """Run the body while holding ``name``; raise LockUnavailableError if busy.

        The yielded session is the one the lock is scoped to; work done through
        it commits together with the lock release.
        """
        if self.db.dialect == "postgresql":
            async with self.db.session() as session:
                acquired = (
                    await session.execute(
                        text("SELECT pg_try_advisory_xact_lock(:key)"), {"key": advisory_lock_id(name)}
                    )
                ).scalar()
                if not acquired:
                    self._reject(name)
                log.info("ADVISORY_LOCK_ACQUIRED", lock=name)
                yield session
            return

        lock = self._local_locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            self._reject(name)
        async with lock:
            async with self.db.session() as session:
                log.info("ADVISORY_LOCK_ACQUIRED", lock=name, scope="process")
                yield session

    def _reject(self, name: str):
        log.warning("ADVISORY_LOCK_BUSY", lock=name, retry_after=self.retry_after, audit=True)
        raise LockUnavailableError(name, self.retry_after)
