from contextlib import asynccontextmanager

import pytest

from mintgate.core.errors import LockUnavailableError
from mintgate.store.advisory_lock import AdvisoryLockGate, DEPLOYMENT_LOCK, advisory_lock_id


class FakeResult:
    def __init__(self, value):
        self.value = value

    def scalar(self):
        return self.value


class FakeSession:
    def __init__(self, granted):
        self.granted = granted
        self.statements = []

    async def execute(self, statement, params=None):
        self.statements.append((str(statement), params))
        return FakeResult(self.granted)


class FakePostgres:
    dialect = "postgresql"

    def __init__(self, granted):
        self.last_session = FakeSession(granted)

    @asynccontextmanager
    async def session(self):
        yield self.last_session


def test_lock_id_is_stable_signed_64_bit():
    lock_id = advisory_lock_id(DEPLOYMENT_LOCK)
    assert lock_id == advisory_lock_id(DEPLOYMENT_LOCK)
    assert -(2**63) <= lock_id < 2**63
    assert lock_id != advisory_lock_id("something-else")


@pytest.mark.asyncio
async def test_postgres_uses_transaction_scoped_try_lock():
    db = FakePostgres(granted=True)
    gate = AdvisoryLockGate(db)
    async with gate.hold(DEPLOYMENT_LOCK) as session:
        assert session is db.last_session

    sql, params = db.last_session.statements[0]
    assert "pg_try_advisory_xact_lock" in sql
    assert params == {"key": advisory_lock_id(DEPLOYMENT_LOCK)}


@pytest.mark.asyncio
async def test_postgres_busy_lock_fails_fast():
    gate = AdvisoryLockGate(FakePostgres(granted=False), retry_after=3)
    ran = False
    with pytest.raises(LockUnavailableError) as exc:
        async with gate.hold(DEPLOYMENT_LOCK):
            ran = True
    assert not ran
    assert exc.value.retry_after == 3


@pytest.mark.asyncio
async def test_local_fallback_is_exclusive_per_name(db):
    gate = AdvisoryLockGate(db)
    async with gate.hold("a"):
        with pytest.raises(LockUnavailableError):
            async with gate.hold("a"):
                pass
        async with gate.hold("b"):
            pass
    async with gate.hold("a"):
        pass
