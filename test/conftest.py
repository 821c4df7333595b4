# /test/conftest.py
# Shared fixtures: a throwaway SQLite store, fast settings, simulated chains.

import time

import pytest
import pytest_asyncio

from mintgate.adapters.mock import MockChain
from mintgate.core.config import Settings
from mintgate.core.tx import TransactionSubmitter
from mintgate.queue.mint_processor import MintQueueProcessor
from mintgate.queue.payment_processor import PaymentQueueProcessor
from mintgate.queue.settlement import SettlementBridge
from mintgate.store.advisory_lock import AdvisoryLockGate
from mintgate.store.database import Database

TOKEN = "0x1111111111111111111111111111111111111111"
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
PAYER = "0x2222222222222222222222222222222222222222"
RECIPIENT = "0x3333333333333333333333333333333333333333"
RELAYER = "0x00000000000000000000000000000000000000A1"
MINTER = "0x00000000000000000000000000000000000000B2"


def make_auth(nonce: int = 1, value: int = 1_000_000, valid_before: int | None = None, **overrides) -> dict:
    auth = {
        "from": PAYER,
        "to": RECIPIENT,
        "value": str(value),
        "validAfter": 0,
        "validBefore": valid_before if valid_before is not None else int(time.time()) + 3600,
        "nonce": "0x" + f"{nonce:064x}",
        "signature": "0x" + "ab" * 32 + "cd" * 32 + "1b",
    }
    auth.update(overrides)
    return auth


def key(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest.fixture(autouse=True)
def audit_to_tmp(tmp_path, monkeypatch):
    monkeypatch.setattr("mintgate.core.logger.AUDIT_FILE", tmp_path / "audit.log")


@pytest.fixture
def config(tmp_path):
    return Settings(
        SESSION_DIR=str(tmp_path / "session"),
        DEFAULT_TOKEN_ADDRESS=TOKEN,
        PAYMENT_BATCH_INTERVAL_MS=50,
        MINT_BATCH_INTERVAL_SECONDS=10,
        TX_MONITOR_POLL_SECONDS=0.01,
        RPC_RETRY_BACKOFF_SECONDS=0,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await database.init_schema()
    yield database
    await database.dispose()


@pytest.fixture
def relayer_chain():
    return MockChain(RELAYER)


@pytest.fixture
def minter_chain():
    return MockChain(MINTER)


@pytest_asyncio.fixture
async def relayer(relayer_chain, db, config):
    submitter = TransactionSubmitter(relayer_chain, db, config)
    await submitter.initialize()
    yield submitter
    await submitter.close()


@pytest_asyncio.fixture
async def minter(minter_chain, db, config):
    submitter = TransactionSubmitter(minter_chain, db, config)
    await submitter.initialize()
    yield submitter
    await submitter.close()


@pytest.fixture
def mints(db, minter, config):
    return MintQueueProcessor(db, minter, config)


@pytest.fixture
def bridge(mints, db):
    return SettlementBridge(mints, lock_gate=AdvisoryLockGate(db))


@pytest.fixture
def payments(db, relayer, bridge, config):
    return PaymentQueueProcessor(db, relayer, bridge, config)
