import os
import pytest

from conftest import MINTER
from mintgate.core.account_lock import AccountLock
from mintgate.core.errors import AccountLockedError
from mintgate.core.tx import TransactionSubmitter
from mintgate.adapters.mock import MockChain


def test_second_holder_is_rejected(tmp_path):
    first = AccountLock(MINTER, str(tmp_path))
    second = AccountLock(MINTER, str(tmp_path))
    first.acquire()
    try:
        with pytest.raises(AccountLockedError):
            second.acquire()
        assert not second.held
        with open(first.path) as f:
            assert f.read() == str(os.getpid())
    finally:
        first.release()

    second.acquire()
    assert second.held
    second.release()


@pytest.mark.asyncio
async def test_two_submitters_cannot_share_an_account(db, config):
    chain = MockChain(MINTER)
    first = TransactionSubmitter(chain, db, config)
    await first.initialize()
    try:
        with pytest.raises(AccountLockedError):
            await TransactionSubmitter(chain, db, config).initialize()
    finally:
        await first.close()
