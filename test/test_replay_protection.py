import asyncio
import pytest

from conftest import PAYER, TOKEN, key
from mintgate.abis import MINT_TOKEN_ABI
from mintgate.core.chain import ContractCall
from mintgate.core.errors import InsufficientFundsError, OnChainRevertError, TransientRpcError
from mintgate.core.logger import NONCE_CONFLICTS
from mintgate.store.models import TX_KIND_MINT


def mint_call(n: int) -> ContractCall:
    return ContractCall(TOKEN, MINT_TOKEN_ABI, "mint", (PAYER, key(n)))


@pytest.mark.asyncio
async def test_concurrent_submissions_never_share_a_nonce(minter, minter_chain):
    receipts = await asyncio.gather(*(minter.submit(mint_call(i), 150_000, kind=TX_KIND_MINT) for i in range(5)))
    assert all(r.succeeded for r in receipts)
    assert sorted(tx.nonce for tx in minter_chain.sent) == [0, 1, 2, 3, 4]
    assert await minter.ledger.pending_nonces() == set()


@pytest.mark.asyncio
async def test_nonce_conflict_reacquires_fresh_nonce(minter, minter_chain):
    await minter.submit(mint_call(1), 150_000)
    conflicts_before = NONCE_CONFLICTS._value.get()

    # Another sender used the same account behind our back.
    minter_chain.consume_nonce_externally(3)
    receipt = await minter.submit(mint_call(2), 150_000)

    assert receipt.succeeded
    assert minter_chain.sent[-1].nonce == 4
    assert NONCE_CONFLICTS._value.get() == conflicts_before + 1


@pytest.mark.asyncio
async def test_lost_broadcast_response_is_not_resent_as_new_tx(minter, minter_chain, monkeypatch):
    original = minter_chain.broadcast
    calls = {"n": 0}

    async def flaky_broadcast(signed):
        calls["n"] += 1
        tx_hash = await original(signed)
        if calls["n"] == 1:
            raise TransientRpcError("connection reset after send")
        return tx_hash

    monkeypatch.setattr(minter_chain, "broadcast", flaky_broadcast)
    receipt = await minter.submit(mint_call(1), 150_000)

    assert receipt.succeeded
    assert calls["n"] == 2
    # Second attempt re-sent the identical signed bytes and was answered "already known".
    assert len(minter_chain.sent) == 1
    assert receipt.tx_hash == minter_chain.sent[0].tx_hash


@pytest.mark.asyncio
async def test_transient_failures_exhaust_bound(minter, minter_chain):
    minter_chain.fail_next_broadcast(*(TransientRpcError("down") for _ in range(3)))
    with pytest.raises(TransientRpcError):
        await minter.submit(mint_call(1), 150_000)
    # The unused nonce goes straight back to the pool.
    assert minter.nonce_manager.get_state()["reusable"] == [0]
    receipt = await minter.submit(mint_call(1), 150_000)
    assert minter_chain.sent[0].nonce == 0
    assert receipt.succeeded


@pytest.mark.asyncio
async def test_terminal_broadcast_error_is_not_retried(minter, minter_chain):
    minter_chain.fail_next_broadcast(InsufficientFundsError("insufficient funds for gas"))
    with pytest.raises(InsufficientFundsError):
        await minter.submit(mint_call(1), 150_000)
    assert minter_chain.sent == []


@pytest.mark.asyncio
async def test_reverted_receipt_raises(minter, minter_chain):
    await minter.submit(mint_call(1), 150_000)
    with pytest.raises(OnChainRevertError):
        await minter.submit(mint_call(1), 150_000)
    # The reverted tx consumed its nonce all the same.
    assert minter.nonce_manager.get_state()["next_nonce"] == 2


@pytest.mark.asyncio
async def test_failed_lower_nonce_is_plugged_so_later_ones_mine(minter, minter_chain):
    hole = await minter.nonce_manager.acquire()
    later = await minter.nonce_manager.acquire()
    await hole.release(confirmed=False)
    # Already live at nonce 1 and stuck behind the free nonce 0.
    stalled = await minter_chain.send(mint_call(2), later.nonce, 1_000_000_000, 150_000)
    await later.bind(stalled)
    assert minter_chain.mined_nonce == 0

    minter_chain.fail_next_broadcast(InsufficientFundsError("insufficient funds for gas"))
    with pytest.raises(InsufficientFundsError):
        await minter.submit(mint_call(1), 150_000)

    filler = minter_chain.sent[-1]
    assert filler.nonce == 0
    assert minter_chain.calls[filler.tx_hash].function == ""
    assert minter_chain.mempool == {}
    assert minter_chain.receipts[stalled].succeeded

    for _ in range(200):
        if 0 not in await minter.ledger.pending_nonces():
            break
        await asyncio.sleep(0.01)
    assert 0 not in await minter.ledger.pending_nonces()
    assert minter.nonce_manager.get_state()["reusable"] == []
