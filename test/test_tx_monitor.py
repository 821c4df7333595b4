import asyncio
from decimal import Decimal

import pytest

from conftest import MINTER, PAYER, TOKEN, key
from mintgate.abis import MINT_TOKEN_ABI
from mintgate.adapters.mock import MockChain
from mintgate.core.chain import ContractCall, Receipt
from mintgate.core.errors import TransactionTimeoutError, UnderpricedError
from mintgate.core.logger import TX_ABANDONED, TX_ACCELERATED
from mintgate.core.tx_monitor import TransactionMonitor


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return MockChain(MINTER, auto_mine=False)


@pytest.fixture
def monitor(chain, clock):
    return TransactionMonitor(
        chain,
        poll_interval=0.01,
        accelerate_after=5.0,
        multiplier=Decimal("1.2"),
        underpriced_bump=Decimal("1.3"),
        max_attempts=5,
        give_up_after=120.0,
        clock=clock,
    )


async def broadcast_and_track(chain, monitor, gas_price=1000):
    call = ContractCall(TOKEN, MINT_TOKEN_ABI, "mint", (PAYER, key(1)))
    tx_hash = await chain.send(call, 0, gas_price, 150_000)
    future = monitor.track(tx_hash, 0, gas_price, 150_000, call)
    return tx_hash, future


@pytest.mark.asyncio
async def test_confirms_when_receipt_appears(chain, monitor):
    tx_hash, future = await broadcast_and_track(chain, monitor)
    await monitor.poll_once()
    assert not future.done()

    chain.mine()
    await monitor.poll_once()
    receipt = future.result()
    assert receipt.tx_hash == tx_hash
    assert receipt.succeeded
    assert monitor.pending_count() == 0


@pytest.mark.asyncio
async def test_bounded_acceleration_then_single_terminal_failure(chain, monitor, clock):
    abandoned_before = TX_ABANDONED._value.get()
    accelerated_before = TX_ACCELERATED._value.get()
    _, future = await broadcast_and_track(chain, monitor)
    tracked = monitor.get_pending()[0]

    for _ in range(40):
        if future.done():
            break
        clock.now += 6
        await monitor.poll_once()

    assert isinstance(future.exception(), TransactionTimeoutError)
    assert tracked.attempts == 5
    assert len(tracked.hashes) == 5
    assert all(b > a for a, b in zip(tracked.fee_history, tracked.fee_history[1:]))
    assert [tx.nonce for tx in chain.sent] == [0] * 5
    assert TX_ACCELERATED._value.get() == accelerated_before + 4
    assert TX_ABANDONED._value.get() == abandoned_before + 1
    assert monitor.pending_count() == 0

    # Nothing left to report on later polls.
    clock.now += 600
    await monitor.poll_once()
    assert TX_ABANDONED._value.get() == abandoned_before + 1


@pytest.mark.asyncio
async def test_waits_for_threshold_before_accelerating(chain, monitor, clock):
    await broadcast_and_track(chain, monitor)
    clock.now += 4
    await monitor.poll_once()
    assert len(chain.sent) == 1

    clock.now += 1
    await monitor.poll_once()
    assert len(chain.sent) == 2
    assert chain.sent[1].gas_price == 1200


@pytest.mark.asyncio
async def test_underpriced_replacement_raises_multiplier(chain, monitor, clock):
    await broadcast_and_track(chain, monitor)
    tracked = monitor.get_pending()[0]

    chain.fail_next_broadcast(UnderpricedError("replacement transaction underpriced"))
    clock.now += 6
    await monitor.poll_once()
    assert tracked.multiplier == Decimal("1.56")
    assert len(tracked.hashes) == 1

    await monitor.poll_once()
    assert tracked.fee_history == [1000, 1200, 1872]
    assert len(tracked.hashes) == 2
    assert tracked.gas_price == 1872


@pytest.mark.asyncio
async def test_earlier_hash_may_be_the_one_mined(chain, monitor, clock):
    first_hash, future = await broadcast_and_track(chain, monitor)
    clock.now += 6
    await monitor.poll_once()
    assert len(monitor.get_pending()[0].hashes) == 2

    chain.receipts[first_hash] = Receipt(tx_hash=first_hash, status=1, block_number=9, gas_used=51_000)
    await monitor.poll_once()
    assert future.result().tx_hash == first_hash


@pytest.mark.asyncio
async def test_replaced_hook_receives_new_hash(chain, monitor, clock):
    seen = []

    async def on_replaced(tx_hash):
        seen.append(tx_hash)

    call = ContractCall(TOKEN, MINT_TOKEN_ABI, "mint", (PAYER, key(2)))
    tx_hash = await chain.send(call, 0, 1000, 150_000)
    monitor.track(tx_hash, 0, 1000, 150_000, call, on_replaced=on_replaced)
    clock.now += 6
    await monitor.poll_once()
    assert seen == [chain.sent[-1].tx_hash]
    assert monitor.is_pending(tx_hash)


@pytest.mark.asyncio
async def test_background_loop_resolves_future(chain, clock):
    monitor = TransactionMonitor(chain, poll_interval=0.01, clock=clock)
    monitor.start()
    try:
        _, future = await broadcast_and_track(chain, monitor)
        chain.mine()
        receipt = await asyncio.wait_for(future, timeout=2)
        assert receipt.block_number == 1
    finally:
        await monitor.stop()


@pytest.mark.asyncio
async def test_gives_up_on_schedule_while_rpc_is_down(chain, monitor, clock):
    _, future = await broadcast_and_track(chain, monitor)
    chain.rpc_down = True

    for _ in range(100):
        if future.done():
            break
        clock.now += 60
        await monitor.poll_once()

    assert isinstance(future.exception(), TransactionTimeoutError)
    assert clock.now == 120
    assert monitor.pending_count() == 0
    # No replacement could be sent while lookups were failing.
    assert len(chain.sent) == 1
