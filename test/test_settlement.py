import asyncio
import pytest
from sqlalchemy import func, select
from web3 import Web3

from conftest import PAYER, TOKEN
from mintgate.core.errors import LockUnavailableError
from mintgate.queue.settlement import SettlementBridge, derive_mint_key
from mintgate.store.advisory_lock import AdvisoryLockGate
from mintgate.store.models import MintQueueItem, PaymentQueueItem

ENQUEUED_AT_MS = 1_760_000_000_000


def settled_payment(quantity=5, payment_type="mint", payment_id="pay-1") -> PaymentQueueItem:
    return PaymentQueueItem(
        id=payment_id,
        payment_type=payment_type,
        payer=PAYER,
        amount=str(1_000_000 * quantity),
        payment_token_address=TOKEN,
        authorization={},
        authorization_nonce="0x" + "01" * 32,
        meta={"quantity": quantity, "payment_mode": "challenge-response"},
        enqueued_at_ms=ENQUEUED_AT_MS,
    )


async def queued_keys(db) -> list[str]:
    async with db.session() as session:
        return list((await session.execute(select(MintQueueItem.idempotency_key))).scalars())


def test_key_derivation_is_deterministic():
    expected = Web3.to_hex(Web3.keccak(text=f"{PAYER}-{ENQUEUED_AT_MS}-{TOKEN}"))
    assert derive_mint_key(PAYER, ENQUEUED_AT_MS, TOKEN) == expected
    assert derive_mint_key(PAYER, ENQUEUED_AT_MS + 1, TOKEN) != expected


@pytest.mark.asyncio
async def test_quantity_five_creates_five_items_even_if_invoked_twice(bridge, db):
    payment = settled_payment(quantity=5)
    first = await bridge.on_payment_completed(payment, "0xpaytx")
    second = await bridge.on_payment_completed(payment, "0xpaytx")

    assert first["quantity"] == 5
    assert len(set(first["queue_ids"])) == 5
    assert second["queue_ids"] == first["queue_ids"]

    keys = await queued_keys(db)
    assert len(keys) == 5
    assert len(set(keys)) == 5
    async with db.session() as session:
        modes = set((await session.execute(select(MintQueueItem.payment_mode))).scalars())
    assert modes == {"challenge-response"}


@pytest.mark.asyncio
async def test_rerun_after_mints_completed_adds_nothing(bridge, mints, db, minter_chain):
    payment = settled_payment(quantity=2)
    first = await bridge.on_payment_completed(payment, "0xpaytx")
    await mints.process_batch()

    again = await bridge.on_payment_completed(payment, "0xpaytx")
    assert again["queue_ids"] == first["queue_ids"]
    async with db.session() as session:
        total = (await session.execute(select(func.count()).select_from(MintQueueItem))).scalar_one()
    assert total == 2
    assert len(minter_chain.sent) == 1


@pytest.mark.asyncio
async def test_deploy_runs_under_advisory_lock(mints, db):
    release = asyncio.Event()
    started = asyncio.Event()
    deployed = []

    async def deployer(payment, tx_hash):
        started.set()
        await release.wait()
        deployed.append(payment.id)
        return {"token_address": TOKEN}

    bridge = SettlementBridge(mints, lock_gate=AdvisoryLockGate(db), deployer=deployer)
    first = asyncio.create_task(bridge.on_payment_completed(settled_payment(payment_type="deploy"), "0xa"))
    await started.wait()

    with pytest.raises(LockUnavailableError) as exc:
        await bridge.on_payment_completed(settled_payment(payment_type="deploy", payment_id="pay-2"), "0xb")
    assert exc.value.retry_after == 5

    release.set()
    assert await first == {"token_address": TOKEN}
    assert deployed == ["pay-1"]


@pytest.mark.asyncio
async def test_deploy_without_deployer_is_never_reported_done(bridge):
    assert not bridge.supports("deploy")
    assert bridge.supports("mint")
    with pytest.raises(RuntimeError):
        await bridge.on_payment_completed(settled_payment(payment_type="deploy"), "0xa")
