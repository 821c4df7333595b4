# /mintgate/queue/settlement.py
# Turns one confirmed payment into its downstream work: N mint items, or one
# contract deployment behind the advisory lock.

from typing import Any, Awaitable, Callable, Dict, List, Optional

from web3 import Web3

from mintgate.core.errors import AlreadyMintedError
from mintgate.core.logger import get_logger
from mintgate.store.advisory_lock import AdvisoryLockGate, DEPLOYMENT_LOCK
from mintgate.store.models import MODE_DIRECT_SIGNATURE, PAYMENT_DEPLOY, PAYMENT_MINT, PaymentQueueItem

log = get_logger(__name__)

Deployer = Callable[[PaymentQueueItem, str], Awaitable[Dict[str, Any]]]


def derive_mint_key(payer: str, timestamp_ms: int, target: str) -> str:
    """bytes32 idempotency key for one mint of a settled payment."""
    return Web3.to_hex(Web3.keccak(text=f"{payer}-{timestamp_ms}-{target}"))


class SettlementBridge:
    """
    Called by the payment processor after a transfer confirms and before the
    payment is marked completed.

    Keys are derived from the payment's enqueue timestamp plus the item index,
    so running the bridge again for the same payment yields the same keys and
    the mint queue's key dedupe turns the second run into a no-op.
    """
    def __init__(self, mint_processor, lock_gate: Optional[AdvisoryLockGate] = None,
                 deployer: Optional[Deployer] = None):
        self.mint_processor = mint_processor
        self.lock_gate = lock_gate
        self.deployer = deployer

    def supports(self, payment_type: str) -> bool:
        """Whether a paid item of this type can be settled by this bridge."""
        if payment_type == PAYMENT_DEPLOY:
            return self.deployer is not None and self.lock_gate is not None
        return payment_type == PAYMENT_MINT

    async def on_payment_completed(self, payment: PaymentQueueItem, tx_hash: str) -> Optional[Dict[str, Any]]:
        if payment.payment_type == PAYMENT_MINT:
            return await self._enqueue_mints(payment, tx_hash)
        if payment.payment_type == PAYMENT_DEPLOY:
            return await self._deploy(payment, tx_hash)
        log.warning("SETTLEMENT_UNKNOWN_PAYMENT_TYPE", payment_id=payment.id, payment_type=payment.payment_type)
        return None

    async def _enqueue_mints(self, payment: PaymentQueueItem, tx_hash: str) -> Dict[str, Any]:
        meta = payment.meta or {}
        quantity = int(meta.get("quantity", 1))
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1, got {quantity}")
        mode = meta.get("payment_mode", MODE_DIRECT_SIGNATURE)
        target = payment.target_address or self.mint_processor.default_token_address

        queue_ids: List[str] = []
        for i in range(quantity):
            key = derive_mint_key(payment.payer, payment.enqueued_at_ms + i, target)
            try:
                queue_id = await self.mint_processor.add_to_queue(
                    payer=payment.payer,
                    idempotency_key=key,
                    payment_tx_hash=tx_hash,
                    proof={"payment_id": payment.id, "index": i},
                    mode=mode,
                    target_address=target,
                    payment_id=payment.id,
                )
            except AlreadyMintedError as e:
                log.info("SETTLEMENT_MINT_ALREADY_DONE", payment_id=payment.id, key=key)
                queue_id = e.queue_id
            queue_ids.append(queue_id)

        log.info("SETTLEMENT_MINTS_QUEUED", payment_id=payment.id, tx_hash=tx_hash, quantity=quantity,
                 queue_ids=queue_ids, audit=True)
        return {"queue_ids": queue_ids, "quantity": quantity}

    async def _deploy(self, payment: PaymentQueueItem, tx_hash: str) -> Dict[str, Any]:
        if not self.supports(PAYMENT_DEPLOY):
            log.error("SETTLEMENT_NO_DEPLOYER", payment_id=payment.id, tx_hash=tx_hash)
            raise RuntimeError("no deployer configured for deploy payments")
        async with self.lock_gate.hold(DEPLOYMENT_LOCK):
            result = await self.deployer(payment, tx_hash)
        log.info("SETTLEMENT_DEPLOYED", payment_id=payment.id, tx_hash=tx_hash, result=result, audit=True)
        return result
