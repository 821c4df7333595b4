# /mintgate/queue/payment_processor.py
# Serializes every fund-moving transferWithAuthorization for the relayer account.
#
# Item lifecycle:
#   pending -> processing -> processing + tx_hash (broadcast) -> completed
#                         \-> failed (invalid / revert / timeout / exhausted retries)
# An item only becomes completed after the settlement bridge has run.
# A timed-out transfer keeps being watched for PAYMENT_TIMEOUT_WATCH_SECONDS;
# if it is mined after all, the item is settled and completed then.

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from mintgate.abis import USDC_ABI
from mintgate.core.chain import ContractCall, Receipt
from mintgate.core.config import settings
from mintgate.core.decorators import rpc_retrying
from mintgate.core.errors import InvalidAuthorizationError, MintGateError, TransactionTimeoutError
from mintgate.core.logger import get_logger, bind_processor, PAYMENTS_PROCESSED
from mintgate.core.scheduler import PeriodicTask
from mintgate.core.tx import TransactionSubmitter
from mintgate.queue.schemas import PaymentAuthorization, PaymentStats, PaymentStatus, parse_authorization
from mintgate.queue.settlement import SettlementBridge
from mintgate.store import system_settings
from mintgate.store.database import Database
from mintgate.store.models import (
    COMPLETED,
    FAILED,
    PAYMENT_DEPLOY,
    PAYMENT_MINT,
    PENDING,
    PROCESSING,
    PaymentQueueItem,
    TX_KIND_TRANSFER,
    utcnow,
)

log = get_logger(__name__)


class PaymentQueueProcessor:
    def __init__(self, db: Database, submitter: TransactionSubmitter, bridge: SettlementBridge,
                 config=None, clock: Callable[[], float] = time.time):
        self.config = config or settings
        self.db = db
        self.submitter = submitter
        self.chain = submitter.chain
        self.bridge = bridge
        self.clock = clock
        self.batch_interval_ms = self.config.PAYMENT_BATCH_INTERVAL_MS
        self.batch_size = self.config.PAYMENT_BATCH_SIZE
        self._is_processing = False
        self._task: PeriodicTask | None = None

    async def load_settings(self):
        values = await system_settings.read_int_settings(
            self.db,
            {
                system_settings.PAYMENT_BATCH_INTERVAL_MS: self.batch_interval_ms,
                system_settings.PAYMENT_BATCH_SIZE: self.batch_size,
            },
        )
        self.batch_interval_ms = values[system_settings.PAYMENT_BATCH_INTERVAL_MS]
        self.batch_size = values[system_settings.PAYMENT_BATCH_SIZE]

    async def start(self):
        await self.load_settings()
        await self.recover_stuck()
        await self.submitter.initialize()
        self._task = PeriodicTask("payment-queue", self.batch_interval_ms / 1000, self._run_batch)
        self._task.start()
        log.info("PAYMENT_QUEUE_PROCESSOR_STARTED", interval_ms=self.batch_interval_ms,
                 batch_size=self.batch_size, relayer=self.submitter.address)

    async def stop(self):
        if self._task:
            await self._task.stop()
            self._task = None
        await self.submitter.close()
        log.info("PAYMENT_QUEUE_PROCESSOR_STOPPED")

    async def _run_batch(self):
        bind_processor("payment", self.submitter.address)
        await self.process_batch()

    async def recover_stuck(self) -> int:
        """Reset never-broadcast ``processing`` items to ``pending``.

        Items that already carry a tx hash keep their status; the next cycle
        reconciles them against the chain instead of re-sending the transfer.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(PaymentQueueItem)
                .where(PaymentQueueItem.status == PROCESSING, PaymentQueueItem.tx_hash.is_(None))
                .values(status=PENDING, updated_at=utcnow())
            )
            count = result.rowcount or 0
        if count:
            log.warning("PAYMENT_QUEUE_RECOVERED_STUCK_ITEMS", count=count)
        return count

    async def add_to_queue(
        self,
        payment_type: str,
        authorization: Dict[str, Any] | PaymentAuthorization,
        payer: str,
        amount: int | str,
        payment_token_address: str,
        target_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if payment_type not in (PAYMENT_MINT, PAYMENT_DEPLOY):
            raise ValueError(f"unknown payment type: {payment_type}")
        if not self.bridge.supports(payment_type):
            raise ValueError(f"{payment_type} payments are not accepted: no deployer configured")
        auth = parse_authorization(authorization)
        if auth.value != int(amount):
            raise InvalidAuthorizationError("Authorization value does not match payment amount")
        if auth.from_.lower() != payer.lower():
            raise InvalidAuthorizationError("Authorization signer does not match payer")
        auth.vrs()

        try:
            async with self.db.session() as session:
                existing = (
                    await session.execute(
                        select(PaymentQueueItem.id).where(PaymentQueueItem.authorization_nonce == auth.nonce)
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    log.info("PAYMENT_ALREADY_QUEUED", payment_id=existing, auth_nonce=auth.nonce)
                    return existing
                item = PaymentQueueItem(
                    payment_type=payment_type,
                    payer=auth.from_,
                    amount=str(int(amount)),
                    payment_token_address=payment_token_address,
                    target_address=target_address,
                    authorization=auth.to_payload(),
                    authorization_nonce=auth.nonce,
                    status=PENDING,
                    meta=metadata or {},
                    enqueued_at_ms=int(self.clock() * 1000),
                )
                session.add(item)
                await session.flush()
                payment_id = item.id
        except IntegrityError:
            async with self.db.session() as session:
                return (
                    await session.execute(
                        select(PaymentQueueItem.id).where(PaymentQueueItem.authorization_nonce == auth.nonce)
                    )
                ).scalar_one()

        log.info("PAYMENT_QUEUED", payment_id=payment_id, payment_type=payment_type, payer=auth.from_, amount=str(amount))
        return payment_id

    async def get_payment_status(self, payment_id: str) -> Optional[PaymentStatus]:
        async with self.db.session() as session:
            item = await session.get(PaymentQueueItem, payment_id)
            return PaymentStatus.model_validate(item) if item else None

    async def get_stats(self) -> PaymentStats:
        async with self.db.session() as session:
            rows = await session.execute(
                select(PaymentQueueItem.status, func.count()).group_by(PaymentQueueItem.status)
            )
            counts = {status: count for status, count in rows.all()}
        return PaymentStats(
            pending=counts.get(PENDING, 0),
            processing=counts.get(PROCESSING, 0),
            completed=counts.get(COMPLETED, 0),
            failed=counts.get(FAILED, 0),
            nonce_state=self.submitter.get_state(),
        )

    async def process_batch(self):
        if self._is_processing:
            log.info("PAYMENT_BATCH_SKIPPED_ALREADY_RUNNING")
            return
        self._is_processing = True
        try:
            await self._reconcile_broadcast()

            async with self.db.session() as session:
                ids = list(
                    (
                        await session.execute(
                            select(PaymentQueueItem.id)
                            .where(PaymentQueueItem.status == PENDING)
                            .order_by(PaymentQueueItem.created_at)
                            .limit(self.batch_size)
                        )
                    ).scalars()
                )
                if not ids:
                    return
                await session.execute(
                    update(PaymentQueueItem)
                    .where(PaymentQueueItem.id.in_(ids))
                    .values(status=PROCESSING, updated_at=utcnow())
                )

            log.info("PAYMENT_BATCH_STARTED", count=len(ids))
            # Items run concurrently; NonceManager.acquire is the serialization point.
            results = await asyncio.gather(
                *(self._process_payment(payment_id) for payment_id in ids), return_exceptions=True
            )
            for payment_id, result in zip(ids, results):
                if isinstance(result, Exception):
                    # Left in processing; a broadcast hash gets it reconciled next cycle.
                    log.error("PAYMENT_ITEM_CRASHED", payment_id=payment_id, error_type=type(result).__name__,
                              error=str(result))
        finally:
            self._is_processing = False

    async def _view(self, address: str, function: str, *args):
        async for attempt in rpc_retrying(self.config.RPC_MAX_ATTEMPTS, self.config.RPC_RETRY_BACKOFF_SECONDS):
            with attempt:
                return await self.chain.call(address, USDC_ABI, function, *args)

    async def _validate(self, item: PaymentQueueItem, auth: PaymentAuthorization):
        now = int(self.clock())
        if auth.valid_before <= now:
            raise InvalidAuthorizationError("Authorization expired")
        if auth.valid_after > now:
            raise InvalidAuthorizationError("Authorization not yet valid")
        if await self._view(item.payment_token_address, "authorizationState", auth.from_, auth.nonce):
            raise InvalidAuthorizationError("Authorization already used on-chain")

    async def _process_payment(self, payment_id: str):
        async with self.db.session() as session:
            item = await session.get(PaymentQueueItem, payment_id)

        try:
            auth = parse_authorization(item.authorization)
            await self._validate(item, auth)
            v, r, s = auth.vrs()
            call = ContractCall(
                item.payment_token_address,
                USDC_ABI,
                "transferWithAuthorization",
                (auth.from_, auth.to, auth.value, auth.valid_after, auth.valid_before, auth.nonce, v, r, s),
            )

            async def on_broadcast(tx_hash: str):
                await self._set_tx_hash(payment_id, tx_hash)

            receipt = await self.submitter.submit(
                call, self.config.PAYMENT_GAS_LIMIT, kind=TX_KIND_TRANSFER, on_broadcast=on_broadcast
            )
        except TransactionTimeoutError as e:
            log.error("PAYMENT_TX_TIMED_OUT", payment_id=payment_id, tx_hash=e.tx_hash, nonce=e.nonce)
            await self._fail(payment_id, str(e), tx_hash=e.tx_hash, watch=True)
            return
        except MintGateError as e:
            log.error("PAYMENT_FAILED", payment_id=payment_id, error_type=type(e).__name__, error=str(e))
            await self._fail(payment_id, str(e), tx_hash=getattr(e, "tx_hash", None))
            return
        except Exception as e:
            log.error("PAYMENT_UNEXPECTED_ERROR", payment_id=payment_id, error=str(e), exc_info=True)
            await self._fail(payment_id, str(e))
            return

        await self._settle(payment_id, receipt)

    async def _set_tx_hash(self, payment_id: str, tx_hash: str):
        async with self.db.session() as session:
            await session.execute(
                update(PaymentQueueItem)
                .where(PaymentQueueItem.id == payment_id)
                .values(tx_hash=tx_hash, updated_at=utcnow())
            )

    async def _settle(self, payment_id: str, receipt: Receipt):
        """Run the bridge, then mark the payment completed.

        If the bridge fails the item stays ``processing`` with its hash and is
        picked up again by the next cycle's reconcile step.
        """
        async with self.db.session() as session:
            item = await session.get(PaymentQueueItem, payment_id)
            item.tx_hash = receipt.tx_hash

        try:
            result = await self.bridge.on_payment_completed(item, receipt.tx_hash)
        except Exception as e:
            log.error("SETTLEMENT_BRIDGE_FAILED", payment_id=payment_id, tx_hash=receipt.tx_hash, error=str(e))
            async with self.db.session() as session:
                await session.execute(
                    update(PaymentQueueItem)
                    .where(PaymentQueueItem.id == payment_id)
                    .values(status=PROCESSING, tx_hash=receipt.tx_hash, error=f"settlement pending: {e}",
                            watch_until_ms=None, updated_at=utcnow())
                )
            return

        now = utcnow()
        async with self.db.session() as session:
            await session.execute(
                update(PaymentQueueItem)
                .where(PaymentQueueItem.id == payment_id)
                .values(status=COMPLETED, tx_hash=receipt.tx_hash, result=result, error=None,
                        watch_until_ms=None, processed_at=now, updated_at=now)
            )
        PAYMENTS_PROCESSED.labels(COMPLETED).inc()
        log.info("PAYMENT_SETTLED", payment_id=payment_id, tx_hash=receipt.tx_hash, block=receipt.block_number,
                 payer=item.payer, amount=item.amount, audit=True)

    async def _reconcile_broadcast(self):
        """Finish items whose transfer was broadcast in an earlier cycle or process.

        Covers ``processing`` items with a hash and, until their watch window
        closes, items that failed on a timeout: such a transfer can still be
        mined once the node gets to it, and the payer's mints are owed then.
        """
        now_ms = int(self.clock() * 1000)
        async with self.db.session() as session:
            items = list(
                (
                    await session.execute(
                        select(PaymentQueueItem)
                        .where(
                            PaymentQueueItem.tx_hash.is_not(None),
                            or_(
                                PaymentQueueItem.status == PROCESSING,
                                and_(PaymentQueueItem.status == FAILED, PaymentQueueItem.watch_until_ms >= now_ms),
                            ),
                        )
                        .order_by(PaymentQueueItem.created_at)
                    )
                ).scalars()
            )
        for item in items:
            try:
                await self._reconcile(item)
            except MintGateError as e:
                log.warning("PAYMENT_RECONCILE_DEFERRED", payment_id=item.id, error=str(e))

    async def _reconcile(self, item: PaymentQueueItem):
        timed_out = item.status == FAILED
        receipt = await self.chain.get_receipt(item.tx_hash)
        if receipt is not None:
            if receipt.succeeded:
                log.info("PAYMENT_RESUMING_SETTLEMENT", payment_id=item.id, tx_hash=item.tx_hash, timed_out=timed_out)
                await self._settle(item.id, receipt)
            elif timed_out:
                await self._stop_watching(item.id, "reverted")
            else:
                await self._fail(item.id, f"transaction reverted: {item.tx_hash}", tx_hash=item.tx_hash)
            return

        auth = parse_authorization(item.authorization)
        if await self._view(item.payment_token_address, "authorizationState", auth.from_, auth.nonce):
            # Mined under an earlier same-nonce hash than the one persisted.
            log.info("PAYMENT_AUTHORIZATION_CONSUMED", payment_id=item.id, tx_hash=item.tx_hash, timed_out=timed_out)
            await self._settle(item.id, Receipt(tx_hash=item.tx_hash, status=1, block_number=0, gas_used=0))
            return

        if not await self.chain.transaction_known(item.tx_hash):
            if timed_out:
                await self._stop_watching(item.id, "dropped")
                return
            log.warning("PAYMENT_TX_DROPPED_REQUEUED", payment_id=item.id, tx_hash=item.tx_hash)
            async with self.db.session() as session:
                await session.execute(
                    update(PaymentQueueItem)
                    .where(PaymentQueueItem.id == item.id)
                    .values(status=PENDING, tx_hash=None, updated_at=utcnow())
                )

    async def _stop_watching(self, payment_id: str, reason: str):
        log.info("PAYMENT_WATCH_ENDED", payment_id=payment_id, reason=reason)
        async with self.db.session() as session:
            await session.execute(
                update(PaymentQueueItem)
                .where(PaymentQueueItem.id == payment_id)
                .values(watch_until_ms=None, updated_at=utcnow())
            )

    async def _fail(self, payment_id: str, error: str, tx_hash: Optional[str] = None, watch: bool = False):
        now = utcnow()
        values = dict(status=FAILED, error=error, processed_at=now, updated_at=now)
        if tx_hash:
            values["tx_hash"] = tx_hash
        if watch:
            values["watch_until_ms"] = int(self.clock() * 1000) + self.config.PAYMENT_TIMEOUT_WATCH_SECONDS * 1000
        async with self.db.session() as session:
            await session.execute(update(PaymentQueueItem).where(PaymentQueueItem.id == payment_id).values(**values))
        PAYMENTS_PROCESSED.labels(FAILED).inc()
