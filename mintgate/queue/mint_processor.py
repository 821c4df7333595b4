# /mintgate/queue/mint_processor.py
# Serializes and batches mint transactions for the minter account.

import math
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from mintgate.abis import MINT_TOKEN_ABI
from mintgate.core.chain import ContractCall, Receipt, checksum_all
from mintgate.core.config import settings
from mintgate.core.decorators import rpc_retrying
from mintgate.core.errors import AlreadyMintedError, MintGateError, TransactionTimeoutError
from mintgate.core.logger import get_logger, bind_processor, MINTS_PROCESSED
from mintgate.core.scheduler import PeriodicTask
from mintgate.core.tx import TransactionSubmitter
from mintgate.queue.schemas import (
    MintBatchView,
    MintQueueStats,
    MintQueueStatus,
    PayerMintView,
    is_bytes32,
)
from mintgate.store import system_settings
from mintgate.store.database import Database
from mintgate.store.models import (
    COMPLETED,
    FAILED,
    MODE_CHALLENGE_RESPONSE,
    PAYMENT_MODES,
    PENDING,
    PROCESSING,
    MintBatch,
    MintHistoryRecord,
    MintQueueItem,
    TX_KIND_MINT,
    utcnow,
)

log = get_logger(__name__)

ALREADY_MINTED_NOTE = "already minted on-chain; skipped"


class MintQueueProcessor:
    """
    Durable mint queue for one minter account.

    Items are pulled oldest-first, grouped per target contract, checked against
    the contract's ``hasMinted`` state, and sent either as one ``batchMint`` or
    as individual ``mint`` calls. Confirmed items are copied to mint_history.
    """
    def __init__(self, db: Database, submitter: TransactionSubmitter, config=None):
        self.config = config or settings
        self.db = db
        self.submitter = submitter
        self.chain = submitter.chain
        self.default_token_address = self.config.DEFAULT_TOKEN_ADDRESS
        self.batch_interval_seconds = self.config.MINT_BATCH_INTERVAL_SECONDS
        self.max_batch_size = self.config.MINT_MAX_BATCH_SIZE
        self.max_retries = self.config.MINT_MAX_RETRIES
        self._is_processing = False
        self._task: PeriodicTask | None = None

    async def load_settings(self):
        values = await system_settings.read_int_settings(
            self.db,
            {
                system_settings.MINT_BATCH_INTERVAL_SECONDS: self.batch_interval_seconds,
                system_settings.MINT_MAX_BATCH_SIZE: self.max_batch_size,
            },
        )
        self.batch_interval_seconds = values[system_settings.MINT_BATCH_INTERVAL_SECONDS]
        self.max_batch_size = values[system_settings.MINT_MAX_BATCH_SIZE]

    async def start(self):
        # Settings are read once here; changing them needs a restart.
        await self.load_settings()
        await self.recover_stuck()
        await self.submitter.initialize()
        self._task = PeriodicTask("mint-queue", self.batch_interval_seconds, self._run_batch)
        self._task.start()
        log.info("MINT_QUEUE_PROCESSOR_STARTED", interval_s=self.batch_interval_seconds,
                 max_batch=self.max_batch_size, minter=self.submitter.address)

    async def stop(self):
        if self._task:
            await self._task.stop()
            self._task = None
        await self.submitter.close()
        log.info("MINT_QUEUE_PROCESSOR_STOPPED")

    async def _run_batch(self):
        bind_processor("mint", self.submitter.address)
        await self.process_batch()

    async def recover_stuck(self) -> int:
        """Items left in ``processing`` by a crash go back to ``pending``."""
        async with self.db.session() as session:
            result = await session.execute(
                update(MintQueueItem)
                .where(MintQueueItem.status == PROCESSING)
                .values(status=PENDING, updated_at=utcnow())
            )
            count = result.rowcount or 0
        if count:
            log.warning("MINT_QUEUE_RECOVERED_STUCK_ITEMS", count=count)
        return count

    async def add_to_queue(
        self,
        payer: str,
        idempotency_key: str,
        payment_tx_hash: Optional[str] = None,
        proof: Optional[Dict[str, Any]] = None,
        mode: str = MODE_CHALLENGE_RESPONSE,
        target_address: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> str:
        """Queue one mint. Returns the queue id.

        A key already queued (not yet completed) returns the existing id.
        A key already completed or in history raises AlreadyMintedError.
        """
        if not is_bytes32(idempotency_key):
            raise ValueError("idempotency key must be a 0x-prefixed bytes32")
        if mode not in PAYMENT_MODES:
            raise ValueError(f"unknown payment mode: {mode}")
        target = target_address or self.default_token_address
        if not target:
            raise ValueError("no target contract for mint")
        key = idempotency_key.lower()

        try:
            async with self.db.session() as session:
                existing = (
                    await session.execute(select(MintQueueItem).where(MintQueueItem.idempotency_key == key))
                ).scalar_one_or_none()
                if existing is not None:
                    if existing.status == COMPLETED:
                        raise AlreadyMintedError(key, existing.id)
                    log.info("MINT_ALREADY_QUEUED", queue_id=existing.id, key=key)
                    return existing.id

                in_history = (
                    await session.execute(select(MintHistoryRecord.id).where(MintHistoryRecord.idempotency_key == key))
                ).scalar_one_or_none()
                if in_history is not None:
                    raise AlreadyMintedError(key)

                position = (
                    await session.execute(
                        select(func.coalesce(func.max(MintQueueItem.queue_position), 0) + 1).where(
                            MintQueueItem.status == PENDING
                        )
                    )
                ).scalar_one()
                item = MintQueueItem(
                    payer_address=payer,
                    idempotency_key=key,
                    target_address=target,
                    payment_id=payment_id,
                    payment_tx_hash=payment_tx_hash,
                    proof=proof,
                    payment_mode=mode,
                    status=PENDING,
                    queue_position=position,
                )
                session.add(item)
                await session.flush()
                queue_id = item.id
        except IntegrityError:
            # Lost a race with a concurrent insert of the same key.
            async with self.db.session() as session:
                existing = (
                    await session.execute(select(MintQueueItem).where(MintQueueItem.idempotency_key == key))
                ).scalar_one()
            return existing.id

        log.info("MINT_QUEUED", queue_id=queue_id, position=position, payer=payer, target=target, mode=mode)
        return queue_id

    async def process_batch(self):
        if self._is_processing:
            log.info("MINT_BATCH_SKIPPED_ALREADY_RUNNING")
            return
        self._is_processing = True
        try:
            async with self.db.session() as session:
                items = list(
                    (
                        await session.execute(
                            select(MintQueueItem)
                            .where(MintQueueItem.status == PENDING)
                            .order_by(MintQueueItem.created_at, MintQueueItem.queue_position)
                            .limit(self.max_batch_size)
                        )
                    ).scalars()
                )
            if not items:
                return

            groups: "OrderedDict[str, List[MintQueueItem]]" = OrderedDict()
            for item in items:
                groups.setdefault(item.target_address, []).append(item)
            log.info("MINT_BATCH_STARTED", items=len(items), targets=len(groups))

            for target, group in groups.items():
                await self._process_group(target, group)
        finally:
            self._is_processing = False

    async def _process_group(self, target: str, items: List[MintQueueItem]):
        await self._set_status([i.id for i in items], PROCESSING)
        try:
            mint_amount = await self._view(target, "mintAmount")
            fresh = await self._skip_already_minted(target, items, mint_amount)
            if not fresh:
                return
            remaining = await self._view(target, "remainingSupply")
            required = mint_amount * len(fresh)
            if remaining < required:
                raise MintGateError(f"Insufficient supply: need {required}, have {remaining}")
        except Exception as e:
            log.error("MINT_GROUP_PRECHECK_FAILED", target=target, error=str(e))
            await self._record_failure(items, str(e))
            return

        use_batch = self.config.BATCH_MINT_ENABLED and len(fresh) >= self.config.BATCH_MINT_MIN_ITEMS
        chunks = [fresh] if use_batch else [[item] for item in fresh]
        for chunk in chunks:
            await self._mint_chunk(target, chunk, mint_amount)

    async def _view(self, target: str, function: str, *args):
        async for attempt in rpc_retrying(self.config.RPC_MAX_ATTEMPTS, self.config.RPC_RETRY_BACKOFF_SECONDS):
            with attempt:
                return await self.chain.call(target, MINT_TOKEN_ABI, function, *args)

    async def _skip_already_minted(self, target: str, items: List[MintQueueItem],
                                   mint_amount: int) -> List[MintQueueItem]:
        """Complete items whose key the contract already holds, e.g. a timed-out mint that landed late.

        Their history row carries the last hash broadcast for the item, if any.
        """
        fresh, skipped = [], []
        for item in items:
            if await self._view(target, "hasMinted", item.idempotency_key):
                skipped.append(item)
            else:
                fresh.append(item)
        if skipped:
            now = utcnow()
            async with self.db.session() as session:
                await session.execute(
                    update(MintQueueItem)
                    .where(MintQueueItem.id.in_([i.id for i in skipped]))
                    .values(status=COMPLETED, error_message=ALREADY_MINTED_NOTE,
                            processed_at=now, updated_at=now)
                )
                for item in skipped:
                    session.add(
                        MintHistoryRecord(
                            payer_address=item.payer_address,
                            payment_tx_hash=item.payment_tx_hash,
                            idempotency_key=item.idempotency_key,
                            target_address=item.target_address,
                            mint_tx_hash=item.mint_tx_hash,
                            amount=str(mint_amount),
                            payment_mode=item.payment_mode,
                            completed_at=now,
                        )
                    )
            MINTS_PROCESSED.labels("skipped").inc(len(skipped))
            log.warning("MINTS_SKIPPED_ALREADY_MINTED", target=target, keys=[i.idempotency_key for i in skipped])
        return fresh

    def _build_call(self, target: str, items: List[MintQueueItem]) -> tuple[ContractCall, int]:
        if len(items) == 1:
            item = items[0]
            call = ContractCall(target, MINT_TOKEN_ABI, "mint",
                                (checksum_all([item.payer_address])[0], item.idempotency_key))
            return call, self.config.MINT_GAS_LIMIT
        call = ContractCall(
            target,
            MINT_TOKEN_ABI,
            "batchMint",
            (checksum_all([i.payer_address for i in items]), [i.idempotency_key for i in items]),
        )
        gas_limit = self.config.BATCH_MINT_BASE_GAS + self.config.BATCH_MINT_PER_ITEM_GAS * len(items)
        return call, gas_limit

    async def _mint_chunk(self, target: str, items: List[MintQueueItem], mint_amount: int):
        call, gas_limit = self._build_call(target, items)
        async with self.db.session() as session:
            batch = MintBatch(target_address=target, mint_count=len(items), status=PENDING)
            session.add(batch)
            await session.flush()
            batch_id = batch.id

        async def on_broadcast(tx_hash: str):
            async with self.db.session() as session:
                await session.execute(update(MintBatch).where(MintBatch.id == batch_id).values(batch_tx_hash=tx_hash))

        log.info("MINT_SUBMITTING", target=target, count=len(items), function=call.function, gas_limit=gas_limit)
        try:
            receipt = await self.submitter.submit(call, gas_limit, kind=TX_KIND_MINT, on_broadcast=on_broadcast)
        except TransactionTimeoutError as e:
            # It may still land; the hasMinted check on retry finds it.
            log.error("MINT_TX_TIMED_OUT", target=target, count=len(items), tx_hash=e.tx_hash, nonce=e.nonce)
            await self._record_failure(items, str(e), batch_id=batch_id, tx_hash=e.tx_hash)
            return
        except Exception as e:
            log.error("MINT_TX_FAILED", target=target, count=len(items), error=str(e))
            await self._record_failure(items, str(e), batch_id=batch_id)
            return

        await self._complete(items, receipt, mint_amount, batch_id)

    async def _complete(self, items: List[MintQueueItem], receipt: Receipt, mint_amount: int, batch_id: int):
        now = utcnow()
        async with self.db.session() as session:
            await session.execute(
                update(MintQueueItem)
                .where(MintQueueItem.id.in_([i.id for i in items]))
                .values(status=COMPLETED, mint_tx_hash=receipt.tx_hash, processed_at=now,
                        updated_at=now, error_message=None)
            )
            for item in items:
                session.add(
                    MintHistoryRecord(
                        payer_address=item.payer_address,
                        payment_tx_hash=item.payment_tx_hash,
                        idempotency_key=item.idempotency_key,
                        target_address=item.target_address,
                        mint_tx_hash=receipt.tx_hash,
                        amount=str(mint_amount),
                        block_number=receipt.block_number,
                        payment_mode=item.payment_mode,
                        completed_at=now,
                    )
                )
            await session.execute(
                update(MintBatch)
                .where(MintBatch.id == batch_id)
                .values(status="confirmed", batch_tx_hash=receipt.tx_hash, confirmed_at=now,
                        block_number=receipt.block_number, gas_used=receipt.gas_used)
            )
        MINTS_PROCESSED.labels(COMPLETED).inc(len(items))
        log.info("MINTS_CONFIRMED", tx_hash=receipt.tx_hash, block=receipt.block_number,
                 count=len(items), gas_used=receipt.gas_used, audit=True)

    async def _record_failure(self, items: List[MintQueueItem], error: str, batch_id: Optional[int] = None,
                              tx_hash: Optional[str] = None):
        now = utcnow()
        async with self.db.session() as session:
            for item in items:
                row = await session.get(MintQueueItem, item.id)
                if row is None or row.status != PROCESSING:
                    continue
                row.retry_count += 1
                row.error_message = error
                if tx_hash:
                    row.mint_tx_hash = tx_hash
                row.updated_at = now
                if row.retry_count >= self.max_retries:
                    row.status = FAILED
                    row.processed_at = now
                    MINTS_PROCESSED.labels(FAILED).inc()
                    log.error("MINT_PERMANENTLY_FAILED", queue_id=row.id, retries=row.retry_count, error=error)
                else:
                    row.status = PENDING
                    MINTS_PROCESSED.labels("retry").inc()
            if batch_id is not None:
                await session.execute(
                    update(MintBatch)
                    .where(MintBatch.id == batch_id)
                    .values(status=FAILED, error=error)
                )

    async def _set_status(self, ids: List[str], status: str):
        async with self.db.session() as session:
            await session.execute(
                update(MintQueueItem).where(MintQueueItem.id.in_(ids)).values(status=status, updated_at=utcnow())
            )

    async def get_queue_status(self, queue_id: str) -> Optional[MintQueueStatus]:
        async with self.db.session() as session:
            item = await session.get(MintQueueItem, queue_id)
            if item is None:
                return None
            rank = None
            wait = 0
            if item.status == PENDING:
                ahead = (
                    await session.execute(
                        select(func.count()).select_from(MintQueueItem).where(
                            MintQueueItem.status == PENDING,
                            or_(
                                MintQueueItem.created_at < item.created_at,
                                (MintQueueItem.created_at == item.created_at)
                                & (MintQueueItem.queue_position < item.queue_position),
                            ),
                        )
                    )
                ).scalar_one()
                rank = ahead + 1
                wait = math.ceil(rank / max(self.max_batch_size, 1)) * self.batch_interval_seconds
            status = MintQueueStatus.model_validate(item)
        return status.model_copy(update={"queue_position": rank, "estimated_wait_seconds": wait})

    async def get_queue_stats(self) -> MintQueueStats:
        async with self.db.session() as session:
            rows = await session.execute(
                select(MintQueueItem.status, func.count()).group_by(MintQueueItem.status)
            )
            counts = {status: count for status, count in rows.all()}
            minted = (await session.execute(select(func.count()).select_from(MintHistoryRecord))).scalar_one()
            batches = (await session.execute(select(func.count()).select_from(MintBatch))).scalar_one()
        return MintQueueStats(
            pending=counts.get(PENDING, 0),
            processing=counts.get(PROCESSING, 0),
            completed=counts.get(COMPLETED, 0),
            failed=counts.get(FAILED, 0),
            total_minted=minted,
            total_batches=batches,
            nonce_state=self.submitter.get_state(),
        )

    async def get_payer_queue_status(self, payer: str) -> List[PayerMintView]:
        async with self.db.session() as session:
            rows = await session.execute(
                select(MintQueueItem)
                .where(MintQueueItem.payer_address == payer)
                .order_by(MintQueueItem.created_at.desc())
                .limit(10)
            )
            return [PayerMintView.model_validate(r) for r in rows.scalars()]

    async def get_recent_batches(self, limit: int = 10) -> List[MintBatchView]:
        async with self.db.session() as session:
            rows = await session.execute(select(MintBatch).order_by(MintBatch.created_at.desc()).limit(limit))
            return [MintBatchView.model_validate(r) for r in rows.scalars()]
