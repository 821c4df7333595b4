# /mintgate/core/tx_monitor.py
# Watches unconfirmed transactions and re-sends them with the SAME nonce and a
# higher gas price when they sit unmined for too long.
#
# Per transaction: Submitted -> Confirmed | Accelerated (-> Submitted, new hash)
#                  | Abandoned.
# Confirmed and Abandoned resolve the future returned by track() exactly once.

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable

from mintgate.core.chain import ContractCall, Receipt
from mintgate.core.errors import (
    MintGateError,
    NonceConflictError,
    TransactionTimeoutError,
    TransientRpcError,
    UnderpricedError,
)
from mintgate.core.logger import get_logger, TX_ABANDONED, TX_ACCELERATED
from mintgate.core.scheduler import PeriodicTask

log = get_logger(__name__)

ReplacedHook = Callable[[str], Awaitable[None]]


@dataclass
class TrackedTx:
    nonce: int
    call: ContractCall
    gas_limit: int
    gas_price: int  # price of the live (last accepted) submission
    submitted_at: float
    first_submitted_at: float
    future: asyncio.Future
    multiplier: Decimal
    hashes: list[str] = field(default_factory=list)
    fee_history: list[int] = field(default_factory=list)  # every price tried, accepted or not
    attempts: int = 1
    on_replaced: ReplacedHook | None = None

    @property
    def tx_hash(self) -> str:
        return self.hashes[-1]

    @property
    def last_fee(self) -> int:
        return self.fee_history[-1]


class TransactionMonitor:
    def __init__(
        self,
        chain,
        poll_interval: float = 2.0,
        accelerate_after: float = 5.0,
        multiplier: Decimal = Decimal("1.2"),
        underpriced_bump: Decimal = Decimal("1.3"),
        max_attempts: int = 5,
        give_up_after: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chain = chain
        self.poll_interval = poll_interval
        self.accelerate_after = accelerate_after
        self.multiplier = Decimal(multiplier)
        self.underpriced_bump = Decimal(underpriced_bump)
        self.max_attempts = max_attempts
        self.give_up_after = give_up_after
        self.clock = clock
        self._tracked: dict[int, TrackedTx] = {}
        self._task = PeriodicTask(f"tx-monitor-{chain.address[:10]}", poll_interval, self.poll_once)

    @classmethod
    def from_settings(cls, chain, config) -> "TransactionMonitor":
        return cls(
            chain,
            poll_interval=config.TX_MONITOR_POLL_SECONDS,
            accelerate_after=config.TX_ACCELERATE_AFTER_SECONDS,
            multiplier=config.TX_GAS_MULTIPLIER,
            underpriced_bump=config.TX_UNDERPRICED_BUMP,
            max_attempts=config.TX_MAX_GAS_ATTEMPTS,
            give_up_after=config.TX_GIVE_UP_SECONDS,
        )

    def start(self):
        if not self._task.running:
            log.info(
                "TX_MONITOR_STARTING",
                poll_interval=self.poll_interval,
                accelerate_after=self.accelerate_after,
                multiplier=str(self.multiplier),
                max_attempts=self.max_attempts,
            )
        self._task.start()

    async def stop(self):
        await self._task.stop()

    def track(
        self,
        tx_hash: str,
        nonce: int,
        gas_price: int,
        gas_limit: int,
        call: ContractCall,
        on_replaced: ReplacedHook | None = None,
    ) -> asyncio.Future:
        """Register a broadcast transaction; the future resolves to its Receipt.

        The receipt may carry a failed status; reverts are the caller's call.
        The future fails with TransactionTimeoutError if the monitor gives up.
        """
        now = self.clock()
        future = asyncio.get_running_loop().create_future()
        self._tracked[nonce] = TrackedTx(
            nonce=nonce,
            call=call,
            gas_limit=gas_limit,
            gas_price=gas_price,
            submitted_at=now,
            first_submitted_at=now,
            future=future,
            multiplier=self.multiplier,
            hashes=[tx_hash],
            fee_history=[gas_price],
            on_replaced=on_replaced,
        )
        log.info("TX_TRACKING", tx_hash=tx_hash, nonce=nonce, gas_price=gas_price)
        return future

    async def poll_once(self):
        for tx in list(self._tracked.values()):
            try:
                await self._check(tx)
            except Exception as e:
                log.error("TX_MONITOR_CHECK_FAILED", nonce=tx.nonce, tx_hash=tx.tx_hash, error=str(e), exc_info=True)

    async def _check(self, tx: TrackedTx):
        lookup_failed = False
        # Any of the hashes sharing this nonce may be the one that got mined.
        for tx_hash in reversed(tx.hashes):
            try:
                receipt = await self.chain.get_receipt(tx_hash)
            except TransientRpcError as e:
                log.warning("TX_RECEIPT_LOOKUP_FAILED", tx_hash=tx_hash, error=str(e))
                lookup_failed = True
                break
            if receipt is not None:
                self._finish(tx, receipt)
                return

        # The wall-clock ceiling holds even while the RPC is unreachable.
        now = self.clock()
        if now - tx.first_submitted_at >= self.give_up_after:
            self._abandon(tx, now)
        elif not lookup_failed and tx.attempts < self.max_attempts and now - tx.submitted_at >= self.accelerate_after:
            await self._accelerate(tx)

    def _next_fee(self, tx: TrackedTx) -> int:
        fee = int(Decimal(tx.last_fee) * tx.multiplier)
        return max(fee, tx.last_fee + 1)

    async def _accelerate(self, tx: TrackedTx):
        new_price = self._next_fee(tx)
        tx.fee_history.append(new_price)
        tx.attempts += 1
        log.info("TX_ACCELERATING", nonce=tx.nonce, old_hash=tx.tx_hash, old_gas=tx.gas_price,
                 new_gas=new_price, attempt=tx.attempts, max_attempts=self.max_attempts)
        try:
            new_hash = await self.chain.send(tx.call, tx.nonce, new_price, tx.gas_limit)
        except UnderpricedError as e:
            tx.multiplier *= self.underpriced_bump
            log.warning("TX_REPLACEMENT_UNDERPRICED", nonce=tx.nonce, gas=new_price,
                        next_multiplier=str(tx.multiplier), error=str(e))
            return
        except NonceConflictError:
            # One of our earlier hashes was mined; the next poll finds its receipt.
            log.info("TX_REPLACEMENT_NONCE_USED", nonce=tx.nonce)
            return
        except MintGateError as e:
            log.warning("TX_ACCELERATION_FAILED", nonce=tx.nonce, error=str(e))
            return

        TX_ACCELERATED.inc()
        tx.hashes.append(new_hash)
        tx.gas_price = new_price
        tx.submitted_at = self.clock()
        log.info("TX_REPLACEMENT_SENT", nonce=tx.nonce, tx_hash=new_hash, gas_price=new_price)
        if tx.on_replaced is not None:
            try:
                await tx.on_replaced(new_hash)
            except Exception as e:
                log.error("TX_REPLACED_HOOK_FAILED", nonce=tx.nonce, tx_hash=new_hash, error=str(e))

    def _finish(self, tx: TrackedTx, receipt: Receipt):
        self._tracked.pop(tx.nonce, None)
        log.info("TX_CONFIRMED", tx_hash=receipt.tx_hash, nonce=tx.nonce, block=receipt.block_number,
                 status=receipt.status, attempts=tx.attempts)
        if not tx.future.done():
            tx.future.set_result(receipt)

    def _abandon(self, tx: TrackedTx, now: float):
        self._tracked.pop(tx.nonce, None)
        TX_ABANDONED.inc()
        log.error("TX_ABANDONED", tx_hash=tx.tx_hash, nonce=tx.nonce, attempts=tx.attempts,
                  elapsed=round(now - tx.first_submitted_at, 1), hashes=tx.hashes)
        if not tx.future.done():
            tx.future.set_exception(TransactionTimeoutError(tx.tx_hash, tx.nonce, tx.attempts))

    def pending_count(self) -> int:
        return len(self._tracked)

    def is_pending(self, tx_hash: str) -> bool:
        return any(tx_hash in tx.hashes for tx in self._tracked.values())

    def get_pending(self) -> list[TrackedTx]:
        return list(self._tracked.values())
