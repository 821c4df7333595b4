# /mintgate/core/tx.py
# Full async lifecycle of one outgoing transaction for one signing account:
# nonce lease -> local sign -> broadcast -> monitor -> receipt.

import asyncio
from typing import Awaitable, Callable

from mintgate.core.account_lock import AccountLock
from mintgate.core.chain import ContractCall, Receipt, SignedTx, self_transfer
from mintgate.core.config import settings
from mintgate.core.decorators import rpc_retrying
from mintgate.core.errors import (
    NonceConflictError,
    OnChainRevertError,
    TransactionTimeoutError,
    TransientRpcError,
)
from mintgate.core.gas_estimator import GasEstimator
from mintgate.core.logger import get_logger, NONCE_CONFLICTS
from mintgate.core.nonce_manager import NonceLease, NonceManager
from mintgate.core.tx_monitor import TransactionMonitor
from mintgate.store.database import Database
from mintgate.store.models import TX_KIND_GAP_FILL
from mintgate.store.pending import PendingTransactionLedger

log = get_logger(__name__)

BroadcastHook = Callable[[str], Awaitable[None]]

GAP_FILL_GAS_LIMIT = 21_000


class TransactionSubmitter:
    """Submits transactions for one account and awaits their receipts.

    Retry layers are split so that they never race:

    * before a successful broadcast, transient failures re-send the *same*
      signed bytes (same nonce, same fee), which a node that already has them
      answers with "already known";
    * after a successful broadcast only the TransactionMonitor resubmits.
    """
    def __init__(self, chain, db: Database, config=None, monitor: TransactionMonitor | None = None):
        self.config = config or settings
        self.chain = chain
        self.address = chain.address
        self.ledger = PendingTransactionLedger(db, self.address)
        self.nonce_manager = NonceManager(chain, self.ledger)
        self.monitor = monitor or TransactionMonitor.from_settings(chain, self.config)
        self.gas_estimator = GasEstimator(chain, self.config.GAS_PRICE_BUFFER)
        self.account_lock = AccountLock(self.address, self.config.SESSION_DIR)
        self.is_initialized = False
        self._gap_fills: set[asyncio.Task] = set()

    async def initialize(self):
        if self.is_initialized:
            return
        self.account_lock.acquire()
        self.monitor.start()
        self.is_initialized = True
        log.info("TRANSACTION_SUBMITTER_INITIALIZED", address=self.address)

    async def close(self):
        for task in list(self._gap_fills):
            task.cancel()
        await self.monitor.stop()
        self.account_lock.release()
        self.is_initialized = False

    def _retrying(self):
        return rpc_retrying(self.config.RPC_MAX_ATTEMPTS, self.config.RPC_RETRY_BACKOFF_SECONDS)

    async def _acquire(self) -> NonceLease:
        async for attempt in self._retrying():
            with attempt:
                return await self.nonce_manager.acquire()

    async def _broadcast(self, signed: SignedTx) -> str:
        async for attempt in self._retrying():
            with attempt:
                return await self.chain.broadcast(signed)

    async def _landed(self, signed: SignedTx) -> bool:
        try:
            return await self.chain.transaction_known(signed.tx_hash)
        except TransientRpcError:
            return False

    async def _send_with_fresh_nonce(self, call: ContractCall, gas_price: int, gas_limit: int) -> tuple[NonceLease, str]:
        for _ in range(self.config.NONCE_CONFLICT_RETRIES):
            lease = await self._acquire()
            signed = self.chain.sign(call, lease.nonce, gas_price, gas_limit)
            try:
                return lease, await self._broadcast(signed)
            except NonceConflictError as e:
                NONCE_CONFLICTS.inc()
                if await self._landed(signed):
                    # An earlier retry of these exact bytes got through.
                    return lease, signed.tx_hash
                log.warning("NONCE_CONFLICT_REACQUIRING", nonce=lease.nonce, error=str(e))
                await lease.release(confirmed=True)
                await self.nonce_manager.refresh()
            except Exception:
                await self._fill_gap(lease, gas_price)
                raise
        raise TransientRpcError(
            f"nonce still conflicting after {self.config.NONCE_CONFLICT_RETRIES} re-acquires"
        )

    async def _fill_gap(self, lease: NonceLease, gas_price: int):
        """Give back a nonce that never went out.

        If later nonces are already live they cannot mine past the hole, so the
        nonce is plugged with a zero-value self-transfer instead of waiting for
        the next submission to reuse it.
        """
        if not self.nonce_manager.has_active_above(lease.nonce):
            await lease.release(confirmed=False)
            return

        call = self_transfer(self.address)
        signed = self.chain.sign(call, lease.nonce, gas_price, GAP_FILL_GAS_LIMIT)
        try:
            tx_hash = await self._broadcast(signed)
        except NonceConflictError:
            await lease.release(confirmed=True)
            return
        except Exception as e:
            log.error("NONCE_GAP_FILL_FAILED", nonce=lease.nonce, error=str(e))
            await lease.release(confirmed=False)
            return

        await lease.bind(tx_hash, to_address=self.address, kind=TX_KIND_GAP_FILL)
        log.warning("NONCE_GAP_FILLED", nonce=lease.nonce, tx_hash=tx_hash)
        future = self.monitor.track(tx_hash, lease.nonce, gas_price, GAP_FILL_GAS_LIMIT, call)
        task = asyncio.create_task(self._release_when_mined(lease, future))
        self._gap_fills.add(task)
        task.add_done_callback(self._gap_fills.discard)

    async def _release_when_mined(self, lease: NonceLease, future: asyncio.Future):
        try:
            await future
        except TransactionTimeoutError as e:
            log.error("NONCE_GAP_FILL_ABANDONED", nonce=lease.nonce, error=str(e))
            await lease.release(confirmed=False)
        else:
            await lease.release(confirmed=True)

    async def _notify(self, hook: BroadcastHook | None, tx_hash: str):
        if hook is None:
            return
        try:
            await hook(tx_hash)
        except Exception as e:
            log.error("TX_BROADCAST_HOOK_FAILED", tx_hash=tx_hash, error=str(e))

    async def submit(self, call: ContractCall, gas_limit: int, kind: str | None = None,
                     on_broadcast: BroadcastHook | None = None) -> Receipt:
        """Broadcast ``call`` and wait until it is mined.

        ``on_broadcast`` is awaited with every hash that reaches the node,
        the first one and each same-nonce replacement.

        Raises:
            OnChainRevertError: mined with a failed status.
            TransactionTimeoutError: the monitor gave up; it may still land.
            TransientRpcError: the RPC stayed unreachable before broadcast.
        """
        gas_price = await self.gas_estimator.quote()
        lease, tx_hash = await self._send_with_fresh_nonce(call, gas_price, gas_limit)

        mined = False
        try:
            await lease.bind(tx_hash, to_address=call.address, kind=kind)
            await self._notify(on_broadcast, tx_hash)

            async def on_replaced(new_hash: str):
                await lease.bind(new_hash, to_address=call.address, kind=kind)
                await self._notify(on_broadcast, new_hash)

            future = self.monitor.track(tx_hash, lease.nonce, gas_price, gas_limit, call, on_replaced=on_replaced)
            receipt = await future
            mined = True
        finally:
            await lease.release(confirmed=mined)

        if not receipt.succeeded:
            log.error("TX_REVERTED", tx_hash=receipt.tx_hash, nonce=lease.nonce, function=call.function)
            raise OnChainRevertError(receipt.tx_hash)
        return receipt

    def get_state(self) -> dict:
        return {
            **self.nonce_manager.get_state(),
            "monitored": self.monitor.pending_count(),
        }
