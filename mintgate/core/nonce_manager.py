# /mintgate/core/nonce_manager.py

import asyncio

from mintgate.core.logger import get_logger
from mintgate.store.models import TX_ABANDONED, TX_CONFIRMED
from mintgate.store.pending import PendingTransactionLedger

log = get_logger(__name__)


class NonceLease:
    """A nonce handed out by NonceManager.acquire().

    ``bind()`` records the broadcast hash durably; ``release()`` must be called
    exactly once, after the transaction is terminal (or was never broadcast).
    """
    def __init__(self, manager: "NonceManager", nonce: int):
        self.manager = manager
        self.nonce = nonce
        self.tx_hash: str | None = None
        self.released = False

    async def bind(self, tx_hash: str, to_address: str | None = None, kind: str | None = None):
        self.tx_hash = tx_hash
        await self.manager.ledger.record(self.nonce, tx_hash, to_address=to_address, kind=kind)

    async def release(self, confirmed: bool = True, error: str | None = None):
        """Give the nonce back.

        Bound lease: ``confirmed=False`` marks the nonce abandoned; the
        broadcast may still land, so the value is never reissued.
        Unbound lease: ``confirmed=False`` means nothing was broadcast and the
        nonce becomes reissuable; ``confirmed=True`` means the chain already
        consumed it (nonce too low).
        """
        if self.released:
            log.warning("NONCE_DOUBLE_RELEASE_IGNORED", nonce=self.nonce)
            return
        self.released = True
        await self.manager._release(self, confirmed, error)

    def __repr__(self) -> str:
        return f"<NonceLease(nonce={self.nonce}, tx_hash={self.tx_hash}, released={self.released})>"


class NonceManager:
    """
    Hands out unique, strictly increasing nonces for one signing account.

    Seeds from the chain's pending-inclusive count on first use and skips any
    value the durable ledger still marks pending. An asyncio.Lock serializes
    producers inside this process; AccountLock keeps other processes out.
    """
    def __init__(self, chain, ledger: PendingTransactionLedger):
        self.chain = chain
        self.ledger = ledger
        self.address = chain.address
        self._lock = asyncio.Lock()
        self._last_issued: int | None = None
        self._active: dict[int, NonceLease] = {}
        self._reusable: set[int] = set()

    async def _seed(self):
        # Raises TransientRpcError when the RPC is unreachable. Never guess.
        chain_nonce = await self.chain.pending_nonce()
        confirmed = await self.ledger.confirm_below(chain_nonce)
        dropped = 0
        for row in await self.ledger.pending_rows():
            if not await self.chain.transaction_known(row.tx_hash):
                await self.ledger.mark_dropped(row.nonce)
                dropped += 1
        self._last_issued = chain_nonce - 1
        log.info("NONCE_SEEDED", address=self.address, chain_nonce=chain_nonce,
                 ledger_confirmed=confirmed, ledger_dropped=dropped)

    async def acquire(self) -> NonceLease:
        async with self._lock:
            if self._last_issued is None:
                await self._seed()

            pending = await self.ledger.pending_nonces()
            if self._reusable:
                nonce = min(self._reusable)
                self._reusable.discard(nonce)
            else:
                nonce = self._last_issued + 1
                while nonce in pending or nonce in self._active:
                    log.info("NONCE_SKIPPED_PENDING", nonce=nonce, address=self.address)
                    nonce += 1
                self._last_issued = nonce

            lease = NonceLease(self, nonce)
            self._active[nonce] = lease
            log.debug("NONCE_ACQUIRED", nonce=nonce, active=len(self._active))
            return lease

    async def _release(self, lease: NonceLease, confirmed: bool, error: str | None):
        async with self._lock:
            self._active.pop(lease.nonce, None)
            # Unbound + confirmed means the chain consumed it behind our back.
            if lease.tx_hash is None and not confirmed:
                self._reusable.add(lease.nonce)
            log.debug("NONCE_RELEASED", nonce=lease.nonce, confirmed=confirmed, active=len(self._active))
        if lease.tx_hash is not None:
            await self.ledger.resolve(lease.nonce, TX_CONFIRMED if confirmed else TX_ABANDONED, error)

    def has_active_above(self, nonce: int) -> bool:
        return any(n > nonce for n in self._active)

    async def refresh(self):
        """Re-read the chain's pending count and only ever move forward."""
        chain_nonce = await self.chain.pending_nonce()
        async with self._lock:
            if self._last_issued is None:
                return
            if chain_nonce - 1 > self._last_issued:
                log.info("NONCE_REFRESHED", old=self._last_issued + 1, new=chain_nonce)
                self._last_issued = chain_nonce - 1
            self._reusable = {n for n in self._reusable if n >= chain_nonce}

    def get_state(self) -> dict:
        return {
            "address": self.address,
            "next_nonce": None if self._last_issued is None else self._last_issued + 1,
            "active": sorted(self._active),
            "reusable": sorted(self._reusable),
        }
