# /mintgate/store/pending.py
# Durable pending-transaction bookkeeping, keyed by (address, nonce).

from sqlalchemy import select, update

from mintgate.store.database import Database
from mintgate.store.models import (
    PendingTransaction,
    TX_CONFIRMED,
    TX_DROPPED,
    TX_PENDING,
)


class PendingTransactionLedger:
    def __init__(self, db: Database, address: str):
        self.db = db
        self.address = address

    async def pending_nonces(self) -> set[int]:
        async with self.db.session() as session:
            rows = await session.execute(
                select(PendingTransaction.nonce).where(
                    PendingTransaction.from_address == self.address,
                    PendingTransaction.status == TX_PENDING,
                )
            )
            return {int(n) for n in rows.scalars()}

    async def pending_rows(self) -> list[PendingTransaction]:
        async with self.db.session() as session:
            rows = await session.execute(
                select(PendingTransaction)
                .where(PendingTransaction.from_address == self.address, PendingTransaction.status == TX_PENDING)
                .order_by(PendingTransaction.nonce)
            )
            return list(rows.scalars())

    async def record(self, nonce: int, tx_hash: str, to_address: str | None = None, kind: str | None = None):
        """Upsert the row for ``nonce`` as pending with ``tx_hash``.

        Called on first broadcast and again for every same-nonce replacement.
        """
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(PendingTransaction).where(
                        PendingTransaction.from_address == self.address,
                        PendingTransaction.nonce == nonce,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    PendingTransaction(
                        from_address=self.address,
                        nonce=nonce,
                        tx_hash=tx_hash,
                        to_address=to_address,
                        kind=kind,
                        status=TX_PENDING,
                    )
                )
            else:
                row.tx_hash = tx_hash
                row.status = TX_PENDING
                row.error = None
                if to_address is not None:
                    row.to_address = to_address
                if kind is not None:
                    row.kind = kind

    async def resolve(self, nonce: int, status: str, error: str | None = None):
        async with self.db.session() as session:
            await session.execute(
                update(PendingTransaction)
                .where(PendingTransaction.from_address == self.address, PendingTransaction.nonce == nonce)
                .values(status=status, error=error)
            )

    async def confirm_below(self, chain_nonce: int) -> int:
        """Mark every pending row below the chain's count as confirmed."""
        async with self.db.session() as session:
            result = await session.execute(
                update(PendingTransaction)
                .where(
                    PendingTransaction.from_address == self.address,
                    PendingTransaction.status == TX_PENDING,
                    PendingTransaction.nonce < chain_nonce,
                )
                .values(status=TX_CONFIRMED)
            )
            return result.rowcount or 0

    async def mark_dropped(self, nonce: int):
        await self.resolve(nonce, TX_DROPPED, "not known to the node at startup")
