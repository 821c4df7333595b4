"""
Durable queue store.

SQLAlchemy models for the two queues, the append-only mint history, the
batch-mint log, runtime system settings, and the pending-transaction
bookkeeping the NonceManager cross-checks after a crash.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


# Status values shared by both queues
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

# Payment types
PAYMENT_MINT = "mint"
PAYMENT_DEPLOY = "deploy"

# Mint payment modes
MODE_CHALLENGE_RESPONSE = "challenge-response"  # HTTP-402
MODE_DIRECT_SIGNATURE = "direct-signature"
MODE_RELAYED = "relayed"
PAYMENT_MODES = (MODE_CHALLENGE_RESPONSE, MODE_DIRECT_SIGNATURE, MODE_RELAYED)


class PaymentQueueItem(Base):
    __tablename__ = "payment_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    payment_type: Mapped[str] = mapped_column(String(16), nullable=False)
    payer: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    amount: Mapped[str] = mapped_column(String(78), nullable=False)  # uint256 as decimal text
    payment_token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    target_address: Mapped[str | None] = mapped_column(String(42))
    authorization: Mapped[dict] = mapped_column(JSON, nullable=False)
    authorization_nonce: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING, index=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66))
    error: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON)
    result: Mapped[dict | None] = mapped_column(JSON)
    # Millisecond timestamp the settlement bridge derives mint keys from.
    enqueued_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Set when the transfer timed out; reconciled until then in case it lands late.
    watch_until_ms: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<PaymentQueueItem(id={self.id}, type={self.payment_type}, status='{self.status}')>"


class MintQueueItem(Base):
    __tablename__ = "mint_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    payer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    target_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payment_id: Mapped[str | None] = mapped_column(String(36), index=True)
    payment_tx_hash: Mapped[str | None] = mapped_column(String(66))
    proof: Mapped[dict | None] = mapped_column(JSON)
    payment_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING, index=True)
    queue_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mint_tx_hash: Mapped[str | None] = mapped_column(String(66))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<MintQueueItem(id={self.id}, key={self.idempotency_key[:10]}, status='{self.status}')>"


class MintHistoryRecord(Base):
    """Append-only record of confirmed mints."""

    __tablename__ = "mint_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    payment_tx_hash: Mapped[str | None] = mapped_column(String(66), index=True)
    idempotency_key: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    target_address: Mapped[str] = mapped_column(String(42), nullable=False)
    # Null when the mint was found on-chain without a hash we broadcast.
    mint_tx_hash: Mapped[str | None] = mapped_column(String(66))
    amount: Mapped[str | None] = mapped_column(String(78))
    block_number: Mapped[int | None] = mapped_column(BigInteger)
    payment_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class MintBatch(Base):
    __tablename__ = "batch_mints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_tx_hash: Mapped[str | None] = mapped_column(String(66), index=True)
    target_address: Mapped[str] = mapped_column(String(42), nullable=False)
    mint_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)
    block_number: Mapped[int | None] = mapped_column(BigInteger)
    gas_used: Mapped[int | None] = mapped_column(BigInteger)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# Pending-transaction bookkeeping statuses
TX_PENDING = "pending"
TX_CONFIRMED = "confirmed"
TX_ABANDONED = "abandoned"
TX_DROPPED = "dropped"

TX_KIND_TRANSFER = "usdc_transfer"
TX_KIND_MINT = "mint"
TX_KIND_GAP_FILL = "nonce_gap_fill"


class PendingTransaction(Base):
    """One row per broadcast nonce of a signing account."""

    __tablename__ = "pending_transactions"
    __table_args__ = (UniqueConstraint("from_address", "nonce", name="uq_pending_tx_address_nonce"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    nonce: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    to_address: Mapped[str | None] = mapped_column(String(42))
    kind: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TX_PENDING, index=True)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
