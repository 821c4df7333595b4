# /mintgate/queue/schemas.py
# Wire-level shapes: the signed EIP-3009 authorization coming in, and the
# read-only status views going out through the public entry points.

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from mintgate.core.errors import InvalidAuthorizationError

_BYTES32_HEX_LEN = 66


def is_bytes32(value: str) -> bool:
    if not isinstance(value, str) or len(value) != _BYTES32_HEX_LEN or not value.startswith("0x"):
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class PaymentAuthorization(BaseModel):
    """
    A gasless ``transferWithAuthorization`` message signed by the payer.

    Accepts either a 65-byte ``signature`` or separate ``v``/``r``/``s`` fields.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_: str = Field(alias="from")
    to: str
    value: int
    valid_after: int = Field(alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str
    signature: Optional[str] = None
    v: Optional[int] = None
    r: Optional[str] = None
    s: Optional[str] = None

    @field_validator("from_", "to")
    @classmethod
    def _address(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"not an address: {value}")
        return Web3.to_checksum_address(value)

    @field_validator("nonce")
    @classmethod
    def _nonce(cls, value: str) -> str:
        if not is_bytes32(value):
            raise ValueError("authorization nonce must be a 0x-prefixed bytes32")
        return value.lower()

    @field_validator("value")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    def vrs(self) -> tuple[int, str, str]:
        """Signature components, ``v`` normalised to 27/28."""
        if self.signature:
            sig = self.signature[2:] if self.signature.startswith("0x") else self.signature
            if len(sig) != 130:
                raise InvalidAuthorizationError("signature must be 65 bytes")
            r = "0x" + sig[0:64]
            s = "0x" + sig[64:128]
            v = int(sig[128:130], 16)
        elif self.v is not None and self.r and self.s:
            v, r, s = self.v, self.r, self.s
        else:
            raise InvalidAuthorizationError("Invalid authorization format: missing signature or v/r/s fields")
        if v in (0, 1):
            v += 27
        if v not in (27, 28) or not is_bytes32(r) or not is_bytes32(s):
            raise InvalidAuthorizationError("malformed signature components")
        return v, r, s

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def parse_authorization(data: Dict[str, Any] | PaymentAuthorization) -> PaymentAuthorization:
    if isinstance(data, PaymentAuthorization):
        return data
    try:
        return PaymentAuthorization.model_validate(data)
    except ValidationError as e:
        raise InvalidAuthorizationError(f"invalid authorization: {e.errors()[0].get('msg')}") from e


class PaymentStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_type: str
    payer: str
    amount: str
    payment_token_address: str
    target_address: Optional[str] = None
    status: str
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class PaymentStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    nonce_state: Dict[str, Any] = Field(default_factory=dict)


class MintQueueStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payer_address: str
    idempotency_key: str
    target_address: str
    payment_id: Optional[str] = None
    payment_tx_hash: Optional[str] = None
    payment_mode: str
    status: str
    queue_position: Optional[int] = None  # rank among pending items, 1-based
    retry_count: int = 0
    mint_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    estimated_wait_seconds: int = 0


class MintQueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total_minted: int = 0
    total_batches: int = 0
    nonce_state: Dict[str, Any] = Field(default_factory=dict)


class MintBatchView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_tx_hash: Optional[str] = None
    target_address: str
    mint_count: int
    status: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None


class PayerMintView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    idempotency_key: str
    mint_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


__all__: List[str] = [
    "PaymentAuthorization",
    "parse_authorization",
    "PaymentStatus",
    "PaymentStats",
    "MintQueueStatus",
    "MintQueueStats",
    "MintBatchView",
    "PayerMintView",
]
