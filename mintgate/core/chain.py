# /mintgate/core/chain.py
# Async web3 client bound to ONE signing account on ONE RPC endpoint.
# Every raw web3/aiohttp failure leaves this module as a MintGateError.

import asyncio
from dataclasses import dataclass, field
from typing import Any, Sequence

import aiohttp
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from mintgate.core.errors import (
    InsufficientFundsError,
    MintGateError,
    NonceConflictError,
    OnChainRevertError,
    TransientRpcError,
    UnderpricedError,
)
from mintgate.core.logger import get_logger

log = get_logger(__name__)

_TRANSIENT_EXCEPTIONS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)


@dataclass(frozen=True)
class ContractCall:
    """A state-changing contract call that can be re-signed at any nonce/fee."""
    address: str
    abi: list = field(repr=False, compare=False)
    function: str
    args: tuple = ()


def self_transfer(address: str) -> ContractCall:
    """Zero-value transfer to ``address``. Consumes a nonce and nothing else."""
    return ContractCall(address, [], "")


@dataclass(frozen=True)
class SignedTx:
    tx_hash: str
    raw: bytes = field(repr=False)
    nonce: int
    gas_price: int
    gas_limit: int


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def classify_rpc_error(exc: Exception, tx_hash: str | None = None) -> MintGateError:
    """Map a raw provider exception onto the gateway taxonomy."""
    if isinstance(exc, MintGateError):
        return exc
    if isinstance(exc, ContractLogicError):
        return OnChainRevertError(tx_hash, str(exc))
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return TransientRpcError(str(exc) or type(exc).__name__)

    message = str(exc).lower()
    if "underpriced" in message:
        return UnderpricedError(str(exc))
    if "nonce too low" in message or "nonce has already been used" in message:
        return NonceConflictError(str(exc))
    if "insufficient funds" in message:
        return InsufficientFundsError(str(exc))
    if "execution reverted" in message:
        return OnChainRevertError(tx_hash, str(exc))
    return TransientRpcError(str(exc))


def _is_already_known(exc: Exception) -> bool:
    message = str(exc).lower()
    return "already known" in message or "known transaction" in message


class ChainClient:
    """Reads, signs and broadcasts for a single account.

    Signing is local (no RPC round-trip), so the hash of a transaction is known
    before it is broadcast. Re-broadcasting the same signed bytes is therefore
    idempotent: a node that already has it answers "already known" and the
    local hash is returned as if the send succeeded.
    """

    def __init__(self, w3: AsyncWeb3, account: LocalAccount, chain_id: int):
        self.w3 = w3
        self.account = account
        self.address = account.address
        self.chain_id = chain_id

    @classmethod
    def from_url(cls, rpc_url: str, private_key: str, chain_id: int) -> "ChainClient":
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": 10}))
        account = Account.from_key(private_key)
        log.info("CHAIN_CLIENT_INITIALIZED", address=account.address, chain_id=chain_id)
        return cls(w3, account, chain_id)

    async def pending_nonce(self) -> int:
        """Pending-inclusive transaction count for the account."""
        try:
            return await self.w3.eth.get_transaction_count(self.address, "pending")
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def gas_price(self) -> int:
        try:
            return await self.w3.eth.gas_price
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def get_receipt(self, tx_hash: str) -> Receipt | None:
        try:
            raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_rpc_error(e, tx_hash) from e
        return Receipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            status=raw["status"],
            block_number=raw["blockNumber"],
            gas_used=raw["gasUsed"],
            effective_gas_price=raw.get("effectiveGasPrice", 0),
        )

    async def transaction_known(self, tx_hash: str) -> bool:
        """True when the node has the transaction, mined or in its mempool."""
        try:
            await self.w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except Exception as e:
            raise classify_rpc_error(e, tx_hash) from e

    async def call(self, address: str, abi: list, function: str, *args) -> Any:
        """Read-only contract call."""
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        try:
            return await getattr(contract.functions, function)(*args).call()
        except Exception as e:
            raise classify_rpc_error(e) from e

    def sign(self, call: ContractCall, nonce: int, gas_price: int, gas_limit: int) -> SignedTx:
        to = Web3.to_checksum_address(call.address)
        data = "0x"
        if call.function:
            contract = self.w3.eth.contract(address=to, abi=call.abi)
            data = contract.encode_abi(call.function, args=list(call.args))
        tx = {
            "to": to,
            "data": data,
            "value": 0,
            "nonce": nonce,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "chainId": self.chain_id,
        }
        signed = self.account.sign_transaction(tx)
        return SignedTx(
            tx_hash=Web3.to_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            nonce=nonce,
            gas_price=gas_price,
            gas_limit=gas_limit,
        )

    async def broadcast(self, signed: SignedTx) -> str:
        try:
            await self.w3.eth.send_raw_transaction(signed.raw)
        except Exception as e:
            if _is_already_known(e):
                log.info("TX_ALREADY_KNOWN", tx_hash=signed.tx_hash, nonce=signed.nonce)
                return signed.tx_hash
            raise classify_rpc_error(e, signed.tx_hash) from e
        log.info("TX_BROADCASTED", tx_hash=signed.tx_hash, nonce=signed.nonce, gas_price=signed.gas_price)
        return signed.tx_hash

    async def send(self, call: ContractCall, nonce: int, gas_price: int, gas_limit: int) -> str:
        """Sign and broadcast in one step. Used for same-nonce replacements."""
        return await self.broadcast(self.sign(call, nonce, gas_price, gas_limit))


def checksum_all(addresses: Sequence[str]) -> list[str]:
    return [Web3.to_checksum_address(a) for a in addresses]
