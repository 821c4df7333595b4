# /mintgate/adapters/mock.py
# In-memory stand-in for ChainClient.
# - Backs SIMULATION_MODE so both pipelines can run without an RPC endpoint.
# - Lets unit tests drive mining, replacement and RPC failures deterministically.

from collections import deque
from typing import Any, Dict, List, Optional

from web3 import Web3

from mintgate.core.chain import ContractCall, Receipt, SignedTx
from mintgate.core.errors import NonceConflictError, TransientRpcError, UnderpricedError
from mintgate.core.logger import get_logger

log = get_logger(__name__)

DEFAULT_MINT_AMOUNT = 10**18
DEFAULT_SUPPLY = 10**9 * DEFAULT_MINT_AMOUNT


class MockChain:
    """
    Simulates one account on one chain.

    Transactions sit in a per-nonce mempool until mined, either immediately
    (``auto_mine=True``) or when a test calls ``mine()``. Mining executes the
    handful of contract calls the gateway makes, so duplicate mints and reused
    authorizations revert the way the real contracts do.
    """
    def __init__(self, address: str = "0x000000000000000000000000000000000000bEEF",
                 auto_mine: bool = True, gas_price: int = 1_000_000_000):
        self.address = Web3.to_checksum_address(address)
        self.auto_mine = auto_mine
        self._gas_price = gas_price
        self.mined_nonce = 0
        self.block_number = 1
        self.mempool: Dict[int, SignedTx] = {}
        self.known: Dict[str, SignedTx] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.sent: List[SignedTx] = []
        self.calls: Dict[str, ContractCall] = {}
        self.rpc_down = False
        self._broadcast_failures: deque = deque()

        # Contract state
        self.minted: Dict[str, set] = {}
        self.remaining_supply: Dict[str, int] = {}
        self.mint_amount = DEFAULT_MINT_AMOUNT
        self.used_authorizations: set = set()
        self.revert_functions: set = set()
        log.info("MOCK_CHAIN_INITIALIZED", address=self.address, auto_mine=auto_mine)

    # --- Failure injection ---
    def fail_next_broadcast(self, *errors: Exception):
        """Queue exceptions raised by the next broadcasts, in order."""
        self._broadcast_failures.extend(errors)

    def consume_nonce_externally(self, count: int = 1):
        """Another process sent transactions from the same account."""
        self.mined_nonce += count

    def _check_rpc(self):
        if self.rpc_down:
            raise TransientRpcError("mock RPC unreachable")

    # --- ChainClient interface ---
    async def pending_nonce(self) -> int:
        self._check_rpc()
        nonce = self.mined_nonce
        while nonce in self.mempool:
            nonce += 1
        return nonce

    async def gas_price(self) -> int:
        self._check_rpc()
        return self._gas_price

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self._check_rpc()
        return self.receipts.get(tx_hash)

    async def transaction_known(self, tx_hash: str) -> bool:
        self._check_rpc()
        return tx_hash in self.known

    async def call(self, address: str, abi: list, function: str, *args) -> Any:
        self._check_rpc()
        target = address.lower()
        if function == "hasMinted":
            return args[0].lower() in self.minted.get(target, set())
        if function == "remainingSupply":
            return self.remaining_supply.get(target, DEFAULT_SUPPLY)
        if function == "mintAmount":
            return self.mint_amount
        if function == "authorizationState":
            return args[1].lower() in self.used_authorizations
        raise ValueError(f"mock has no view {function}")

    def sign(self, call: ContractCall, nonce: int, gas_price: int, gas_limit: int) -> SignedTx:
        body = f"{self.address}|{nonce}|{gas_price}|{gas_limit}|{call.address}|{call.function}|{call.args!r}"
        tx_hash = Web3.to_hex(Web3.keccak(text=body))
        self.calls[tx_hash] = call
        return SignedTx(tx_hash=tx_hash, raw=body.encode(), nonce=nonce, gas_price=gas_price, gas_limit=gas_limit)

    async def broadcast(self, signed: SignedTx) -> str:
        if self._broadcast_failures:
            raise self._broadcast_failures.popleft()
        self._check_rpc()

        if signed.tx_hash in self.known:
            log.info("TX_ALREADY_KNOWN", tx_hash=signed.tx_hash, nonce=signed.nonce)
            return signed.tx_hash
        if signed.nonce < self.mined_nonce:
            raise NonceConflictError(f"nonce too low: next nonce {self.mined_nonce}, tx nonce {signed.nonce}")
        current = self.mempool.get(signed.nonce)
        if current is not None and signed.gas_price <= current.gas_price:
            raise UnderpricedError("replacement transaction underpriced")

        self.mempool[signed.nonce] = signed
        self.known[signed.tx_hash] = signed
        self.sent.append(signed)
        log.info("MOCK_TX_BROADCASTED", tx_hash=signed.tx_hash, nonce=signed.nonce, gas_price=signed.gas_price)
        if self.auto_mine:
            self.mine()
        return signed.tx_hash

    async def send(self, call: ContractCall, nonce: int, gas_price: int, gas_limit: int) -> str:
        return await self.broadcast(self.sign(call, nonce, gas_price, gas_limit))

    # --- Mining ---
    def mine(self) -> List[Receipt]:
        """Mine every contiguous mempool transaction starting at the account nonce."""
        mined = []
        while self.mined_nonce in self.mempool:
            signed = self.mempool.pop(self.mined_nonce)
            call = self.calls[signed.tx_hash]
            status = 1 if self._execute(call) else 0
            receipt = Receipt(
                tx_hash=signed.tx_hash,
                status=status,
                block_number=self.block_number,
                gas_used=min(signed.gas_limit, 21_000 + 30_000 * max(len(self._keys(call)), 1)),
                effective_gas_price=signed.gas_price,
            )
            self.receipts[signed.tx_hash] = receipt
            self.mined_nonce += 1
            self.block_number += 1
            mined.append(receipt)
        return mined

    @staticmethod
    def _keys(call: ContractCall) -> List[str]:
        if call.function == "mint":
            return [call.args[1].lower()]
        if call.function == "batchMint":
            return [k.lower() for k in call.args[1]]
        return []

    def _execute(self, call: ContractCall) -> bool:
        if call.function in self.revert_functions:
            return False
        target = call.address.lower()
        if call.function == "transferWithAuthorization":
            auth_nonce = call.args[5].lower()
            if auth_nonce in self.used_authorizations:
                return False
            self.used_authorizations.add(auth_nonce)
            return True
        if call.function in ("mint", "batchMint"):
            keys = self._keys(call)
            minted = self.minted.setdefault(target, set())
            supply = self.remaining_supply.get(target, DEFAULT_SUPPLY)
            if any(k in minted for k in keys) or len(set(keys)) != len(keys):
                return False
            if supply < self.mint_amount * len(keys):
                return False
            minted.update(keys)
            self.remaining_supply[target] = supply - self.mint_amount * len(keys)
            return True
        return True
