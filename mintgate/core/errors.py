# /mintgate/core/errors.py
# Failure taxonomy shared by both pipelines. Raw web3/aiohttp errors are
# classified into these at the chain client boundary (see chain.py).


class MintGateError(Exception):
    """Base class for all gateway errors."""


class TransientRpcError(MintGateError):
    """RPC unreachable or flaky. Retried a bounded number of times."""


class UnderpricedError(TransientRpcError):
    """A replacement was rejected because its fee did not beat the transaction it replaces."""


class NonceConflictError(MintGateError):
    """The nonce was already consumed on-chain. Resolved by re-acquiring."""


class InvalidAuthorizationError(MintGateError):
    """The signed transfer authorization cannot be executed. Terminal."""


class InsufficientFundsError(MintGateError):
    """The signing account cannot pay for gas. Terminal for the item."""


class OnChainRevertError(MintGateError):
    def __init__(self, tx_hash: str | None, reason: str = "transaction reverted"):
        self.tx_hash = tx_hash
        self.reason = reason
        super().__init__(f"{reason}: {tx_hash}" if tx_hash else reason)


class TransactionTimeoutError(MintGateError):
    """The monitor gave up. The transaction may still land later."""

    def __init__(self, tx_hash: str, nonce: int, attempts: int):
        self.tx_hash = tx_hash
        self.nonce = nonce
        self.attempts = attempts
        super().__init__(
            f"transaction {tx_hash} (nonce {nonce}) not confirmed after {attempts} gas attempts; "
            "it may still be mined later"
        )


class AlreadyMintedError(MintGateError):
    def __init__(self, idempotency_key: str, queue_id: str | None = None):
        self.idempotency_key = idempotency_key
        self.queue_id = queue_id
        super().__init__(f"already minted: {idempotency_key}")


class LockUnavailableError(MintGateError):
    """Another heavyweight operation holds the advisory lock. Try again shortly."""

    def __init__(self, name: str, retry_after: int = 5):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"{name} is busy, retry in {retry_after}s")


class AccountLockedError(MintGateError):
    """Another process is already running a processor for this signing account."""
