# /mintgate/core/decorators.py
# Reusable retry policies for operational resilience.
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)
from mintgate.core.errors import TransientRpcError
from mintgate.core.logger import get_logger
import logging

log = get_logger(__name__)


def rpc_retrying(attempts: int, backoff: float) -> AsyncRetrying:
    """Bounded retry loop for transient RPC failures only.

    Usage:
        async for attempt in rpc_retrying(3, 0.5):
            with attempt:
                await chain.broadcast(signed)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, max=5),
        retry=retry_if_exception_type(TransientRpcError),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,  # Re-raise the last exception after retries are exhausted
    )


# Decorator form for read-only calls where defaults are good enough.
retriable_network_call = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    retry=retry_if_exception_type(TransientRpcError),
    before_sleep=before_sleep_log(log, logging.WARNING),
    reraise=True,
)
