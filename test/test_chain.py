import asyncio

import aiohttp
import pytest
from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError

from conftest import PAYER, TOKEN, key
from mintgate.abis import MINT_TOKEN_ABI
from mintgate.core.chain import ChainClient, ContractCall, classify_rpc_error
from mintgate.core.errors import (
    InsufficientFundsError,
    NonceConflictError,
    OnChainRevertError,
    TransientRpcError,
    UnderpricedError,
)


@pytest.mark.parametrize("exc, expected", [
    (ValueError("replacement transaction underpriced"), UnderpricedError),
    (ValueError("nonce too low"), NonceConflictError),
    (ValueError("insufficient funds for gas * price + value"), InsufficientFundsError),
    (ValueError("execution reverted: already minted"), OnChainRevertError),
    (ContractLogicError("execution reverted"), OnChainRevertError),
    (aiohttp.ClientConnectionError("refused"), TransientRpcError),
    (asyncio.TimeoutError(), TransientRpcError),
    (ValueError("something odd"), TransientRpcError),
])
def test_rpc_errors_are_classified(exc, expected):
    assert isinstance(classify_rpc_error(exc), expected)


def test_local_signing_is_deterministic():
    w3 = AsyncWeb3(AsyncHTTPProvider("http://127.0.0.1:1"))
    chain = ChainClient(w3, Account.create(), chain_id=84532)
    call = ContractCall(TOKEN, MINT_TOKEN_ABI, "mint", (PAYER, key(1)))

    first = chain.sign(call, 3, 1_000_000_000, 150_000)
    again = chain.sign(call, 3, 1_000_000_000, 150_000)
    bumped = chain.sign(call, 3, 1_200_000_000, 150_000)

    assert first.tx_hash == again.tx_hash
    assert first.raw == again.raw
    assert bumped.tx_hash != first.tx_hash
    assert bumped.nonce == first.nonce == 3
