import pytest
from pydantic import SecretStr

from mintgate.core.config import Settings
from mintgate.core.config_validator import validate


def test_simulation_needs_no_secrets():
    validate(Settings(SIMULATION_MODE=True, RPC_URL=None, RELAYER_PRIVATE_KEY=None, MINTER_PRIVATE_KEY=None))


def test_missing_rpc_and_keys_halt_startup():
    with pytest.raises(ValueError):
        validate(Settings(SIMULATION_MODE=False, RPC_URL=None, RELAYER_PRIVATE_KEY=None, MINTER_PRIVATE_KEY=None))


def test_pipelines_must_use_different_accounts():
    key = SecretStr("0x" + "11" * 32)
    with pytest.raises(ValueError):
        validate(Settings(SIMULATION_MODE=False, RPC_URL="http://localhost:8545",
                          RELAYER_PRIVATE_KEY=key, MINTER_PRIVATE_KEY=key))


def test_postgres_url_gets_async_driver():
    config = Settings(DATABASE_URL="postgres://u:p@db:5432/mintgate")
    assert config.async_database_url == "postgresql+asyncpg://u:p@db:5432/mintgate"
