# /mintgate/core/config.py
from decimal import Decimal
from pydantic_settings import BaseSettings
from pydantic import SecretStr


class Settings(BaseSettings):
    # Durable store
    DATABASE_URL: str = "sqlite+aiosqlite:///./mintgate.db"

    # Chain. One EVM JSON-RPC endpoint per deployment.
    RPC_URL: str | None = None
    CHAIN_ID: int = 84532
    RELAYER_PRIVATE_KEY: SecretStr | None = None
    MINTER_PRIVATE_KEY: SecretStr | None = None
    DEFAULT_TOKEN_ADDRESS: str | None = None
    SIMULATION_MODE: bool = False

    # Operational Settings
    LOG_LEVEL: str = "INFO"
    LOG_SIGNING_KEY: SecretStr | None = None
    SENTRY_DSN: SecretStr | None = None
    SESSION_DIR: str = "/tmp/mintgate_session"  # account locks + audit log
    HEALTH_PORT: int = 8080
    CONTROL_API_TOKEN: str | None = None

    # Queue defaults. Rows in system_settings override these at start().
    PAYMENT_BATCH_INTERVAL_MS: int = 4000
    PAYMENT_BATCH_SIZE: int = 10
    PAYMENT_TIMEOUT_WATCH_SECONDS: int = 3600
    MINT_BATCH_INTERVAL_SECONDS: int = 10
    MINT_MAX_BATCH_SIZE: int = 50
    MINT_MAX_RETRIES: int = 3
    BATCH_MINT_ENABLED: bool = True
    BATCH_MINT_MIN_ITEMS: int = 2

    # Gas
    PAYMENT_GAS_LIMIT: int = 150_000
    MINT_GAS_LIMIT: int = 150_000
    BATCH_MINT_BASE_GAS: int = 100_000
    BATCH_MINT_PER_ITEM_GAS: int = 50_000
    GAS_PRICE_BUFFER: Decimal = Decimal("1.2")

    # Transaction monitor
    TX_MONITOR_POLL_SECONDS: float = 2.0
    TX_ACCELERATE_AFTER_SECONDS: float = 5.0
    TX_GAS_MULTIPLIER: Decimal = Decimal("1.2")
    TX_UNDERPRICED_BUMP: Decimal = Decimal("1.3")
    TX_MAX_GAS_ATTEMPTS: int = 5
    TX_GIVE_UP_SECONDS: float = 120.0

    # Transient RPC failures
    RPC_MAX_ATTEMPTS: int = 3
    RPC_RETRY_BACKOFF_SECONDS: float = 0.5
    NONCE_CONFLICT_RETRIES: int = 3

    @property
    def async_database_url(self) -> str:
        """DATABASE_URL with the async driver filled in for bare postgres URLs."""
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


try:
    settings = Settings()
except Exception as e:
    # Late import to avoid circular dependency only for logging the failure
    try:
        from mintgate.core.logger import get_logger, configure_logging
        configure_logging()
        log = get_logger("MintGate.Config")
        log.critical("FAILED_TO_LOAD_SETTINGS", error=str(e))
    except Exception:
        print("FAILED_TO_LOAD_SETTINGS", e)
    raise SystemExit(1)
