# /mintgate/core/config_validator.py
# Run at startup to validate all configs and secrets.
from mintgate.core.config import settings
from mintgate.core.logger import log


def validate(config=None):
    config = config or settings
    log.info("--- CONFIG VALIDATION START ---", simulation=config.SIMULATION_MODE)
    errors = []

    if not config.SIMULATION_MODE:
        for var in ("RPC_URL", "RELAYER_PRIVATE_KEY", "MINTER_PRIVATE_KEY"):
            if not getattr(config, var, None):
                errors.append(f"Missing required configuration: {var}")
        if (
            config.RELAYER_PRIVATE_KEY
            and config.MINTER_PRIVATE_KEY
            and config.RELAYER_PRIVATE_KEY.get_secret_value() == config.MINTER_PRIVATE_KEY.get_secret_value()
        ):
            # Both pipelines would fight over one nonce sequence.
            errors.append("RELAYER_PRIVATE_KEY and MINTER_PRIVATE_KEY must be different accounts")

    if config.PAYMENT_BATCH_SIZE < 1 or config.MINT_MAX_BATCH_SIZE < 1:
        errors.append("Batch sizes must be at least 1")

    if errors:
        for error in errors:
            log.critical(error)
        raise ValueError("System configuration is incomplete. Halting.")

    log.info("--- CONFIG VALIDATION PASSED ---")


if __name__ == "__main__":
    validate()
