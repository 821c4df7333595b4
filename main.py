# /main.py
# Orchestrates both pipelines in one process: the relayer account settles
# payments, the minter account mints. Each account has exactly one processor.
import asyncio

import uvicorn

from mintgate.core.config import settings
from mintgate.core.config_validator import validate as validate_config
from mintgate.core.logger import configure_logging, get_logger
from mintgate.core.chain import ChainClient
from mintgate.core.control_api import create_app
from mintgate.core.tx import TransactionSubmitter
from mintgate.adapters.mock import MockChain
from mintgate.queue.mint_processor import MintQueueProcessor
from mintgate.queue.payment_processor import PaymentQueueProcessor
from mintgate.queue.settlement import SettlementBridge
from mintgate.store.advisory_lock import AdvisoryLockGate
from mintgate.store.database import Database


def build_chains():
    """(relayer, minter) chain clients."""
    if settings.SIMULATION_MODE:
        return (
            MockChain("0x00000000000000000000000000000000000000A1"),
            MockChain("0x00000000000000000000000000000000000000B2"),
        )
    return (
        ChainClient.from_url(settings.RPC_URL, settings.RELAYER_PRIVATE_KEY.get_secret_value(), settings.CHAIN_ID),
        ChainClient.from_url(settings.RPC_URL, settings.MINTER_PRIVATE_KEY.get_secret_value(), settings.CHAIN_ID),
    )


async def main():
    configure_logging()
    log = get_logger("MintGate.System")
    validate_config()
    log.info("MINTGATE_STARTING", simulation=settings.SIMULATION_MODE)

    db = Database(settings.async_database_url)
    await db.init_schema()

    relayer_chain, minter_chain = build_chains()
    mints = MintQueueProcessor(db, TransactionSubmitter(minter_chain, db))
    bridge = SettlementBridge(mints, lock_gate=AdvisoryLockGate(db))
    payments = PaymentQueueProcessor(db, TransactionSubmitter(relayer_chain, db), bridge)

    await mints.start()
    await payments.start()

    app = create_app(payments, mints, db)
    server = uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=settings.HEALTH_PORT, log_level=settings.LOG_LEVEL.lower())
    )
    log.info("CONTROL_API_STARTING", port=settings.HEALTH_PORT)
    try:
        # Returns on SIGINT/SIGTERM.
        await server.serve()
    finally:
        # Stop payments first so no new mints are enqueued behind the mint loop's back.
        await payments.stop()
        await mints.stop()
        await db.dispose()
        log.warning("SYSTEM_SHUTDOWN_COMPLETE")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
