from fastapi import Depends, FastAPI, Header, HTTPException, Query

from mintgate.core.config import settings
from mintgate.core.logger import get_logger

log = get_logger(__name__)


def verify(authorization: str | None = Header(None)):
    token = settings.CONTROL_API_TOKEN
    if not token:
        raise HTTPException(status_code=500, detail="Control token not configured")
    if authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(payments, mints, db=None) -> FastAPI:
    """Read-only ops API over the two queue processors."""
    app = FastAPI(title="mintgate")

    @app.get("/healthz")
    async def healthz():
        database_ok = await db.check_connection() if db is not None else True
        return {
            "status": "ok" if database_ok else "degraded",
            "database": database_ok,
            "relayer": payments.submitter.address,
            "minter": mints.submitter.address,
        }

    @app.get("/payments/stats")
    async def payment_stats(auth: None = Depends(verify)):
        return await payments.get_stats()

    @app.get("/payments/{payment_id}")
    async def payment_status(payment_id: str, auth: None = Depends(verify)):
        status = await payments.get_payment_status(payment_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Payment not found")
        return status

    @app.get("/mints/stats")
    async def mint_stats(auth: None = Depends(verify)):
        return await mints.get_queue_stats()

    @app.get("/mints/batches")
    async def mint_batches(limit: int = Query(10, ge=1, le=100), auth: None = Depends(verify)):
        return await mints.get_recent_batches(limit)

    @app.get("/mints/payer/{address}")
    async def payer_mints(address: str, auth: None = Depends(verify)):
        return await mints.get_payer_queue_status(address)

    @app.get("/mints/{queue_id}")
    async def mint_status(queue_id: str, auth: None = Depends(verify)):
        status = await mints.get_queue_status(queue_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Mint not found")
        return status

    log.info("CONTROL_API_CREATED")
    return app
