# /mintgate/store/system_settings.py
# Runtime knobs stored in the database. Read once by each processor's start().

from sqlalchemy import select

from mintgate.store.database import Database
from mintgate.store.models import SystemSetting, utcnow

PAYMENT_BATCH_INTERVAL_MS = "payment_batch_interval_ms"
PAYMENT_BATCH_SIZE = "payment_batch_size"
MINT_BATCH_INTERVAL_SECONDS = "batch_interval_seconds"
MINT_MAX_BATCH_SIZE = "max_batch_size"


async def read_int_settings(db: Database, defaults: dict[str, int]) -> dict[str, int]:
    """Return ``defaults`` overlaid with any integer rows present for those keys."""
    values = dict(defaults)
    async with db.session() as session:
        rows = (
            await session.execute(select(SystemSetting).where(SystemSetting.key.in_(list(defaults))))
        ).scalars()
        for row in rows:
            values[row.key] = int(row.value)
    return values


async def put_setting(db: Database, key: str, value, description: str | None = None) -> None:
    async with db.session() as session:
        row = await session.get(SystemSetting, key)
        if row is None:
            session.add(SystemSetting(key=key, value=str(value), description=description))
        else:
            row.value = str(value)
            if description is not None:
                row.description = description
            row.updated_at = utcnow()
