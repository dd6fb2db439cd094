"""
Capacity Workers — hold expiry sweep.

Holds carry an expires_at; usage queries already ignore expired holds,
this sweep marks them released so reservation lists and ledger
snapshots stay accurate.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import StorageError
from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.capacity.expire_stale_holds",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def expire_stale_holds(self):
    """Release every active hold whose TTL has passed."""
    run_id = self.request.id or "manual"

    async def _expire():
        from capacity.reservations import expire_stale_holds as release_expired
        from core.config import get_settings
        from db.session import build_engine

        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                released = await release_expired(db, actor_id="scheduler")
                await db.commit()

            summary = {
                "status": "success",
                "released": released,
                "run_id": run_id,
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }
            logger.info("holds.sweep_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_expire())
    except StorageError as exc:
        # Storage failures are surfaced, not retried.
        logger.error("holds.sweep_failed", error=str(exc), run_id=run_id, retry=False, exc_info=True)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("holds.sweep_failed", error=str(exc), run_id=run_id, exc_info=True)
        raise self.retry(exc=exc)
