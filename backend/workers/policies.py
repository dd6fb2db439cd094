"""
Policy Workers — scheduled version activation.

Runs every minute; a scheduled version goes live on the first tick at or
after its effective date.
"""

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import StorageError
from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.policies.activate_due_policies",
    bind=True,
    max_retries=3,
    default_retry_delay=20,
    acks_late=True,
)
def activate_due_policies(self):
    run_id = self.request.id or "manual"

    async def _activate():
        from core.config import get_settings
        from db.session import build_engine
        from policy.publish import activate_due_policies as activate

        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                outcomes = await activate(db)
                await db.commit()

            summary = {
                "status": "success",
                "activated": sum(1 for outcome in outcomes if outcome.outcome == "activated"),
                "superseded": sum(1 for outcome in outcomes if outcome.outcome == "superseded"),
                "scopes": sorted({f"{outcome.kind}:{outcome.policy_id}" for outcome in outcomes}),
                "run_id": run_id,
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }
            if outcomes:
                logger.info("policy.activation_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_activate())
    except StorageError as exc:
        # Storage failures are surfaced, not retried.
        logger.error("policy.activation_failed", error=str(exc), run_id=run_id, retry=False, exc_info=True)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("policy.activation_failed", error=str(exc), run_id=run_id, exc_info=True)
        raise self.retry(exc=exc)
