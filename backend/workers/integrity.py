"""
Integrity Workers — hourly read-only audit.

Violations are logged, never repaired; the summary is the task result so
it shows up in the result backend for whoever is on call.
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import StorageError
from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.integrity.run_integrity_check",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_integrity_check(self):
    run_id = self.request.id or "manual"

    async def _check():
        from core.config import get_settings
        from db.session import build_engine
        from integrity.auditor import check_integrity, summarize

        settings = get_settings()
        engine = build_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                violations = await check_integrity(db)

            report = summarize(violations)
            report["run_id"] = run_id
            if violations:
                logger.warning("integrity.check_failed", run_id=run_id, **report["summary"])
            else:
                logger.info("integrity.check_passed", run_id=run_id)
            return report
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_check())
    except StorageError as exc:
        # Storage failures are surfaced, not retried.
        logger.error("integrity.check_errored", error=str(exc), run_id=run_id, retry=False, exc_info=True)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("integrity.check_errored", error=str(exc), run_id=run_id, exc_info=True)
        raise self.retry(exc=exc)
