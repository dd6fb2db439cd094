"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "hubops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.capacity", "workers.policies", "workers.integrity"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.capacity.*": {"queue": "capacity"},
        "workers.policies.*": {"queue": "policies"},
        "workers.integrity.*": {"queue": "audit"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Capacity ────────────────────────────────────────────────
        "expire-stale-holds-5m": {
            "task": "workers.capacity.expire_stale_holds",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "capacity"},
        },
        # ── Policies ────────────────────────────────────────────────
        "activate-due-policies-1m": {
            "task": "workers.policies.activate_due_policies",
            "schedule": crontab(minute="*"),
            "options": {"queue": "policies"},
        },
        # ── Audit ───────────────────────────────────────────────────
        "integrity-check-hourly": {
            "task": "workers.integrity.run_integrity_check",
            "schedule": crontab(minute=15),  # Offset from hold expiry sweeps
            "options": {"queue": "audit"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
