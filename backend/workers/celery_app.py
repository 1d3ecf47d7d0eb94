"""
Celery Application Configuration
"""

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "larder",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.engine_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.worker_concurrency,
    task_time_limit=int(settings.job_deadline_seconds) + 30,
    task_soft_time_limit=int(settings.job_deadline_seconds),
    task_routes={
        "workers.engine_tasks.evaluate_tenant": {"queue": "alerts"},
        "workers.engine_tasks.dispatch_notifications": {"queue": "alerts"},
        "workers.engine_tasks.snapshot_tenant": {"queue": "history"},
        "workers.engine_tasks.check_snapshot_thresholds": {"queue": "history"},
        "workers.engine_tasks.detect_anomalies": {"queue": "history"},
        "workers.engine_tasks.dispatch_active_tenants": {"queue": "alerts"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # These jobs fan out across tenants with active items via
    # workers.engine_tasks.dispatch_active_tenants.
    beat_schedule={
        # ── Reorder evaluation ──────────────────────────────────────
        "evaluate-reorder-alerts": {
            "task": "workers.engine_tasks.dispatch_active_tenants",
            "schedule": timedelta(seconds=settings.evaluator_cadence_seconds),
            "kwargs": {"task_name": "workers.engine_tasks.evaluate_tenant"},
            "options": {"queue": "alerts"},
        },
        "dispatch-notifications-15s": {
            "task": "workers.engine_tasks.dispatch_active_tenants",
            "schedule": timedelta(seconds=15),
            "kwargs": {"task_name": "workers.engine_tasks.dispatch_notifications"},
            "options": {"queue": "alerts"},
        },
        # ── History ─────────────────────────────────────────────────
        "snapshot-daily": {
            "task": "workers.engine_tasks.dispatch_active_tenants",
            "schedule": crontab(hour=settings.snapshot_hour_utc, minute=0),
            "kwargs": {
                "task_name": "workers.engine_tasks.snapshot_tenant",
                "task_kwargs": {"trigger_kind": "scheduled"},
            },
            "options": {"queue": "history"},
        },
        "snapshot-thresholds-hourly": {
            "task": "workers.engine_tasks.dispatch_active_tenants",
            "schedule": crontab(minute=30),  # Offset from the daily snapshot
            "kwargs": {"task_name": "workers.engine_tasks.check_snapshot_thresholds"},
            "options": {"queue": "history"},
        },
        # ── Anomaly scan ────────────────────────────────────────────
        "detect-consumption-anomalies-6h": {
            "task": "workers.engine_tasks.dispatch_active_tenants",
            "schedule": crontab(minute=0, hour="*/6"),
            "kwargs": {"task_name": "workers.engine_tasks.detect_anomalies"},
            "options": {"queue": "history"},
        },
    },
)
