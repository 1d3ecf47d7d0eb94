"""
Engine Workers — Celery entry points for the inventory engine.

Beat fans out through dispatch_active_tenants; each per-tenant task builds
an InventoryEngine from settings and runs under RedisJobGuard so only one
run per (tenant, job) is in flight across workers. A trigger that arrives
mid-run becomes one follow-up run.

Schedule: See celery_app.py beat_schedule
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.engine_tasks.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(self, task_name: str, task_kwargs: dict | None = None):
    """
    Dispatch a tenant-scoped task across every tenant with active items.
    """
    from core.config import get_settings
    from db.models import Item

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                result = await db.execute(
                    select(Item.tenant_id).where(Item.active.is_(True)).distinct().order_by(Item.tenant_id)
                )
                tenants = [row.tenant_id for row in result.all()]

            dispatched = 0
            for tenant_id in tenants:
                kwargs = dict(payload)
                kwargs["tenant_id"] = tenant_id
                celery_app.send_task(task_name, kwargs=kwargs)
                dispatched += 1

            summary = {
                "status": "success",
                "task_name": task_name,
                "tenant_count": len(tenants),
                "dispatched_count": dispatched,
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


def _run_guarded(job_name: str, tenant_id: str, work: Callable[[Any], Awaitable[Any]]) -> dict:
    """Build an engine, run ``work(engine)`` under the cluster-wide job guard, dispose."""
    from core.config import get_settings
    from inventory.engine import InventoryEngine
    from workers.scheduler import RedisJobGuard

    async def _inner():
        settings = get_settings()
        engine = InventoryEngine.from_settings(settings)
        guard = RedisJobGuard(settings.redis_url, settings.job_deadline_seconds)
        try:
            return await guard.run_exclusive(tenant_id, job_name, lambda: work(engine))
        finally:
            await engine.close()

    return asyncio.run(_inner())


@celery_app.task(
    name="workers.engine_tasks.evaluate_tenant",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    acks_late=True,
)
def evaluate_tenant(self, tenant_id: str):
    """Re-evaluate reorder alerts for every active item of a tenant."""
    run_id = self.request.id or "manual"
    logger.info("evaluator.task_started", tenant_id=tenant_id, run_id=run_id)
    try:
        return _run_guarded("evaluate", tenant_id, lambda engine: engine.evaluate(tenant_id))
    except Exception as exc:  # noqa: BLE001
        logger.error("evaluator.task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.engine_tasks.dispatch_notifications",
    bind=True,
    max_retries=3,
    default_retry_delay=15,
    acks_late=True,
)
def dispatch_notifications(self, tenant_id: str):
    """Deliver due notification tasks for a tenant."""

    async def _dispatch(engine):
        report = await engine.dispatch_notifications(tenant_id)
        return report.to_dict()

    try:
        return _run_guarded("notifications", tenant_id, _dispatch)
    except Exception as exc:  # noqa: BLE001
        logger.error("notifications.task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.engine_tasks.snapshot_tenant",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def snapshot_tenant(self, tenant_id: str, trigger_kind: str = "scheduled"):
    """Write a point-in-time inventory snapshot."""
    from inventory.snapshots import snapshot_to_dict

    async def _snapshot(engine):
        return snapshot_to_dict(await engine.snapshot(tenant_id, trigger_kind))

    try:
        return _run_guarded("snapshot", tenant_id, _snapshot)
    except Exception as exc:  # noqa: BLE001
        logger.error("snapshots.task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.engine_tasks.check_snapshot_thresholds",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def check_snapshot_thresholds(self, tenant_id: str):
    """Write a threshold snapshot when low stock or consumption moved past a limit."""
    from inventory.snapshots import snapshot_to_dict

    async def _check(engine):
        snapshot = await engine.snapshots.snapshot_if_threshold(tenant_id)
        return snapshot_to_dict(snapshot) if snapshot is not None else None

    try:
        return _run_guarded("snapshot_threshold", tenant_id, _check)
    except Exception as exc:  # noqa: BLE001
        logger.error("snapshots.threshold_task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.engine_tasks.detect_anomalies",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def detect_anomalies(self, tenant_id: str):
    """Scan recent consumption for z-score anomalies."""

    async def _detect(engine):
        anomalies = await engine.detect_anomalies(tenant_id)
        return {"anomaly_count": len(anomalies), "anomalies": [a.to_dict() for a in anomalies]}

    try:
        return _run_guarded("anomalies", tenant_id, _detect)
    except Exception as exc:  # noqa: BLE001
        logger.error("anomaly.task_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
