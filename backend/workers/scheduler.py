"""
Job scheduling — per-(tenant, job) singletons with pending follow-ups.

JobScheduler runs inside one process:
  - periodic jobs fire from ``tick()`` on a fixed cadence or once a day at
    a configured UTC hour, for every known tenant
  - ``trigger()`` starts a job now; if the same (tenant, job) is already
    running, the call only raises a pending flag and the job re-runs once
    right after the current run finishes
  - every run carries a deadline and shares a bounded worker pool

RedisJobGuard gives the same singleton + follow-up semantics across Celery
worker processes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from core.clock import Clock
from core.config import Settings

logger = structlog.get_logger()

JobHandler = Callable[[str], Awaitable[Any]]
TenantSource = Callable[[], Awaitable[list[str]]]


@dataclass
class Job:
    name: str
    handler: JobHandler
    every_seconds: float | None = None
    daily_at_hour: int | None = None
    deadline_seconds: float | None = None

    @property
    def periodic(self) -> bool:
        return self.every_seconds is not None or self.daily_at_hour is not None


@dataclass
class _Slot:
    task: asyncio.Task | None = None
    pending: bool = False
    last_fired: datetime | None = None
    runs: int = 0
    failures: int = 0
    timeouts: int = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


@dataclass
class JobStats:
    runs: int = 0
    failures: int = 0
    timeouts: int = 0
    pending: bool = False
    running: bool = False
    last_fired: datetime | None = None


class JobScheduler:
    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        tenants: TenantSource,
        *,
        concurrency: int | None = None,
    ):
        self._settings = settings
        self._clock = clock
        self._tenants = tenants
        self._jobs: dict[str, Job] = {}
        self._slots: dict[tuple[str, str], _Slot] = {}
        self._pool = asyncio.Semaphore(concurrency or settings.worker_concurrency)
        self._tasks: set[asyncio.Task] = set()

    def register(
        self,
        name: str,
        handler: JobHandler,
        *,
        every_seconds: float | None = None,
        daily_at_hour: int | None = None,
        deadline_seconds: float | None = None,
    ) -> Job:
        if every_seconds is not None and daily_at_hour is not None:
            raise ValueError("A job runs either on a cadence or daily, not both")
        job = Job(
            name=name,
            handler=handler,
            every_seconds=every_seconds,
            daily_at_hour=daily_at_hour,
            deadline_seconds=deadline_seconds or self._settings.job_deadline_seconds,
        )
        self._jobs[name] = job
        return job

    # ── Firing ───────────────────────────────────────────────────────────

    def trigger(self, tenant_id: str, job_name: str) -> bool:
        """Start the job now. Returns False when it coalesced into a follow-up."""
        job = self._jobs[job_name]
        slot = self._slots.setdefault((tenant_id, job_name), _Slot())
        slot.last_fired = self._clock.utcnow()
        if slot.running:
            slot.pending = True
            logger.debug("scheduler.coalesced", tenant_id=tenant_id, job=job_name)
            return False

        task = asyncio.create_task(self._run(tenant_id, job, slot), name=f"{job_name}:{tenant_id}")
        slot.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def tick(self) -> list[tuple[str, str]]:
        """Fire every periodic job that is due for each known tenant."""
        now = self._clock.utcnow()
        fired = []
        periodic = [job for job in self._jobs.values() if job.periodic]
        if not periodic:
            return fired
        for tenant_id in await self._tenants():
            for job in periodic:
                slot = self._slots.get((tenant_id, job.name))
                if self._is_due(job, slot, now):
                    self.trigger(tenant_id, job.name)
                    fired.append((tenant_id, job.name))
        return fired

    @staticmethod
    def _is_due(job: Job, slot: _Slot | None, now: datetime) -> bool:
        last = slot.last_fired if slot else None
        if job.every_seconds is not None:
            return last is None or now - last >= timedelta(seconds=job.every_seconds)
        if now.hour < job.daily_at_hour:
            return False
        return last is None or last.date() < now.date() or last.hour < job.daily_at_hour

    async def _run(self, tenant_id: str, job: Job, slot: _Slot) -> None:
        while True:
            async with self._pool:
                try:
                    await asyncio.wait_for(job.handler(tenant_id), timeout=job.deadline_seconds)
                    slot.runs += 1
                except asyncio.TimeoutError:
                    slot.timeouts += 1
                    logger.warning(
                        "scheduler.job_deadline_exceeded",
                        tenant_id=tenant_id,
                        job=job.name,
                        deadline_seconds=job.deadline_seconds,
                    )
                except Exception as exc:  # noqa: BLE001
                    slot.failures += 1
                    logger.error(
                        "scheduler.job_failed", tenant_id=tenant_id, job=job.name, error=str(exc), exc_info=True
                    )
            if not slot.pending:
                return
            slot.pending = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def wait_idle(self) -> None:
        """Wait until no job is running or pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_forever(self, interval_seconds: float = 1.0) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("scheduler.tick_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(interval_seconds)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self, tenant_id: str, job_name: str) -> JobStats:
        slot = self._slots.get((tenant_id, job_name)) or _Slot()
        return JobStats(
            runs=slot.runs,
            failures=slot.failures,
            timeouts=slot.timeouts,
            pending=slot.pending,
            running=slot.running,
            last_fired=slot.last_fired,
        )


# ── Ledger hook ─────────────────────────────────────────────────────────────


def evaluation_hook(scheduler: JobScheduler, job_name: str = "evaluate"):
    """Append hook: re-evaluate when stock is at/below the reorder point or a restock lifts it above."""

    async def _hook(event) -> None:
        if event.crossed_reorder_point or event.restocked_above_reorder_point:
            scheduler.trigger(event.entry.tenant_id, job_name)

    return _hook


# ── Cross-process singleton ─────────────────────────────────────────────────


class RedisJobGuard:
    """Redis lock per (tenant, job) plus a pending follow-up key."""

    def __init__(self, redis_url: str, lock_timeout_seconds: float):
        self._redis_url = redis_url
        self._lock_timeout = lock_timeout_seconds

    @staticmethod
    def keys(tenant_id: str, job_name: str) -> tuple[str, str]:
        base = f"larder:job:{tenant_id}:{job_name}"
        return f"{base}:lock", f"{base}:pending"

    async def run_exclusive(self, tenant_id: str, job_name: str, fn: Callable[[], Awaitable[Any]]) -> dict:
        lock_key, pending_key = self.keys(tenant_id, job_name)
        redis = aioredis.from_url(self._redis_url)
        try:
            lock = redis.lock(lock_key, timeout=self._lock_timeout, blocking=False)
            if not await lock.acquire():
                await redis.set(pending_key, "1", ex=int(self._lock_timeout))
                logger.info("scheduler.coalesced", tenant_id=tenant_id, job=job_name, scope="cluster")
                return {"status": "coalesced", "tenant_id": tenant_id, "job": job_name}

            runs = 0
            result = None
            try:
                while True:
                    result = await fn()
                    runs += 1
                    if not await redis.delete(pending_key):
                        break
            finally:
                try:
                    await lock.release()
                except LockError:
                    logger.warning("scheduler.lock_expired", tenant_id=tenant_id, job=job_name)
            return {"status": "success", "tenant_id": tenant_id, "job": job_name, "runs": runs, "result": result}
        finally:
            await redis.aclose()
