"""
Notification Dispatcher — at-most-once delivery per (alert, stage, recipient).

Tasks are persisted before any transport call, one row per recipient, keyed
by an idempotency token:

  {alert_id}:{stage}:{recipient}            INITIAL, SUPPLIER
  {alert_id}:escalation:{recipient}:{date}  ESCALATION (once per UTC day)

A dispatch pass:
  1. sweeps tasks stuck in SENDING past the stale window
  2. claims due PENDING/RETRYING tasks (marks them SENDING, commits)
  3. groups them per (alert, stage, date), then fans groups in per
     recipient: each recipient claimed in a pass is reached by one call,
     shared with the other recipients of the same groups when the
     transport takes several recipients
  4. records DELIVERED, RETRYING (exponential backoff) or FAILED

ESCALATION never goes out while an INITIAL task of the same alert is still
undecided, and is dropped once the alert is acknowledged. Recipients
reached within the fan-in window are deferred to the end of it.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.email import TEMPLATE_FOR_STAGE, render_digest
from alerts.transport import OutboundMessage, Recipient, SendReceipt, Transport, TransportError
from core.clock import Clock
from core.config import Settings
from core.types import OPEN_ALERT_STATES, AlertState, NotificationStage, TaskState
from db.models import Alert, Item, NotificationTask

logger = structlog.get_logger()

DUE_STATES = (TaskState.PENDING.value, TaskState.RETRYING.value)
SETTLED_STATES = (TaskState.DELIVERED.value, TaskState.FAILED.value)
STAGE_ORDER = {
    NotificationStage.INITIAL.value: 0,
    NotificationStage.SUPPLIER.value: 1,
    NotificationStage.ESCALATION.value: 2,
}


@dataclass(frozen=True)
class NotificationRequest:
    """Ask to notify ``recipients`` about an alert at a given stage."""

    tenant_id: str
    alert_id: uuid.UUID
    stage: NotificationStage
    recipients: list[Recipient]
    stage_date: date
    template: str = ""

    def __post_init__(self) -> None:
        if not self.template:
            object.__setattr__(self, "template", TEMPLATE_FOR_STAGE[NotificationStage(self.stage)])


@dataclass
class DispatchReport:
    claimed: int = 0
    sends: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    deferred: int = 0
    fanned_in: int = 0
    waiting_on_initial: int = 0
    abandoned: int = 0
    requeued: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def idempotency_token(alert_id, stage: NotificationStage, recipient_id: str, stage_date: date) -> str:
    stage = NotificationStage(stage)
    token = f"{alert_id}:{stage.value}:{recipient_id}"
    if stage == NotificationStage.ESCALATION:
        token = f"{token}:{stage_date.isoformat()}"
    return token


def group_token(alert_id, stage: str, stage_date: date) -> str:
    token = f"{alert_id}:{stage}"
    if stage == NotificationStage.ESCALATION.value:
        token = f"{token}:{stage_date.isoformat()}"
    return token


def digest_token(task_tokens) -> str:
    """Stable token for a call that carries several groups."""
    joined = "\n".join(sorted(task_tokens))
    return f"digest:{uuid.uuid5(uuid.NAMESPACE_URL, joined)}"


def backoff_seconds(attempt: int, base: int, cap: int) -> int:
    """min(cap, base · 2^(attempt − 1))"""
    return min(cap, base * 2 ** max(0, attempt - 1))


@dataclass
class _Group:
    alert: Alert
    item: Item | None
    stage: str
    stage_date: date
    tasks: list[NotificationTask]


@dataclass
class _Batch:
    """One transport call: the groups it carries and every task it settles."""

    token: str
    parts: list[_Group]
    tasks: list[NotificationTask]


class NotificationDispatcher:
    """Persists notification tasks and drives them through the transport."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: Transport,
        settings: Settings,
        clock: Clock,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._settings = settings
        self._clock = clock

    # ── Enqueue ──────────────────────────────────────────────────────────

    async def enqueue(self, request: NotificationRequest, db: AsyncSession | None = None) -> list[NotificationTask]:
        """Persist one task per recipient; tokens already present are skipped.

        Pass ``db`` to enqueue inside the caller's transaction.
        """
        if db is not None:
            return await self._enqueue(db, request)
        async with self._session_factory() as session:
            async with session.begin():
                return await self._enqueue(session, request)

    async def _enqueue(self, db: AsyncSession, request: NotificationRequest) -> list[NotificationTask]:
        if not request.recipients:
            logger.warning(
                "notifications.no_recipients",
                tenant_id=request.tenant_id,
                alert_id=str(request.alert_id),
                stage=NotificationStage(request.stage).value,
            )
            return []

        now = self._clock.utcnow()
        tokens = {
            idempotency_token(request.alert_id, request.stage, r.id, request.stage_date): r for r in request.recipients
        }
        existing = await db.execute(
            select(NotificationTask.idempotency_key).where(NotificationTask.idempotency_key.in_(list(tokens)))
        )
        known = set(existing.scalars().all())

        created = []
        for token, recipient in tokens.items():
            if token in known:
                continue
            task = NotificationTask(
                idempotency_key=token,
                tenant_id=request.tenant_id,
                alert_id=request.alert_id,
                stage=NotificationStage(request.stage).value,
                stage_date=request.stage_date,
                recipient=recipient.id,
                address=recipient.address,
                template=request.template,
                state=TaskState.PENDING.value,
                attempts=0,
                next_attempt_at=now + timedelta(seconds=self._settings.alert_coalesce_seconds),
                created_at=now,
                updated_at=now,
            )
            db.add(task)
            created.append(task)
        await db.flush()

        if created:
            logger.info(
                "notifications.enqueued",
                tenant_id=request.tenant_id,
                alert_id=str(request.alert_id),
                stage=NotificationStage(request.stage).value,
                count=len(created),
                skipped=len(known),
            )
        return created

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def dispatch_due(self, tenant_id: str | None = None, batch_size: int = 200) -> DispatchReport:
        report = DispatchReport()
        now = self._clock.utcnow()

        await self._sweep_stale(now, tenant_id, report)
        groups = await self._claim_due(now, tenant_id, batch_size, report)
        for batch in self._batches(groups):
            await self._send_batch(batch, report)

        if report.claimed or report.abandoned or report.requeued:
            logger.info("notifications.dispatch_complete", tenant_id=tenant_id, **report.to_dict())
        return report

    async def _sweep_stale(self, now: datetime, tenant_id: str | None, report: DispatchReport) -> None:
        """Tasks abandoned mid-send: re-send only if the provider dedupes on our token."""
        cutoff = now - timedelta(seconds=self._settings.notification_stale_seconds)
        query = select(NotificationTask).where(
            NotificationTask.state == TaskState.SENDING.value,
            NotificationTask.last_attempt_at <= cutoff,
        )
        if tenant_id is not None:
            query = query.where(NotificationTask.tenant_id == tenant_id)

        async with self._session_factory() as db:
            async with db.begin():
                stale = (await db.execute(query)).scalars().all()
                for task in stale:
                    task.updated_at = now
                    if self._transport.honours_idempotency_key:
                        task.state = TaskState.RETRYING.value
                        task.next_attempt_at = now
                        report.requeued += 1
                    else:
                        task.state = TaskState.FAILED.value
                        task.last_error = "abandoned_in_flight"
                        report.abandoned += 1
                        logger.error(
                            "notifications.abandoned_in_flight",
                            task_id=str(task.task_id),
                            alert_id=str(task.alert_id),
                            stage=task.stage,
                            recipient=task.recipient,
                        )

    async def _claim_due(
        self,
        now: datetime,
        tenant_id: str | None,
        batch_size: int,
        report: DispatchReport,
    ) -> list[_Group]:
        query = select(NotificationTask).where(
            NotificationTask.state.in_(DUE_STATES), NotificationTask.next_attempt_at <= now
        )
        if tenant_id is not None:
            query = query.where(NotificationTask.tenant_id == tenant_id)
        query = query.order_by(NotificationTask.next_attempt_at, NotificationTask.created_at).limit(batch_size)

        async with self._session_factory() as db:
            async with db.begin():
                due = list((await db.execute(query)).scalars().all())
                if not due:
                    return []
                due.sort(key=lambda t: (t.created_at, STAGE_ORDER[t.stage]))

                alert_ids = {t.alert_id for t in due}
                alerts = {
                    a.alert_id: a
                    for a in (await db.execute(select(Alert).where(Alert.alert_id.in_(alert_ids)))).scalars().all()
                }
                unsettled_initial = await self._alerts_with_unsettled_initial(db, alert_ids)
                recently_reached = await self._recently_reached(db, now, {t.recipient for t in due})

                grouped: dict[tuple, list[NotificationTask]] = defaultdict(list)
                for task in due:
                    alert = alerts.get(task.alert_id)
                    if alert is None or alert.state not in {s.value for s in OPEN_ALERT_STATES}:
                        task.state = TaskState.FAILED.value
                        task.last_error = "alert_closed"
                        task.updated_at = now
                        report.failed += 1
                        continue
                    if task.stage == NotificationStage.ESCALATION.value and alert.state == AlertState.ACKNOWLEDGED.value:
                        task.state = TaskState.FAILED.value
                        task.last_error = "alert_acknowledged"
                        task.updated_at = now
                        report.failed += 1
                        continue
                    if task.stage == NotificationStage.ESCALATION.value and task.alert_id in unsettled_initial:
                        report.waiting_on_initial += 1
                        continue
                    reached_at = recently_reached.get(task.recipient)
                    if reached_at is not None:
                        task.next_attempt_at = reached_at + timedelta(seconds=self._settings.recipient_fanin_seconds)
                        task.updated_at = now
                        report.deferred += 1
                        continue

                    task.state = TaskState.SENDING.value
                    task.attempts += 1
                    task.last_attempt_at = now
                    task.updated_at = now
                    grouped[(task.alert_id, task.stage, task.stage_date)].append(task)
                    report.claimed += 1

                items = {}
                for alert_id in {key[0] for key in grouped}:
                    alert = alerts[alert_id]
                    items[alert_id] = await db.get(Item, (alert.tenant_id, alert.item_id))

        return [
            _Group(alert=alerts[alert_id], item=items.get(alert_id), stage=stage, stage_date=stage_date, tasks=tasks)
            for (alert_id, stage, stage_date), tasks in grouped.items()
        ]

    @staticmethod
    async def _alerts_with_unsettled_initial(db: AsyncSession, alert_ids: set) -> set:
        result = await db.execute(
            select(NotificationTask.alert_id).where(
                NotificationTask.alert_id.in_(alert_ids),
                NotificationTask.stage == NotificationStage.INITIAL.value,
                NotificationTask.state.not_in(SETTLED_STATES),
            )
        )
        return set(result.scalars().all())

    async def _recently_reached(self, db: AsyncSession, now: datetime, recipients: set[str]) -> dict[str, datetime]:
        window_start = now - timedelta(seconds=self._settings.recipient_fanin_seconds)
        result = await db.execute(
            select(NotificationTask.recipient, NotificationTask.last_attempt_at).where(
                NotificationTask.recipient.in_(recipients),
                NotificationTask.state.in_((TaskState.SENDING.value, TaskState.DELIVERED.value)),
                NotificationTask.last_attempt_at > window_start,
                NotificationTask.last_attempt_at < now,
            )
        )
        latest: dict[str, datetime] = {}
        for recipient, at in result.all():
            if recipient not in latest or at > latest[recipient]:
                latest[recipient] = at
        return latest

    def _batches(self, groups: list[_Group]) -> list[_Batch]:
        """Fan claimed tasks in to one transport call per recipient.

        Recipients addressed by exactly the same groups share a call when the
        transport takes several recipients. A call only carries the groups
        addressed to every one of its recipients.
        """
        addressed: dict[str, list[int]] = defaultdict(list)
        for index, group in enumerate(groups):
            for task in group.tasks:
                addressed[task.recipient].append(index)

        multi = self._transport.supports_multi_recipient
        buckets: dict[tuple, list[str]] = defaultdict(list)
        for recipient, indexes in addressed.items():
            buckets[(tuple(indexes), None if multi else recipient)].append(recipient)

        batches = []
        for (indexes, _), recipients in buckets.items():
            members = set(recipients)
            parts = [
                _Group(
                    alert=groups[i].alert,
                    item=groups[i].item,
                    stage=groups[i].stage,
                    stage_date=groups[i].stage_date,
                    tasks=[t for t in groups[i].tasks if t.recipient in members],
                )
                for i in indexes
            ]
            tasks = [t for part in parts for t in part.tasks]
            if len(parts) > 1:
                token = digest_token(t.idempotency_key for t in tasks)
            elif multi:
                token = group_token(parts[0].alert.alert_id, parts[0].stage, parts[0].stage_date)
            else:
                token = tasks[0].idempotency_key
            batches.append(_Batch(token=token, parts=parts, tasks=tasks))
        return batches

    async def _send_batch(self, batch: _Batch, report: DispatchReport) -> None:
        subject, text, html = render_digest([(p.tasks[0].template, p.alert, p.item) for p in batch.parts])
        recipients: dict[str, Recipient] = {}
        for task in batch.tasks:
            recipients.setdefault(task.recipient, Recipient(id=task.recipient, address=task.address))
        message = OutboundMessage(
            recipients=tuple(recipients.values()),
            subject=subject,
            body=text,
            html=html,
            idempotency_key=batch.token,
        )
        report.sends += 1
        report.fanned_in += len(batch.parts) - 1
        try:
            receipt = await self._transport.send(message)
        except TransportError as exc:
            await self._record_failure(batch.tasks, exc, report)
            return
        await self._record_delivery(batch.tasks, receipt, report)

    async def _record_delivery(self, tasks: list[NotificationTask], receipt: SendReceipt, report: DispatchReport):
        delivered_at = self._clock.utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                for task in tasks:
                    row = await db.get(NotificationTask, task.task_id)
                    row.state = TaskState.DELIVERED.value
                    row.delivered_at = delivered_at
                    row.transport_message_id = receipt.message_id
                    row.last_error = None
                    row.updated_at = delivered_at
                    report.delivered += 1
        logger.info(
            "notifications.delivered",
            alert_id=str(tasks[0].alert_id),
            stage=tasks[0].stage,
            recipients=[t.recipient for t in tasks],
            message_id=receipt.message_id,
        )

    async def _record_failure(self, tasks: list[NotificationTask], exc: TransportError, report: DispatchReport):
        now = self._clock.utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                for task in tasks:
                    row = await db.get(NotificationTask, task.task_id)
                    row.last_error = str(exc)
                    row.updated_at = now
                    if exc.retryable and row.attempts < self._settings.notification_max_attempts:
                        delay = backoff_seconds(
                            row.attempts,
                            self._settings.notification_backoff_base_seconds,
                            self._settings.notification_backoff_cap_seconds,
                        )
                        row.state = TaskState.RETRYING.value
                        row.next_attempt_at = now + timedelta(seconds=delay)
                        report.retrying += 1
                        logger.warning(
                            "notifications.retry_scheduled",
                            task_id=str(row.task_id),
                            alert_id=str(row.alert_id),
                            stage=row.stage,
                            attempt=row.attempts,
                            retry_in_seconds=delay,
                            error=str(exc),
                        )
                    else:
                        row.state = TaskState.FAILED.value
                        report.failed += 1
                        report.errors.append(str(exc))
                        logger.error(
                            "notifications.failed",
                            task_id=str(row.task_id),
                            alert_id=str(row.alert_id),
                            stage=row.stage,
                            recipient=row.recipient,
                            attempts=row.attempts,
                            retryable=exc.retryable,
                            error=str(exc),
                        )

    # ── Queries ──────────────────────────────────────────────────────────

    async def tasks_for_alert(self, alert_id, stage: NotificationStage | None = None) -> list[NotificationTask]:
        query = select(NotificationTask).where(NotificationTask.alert_id == alert_id)
        if stage is not None:
            query = query.where(NotificationTask.stage == NotificationStage(stage).value)
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(NotificationTask.created_at, NotificationTask.recipient))
            return list(result.scalars().all())

    async def notification_log(self, alert_id) -> list[dict]:
        """Delivered notifications of an alert, oldest first."""
        delivered = [t for t in await self.tasks_for_alert(alert_id) if t.state == TaskState.DELIVERED.value]
        delivered.sort(key=lambda t: (t.delivered_at, STAGE_ORDER[t.stage]))
        return [
            {
                "stage": t.stage,
                "recipient": t.recipient,
                "stage_date": t.stage_date.isoformat(),
                "delivered_at": t.delivered_at.isoformat(),
                "message_id": t.transport_message_id,
            }
            for t in delivered
        ]

    async def has_escalation_on(self, db: AsyncSession, alert_id, day: date) -> bool:
        result = await db.execute(
            select(NotificationTask.task_id)
            .where(
                NotificationTask.alert_id == alert_id,
                NotificationTask.stage == NotificationStage.ESCALATION.value,
                NotificationTask.stage_date == day,
            )
            .limit(1)
        )
        return result.first() is not None
