"""
Reorder Evaluator — stock classification, alert deduplication and lifecycle.

Alert Types:
  - critical_stock: onHand ≤ 0 or onHand ≤ ⌊rp × critical_factor⌋
  - reorder_needed: onHand ≤ rp (HIGH at ≤ ⌊rp × high_factor⌋, else MEDIUM),
                    or a forecast stockout inside the lead time
  - low_stock:      onHand ≤ rp × low_factor

Per item, under a per-(tenant, item) lock:
  1. load policy + projection, forecast when enough history exists
  2. classify, score urgency, size the suggested order
  3. auto-resolve an open alert once a restock has lifted stock clear of it
  4. no open alert → create ACTIVE + INITIAL (+ SUPPLIER) tasks
     open alert, stock fell further → update advisory fields; escalate once
     per UTC day when an ACTIVE alert turns CRITICAL
     open alert, stock unchanged or higher → no-op

Alert rows are only moved between states by compare-and-set
(see alerts.lifecycle). Changes are published after they are durable.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.dispatcher import NotificationDispatcher, NotificationRequest
from alerts.lifecycle import (
    ACKNOWLEDGE,
    DISMISS,
    RESOLVE,
    Transition,
    as_alert_id,
    load_alert,
    transition_with_retry,
)
from alerts.publisher import AlertPublisher, InMemoryAlertPublisher
from alerts.recipients import RecipientDirectory
from alerts.transport import Recipient
from core.clock import Clock
from core.config import Settings
from core.errors import EngineError, ErrorKind
from core.locks import KeyedLocks
from core.types import OPEN_ALERT_STATES, AlertState, AlertType, EntryType, NotificationStage, Priority
from db.models import Alert, Item, OpenAlert
from inventory.items import ItemCatalogue
from inventory.ledger import StockLedger
from ml.forecast import Forecast, Forecaster, suggested_order_quantity

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────────────────
# Detection Rules
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Classification:
    alert_type: AlertType
    priority: Priority


def classify_stock(
    on_hand: int,
    reorder_point: int,
    *,
    critical_factor: float = 0.25,
    high_factor: float = 0.5,
    low_factor: float = 1.5,
) -> Classification | None:
    """Classify on-hand stock against the reorder point (both bounds inclusive)."""
    if on_hand <= 0 or on_hand <= math.floor(reorder_point * critical_factor):
        return Classification(AlertType.CRITICAL_STOCK, Priority.CRITICAL)
    if on_hand <= reorder_point:
        high = on_hand <= math.floor(reorder_point * high_factor)
        return Classification(AlertType.REORDER_NEEDED, Priority.HIGH if high else Priority.MEDIUM)
    if on_hand <= reorder_point * low_factor:
        return Classification(AlertType.LOW_STOCK, Priority.LOW)
    return None


def urgency_score(on_hand: int, reorder_point: int, critical_category: bool = False) -> int:
    """Deficit below the reorder point as 0-100, +10 for critical categories."""
    if reorder_point <= 0:
        score = 100 if on_hand <= 0 else 0
    else:
        score = min(100, math.ceil((reorder_point - on_hand) / reorder_point * 100))
    if critical_category:
        score += 10
    return max(0, min(100, score))


def bump_for_stockout(classification: Classification | None) -> Classification:
    """Imminent stockout forces CRITICAL priority."""
    if classification is not None and classification.alert_type == AlertType.CRITICAL_STOCK:
        return classification
    return Classification(AlertType.REORDER_NEEDED, Priority.CRITICAL)


def recovered(alert: Alert, on_hand: int, reorder_point: int, low_factor: float) -> bool:
    if AlertType(alert.alert_type) == AlertType.LOW_STOCK:
        return on_hand > reorder_point * low_factor
    return on_hand > reorder_point


def alert_to_dict(alert: Alert, notification_log: list[dict] | None = None) -> dict[str, Any]:
    def iso(value):
        return value.isoformat() if value else None

    payload = {
        "alert_id": str(alert.alert_id),
        "tenant_id": alert.tenant_id,
        "item_id": alert.item_id,
        "alert_type": alert.alert_type,
        "priority": alert.priority,
        "state": alert.state,
        "observed_on_hand": alert.observed_on_hand,
        "reorder_point": alert.reorder_point,
        "suggested_quantity": alert.suggested_quantity,
        "estimated_cost": round(alert.estimated_cost, 2),
        "urgency_score": alert.urgency_score,
        "expected_delivery_date": iso(alert.expected_delivery_date),
        "version": alert.version,
        "created_at": iso(alert.created_at),
        "updated_at": iso(alert.updated_at),
        "acknowledged_by": alert.acknowledged_by,
        "acknowledged_at": iso(alert.acknowledged_at),
        "resolved_by": alert.resolved_by,
        "resolved_at": iso(alert.resolved_at),
        "dismissed_by": alert.dismissed_by,
        "dismissed_at": iso(alert.dismissed_at),
        "dismissed_reason": alert.dismissed_reason,
    }
    if notification_log is not None:
        payload["notification_log"] = notification_log
    return payload


# ──────────────────────────────────────────────────────────────────────────
# Evaluation results
# ──────────────────────────────────────────────────────────────────────────


@dataclass
class ItemEvaluation:
    item_id: str
    on_hand: int
    classification: Classification | None
    action: str = "none"  # none | created | updated | unchanged
    resolved_alert_id: str | None = None
    alert: Alert | None = None
    escalated: bool = False


@dataclass
class EvaluationSummary:
    tenant_id: str
    items_evaluated: int = 0
    created: int = 0
    updated: int = 0
    escalated: int = 0
    resolved: int = 0
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "items_evaluated": self.items_evaluated,
            "created": self.created,
            "updated": self.updated,
            "escalated": self.escalated,
            "resolved": self.resolved,
            "skipped": self.skipped,
        }


@dataclass
class _Assessment:
    item: Item
    on_hand: int
    unit_cost: float
    classification: Classification | None
    imminent_stockout: bool
    urgency: int
    suggested_quantity: int


# ──────────────────────────────────────────────────────────────────────────
# Evaluator
# ──────────────────────────────────────────────────────────────────────────


class ReorderEvaluator:
    """Owns the alert tables. Everything that moves an alert goes through here."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: StockLedger,
        catalogue: ItemCatalogue,
        forecaster: Forecaster,
        dispatcher: NotificationDispatcher,
        directory: RecipientDirectory,
        settings: Settings,
        clock: Clock,
        *,
        publisher: AlertPublisher | None = None,
        locks: KeyedLocks | None = None,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._catalogue = catalogue
        self._forecaster = forecaster
        self._dispatcher = dispatcher
        self._directory = directory
        self._settings = settings
        self._clock = clock
        self._publisher = publisher or InMemoryAlertPublisher()
        self._locks = locks or KeyedLocks()

    # ── Evaluation ───────────────────────────────────────────────────────

    async def evaluate(self, tenant_id: str) -> EvaluationSummary:
        """One pass over every active item of the tenant."""
        summary = EvaluationSummary(tenant_id=tenant_id)
        for item in await self._catalogue.active_items(tenant_id):
            try:
                result = await self.evaluate_item(tenant_id, item.item_id)
            except EngineError as exc:
                logger.warning(
                    "evaluator.item_skipped",
                    tenant_id=tenant_id,
                    item_id=item.item_id,
                    error=exc.kind.value,
                    retryable=exc.retryable,
                )
                summary.skipped.append({"item_id": item.item_id, "error": exc.kind.value})
                continue
            finally:
                # yield between items
                await asyncio.sleep(0)

            summary.items_evaluated += 1
            summary.created += result.action == "created"
            summary.updated += result.action == "updated"
            summary.escalated += result.escalated
            summary.resolved += result.resolved_alert_id is not None

        logger.info("evaluator.pass_complete", **summary.to_dict())
        return summary

    async def evaluate_item(self, tenant_id: str, item_id: str) -> ItemEvaluation:
        async with self._locks.hold(("evaluate", tenant_id, item_id)):
            item = await self._catalogue.require_active_item(tenant_id, item_id)
            projection = await self._ledger.get_projection(tenant_id, item_id)
            assessment = await self._assess(item, projection.on_hand, projection.weighted_average_cost)
            outcome = ItemEvaluation(
                item_id=item_id, on_hand=projection.on_hand, classification=assessment.classification
            )

            open_alert = await self._open_alert(tenant_id, item_id)
            if (
                open_alert is not None
                and not assessment.imminent_stockout
                and recovered(open_alert, projection.on_hand, item.reorder_point, self._settings.low_on_hand_factor)
                and await self._last_increase_was_restock(projection)
            ):
                await self._auto_resolve(open_alert)
                outcome.resolved_alert_id = str(open_alert.alert_id)
                open_alert = None

            if assessment.classification is None:
                return outcome

            if open_alert is None:
                outcome.alert = await self._create_alert(assessment)
                outcome.action = "created"
            elif projection.on_hand < open_alert.observed_on_hand:
                outcome.alert, outcome.escalated = await self._update_alert(open_alert, assessment)
                outcome.action = "updated"
            else:
                outcome.alert = open_alert
                outcome.action = "unchanged"
            return outcome

    async def _last_increase_was_restock(self, projection) -> bool:
        """Only a restock auto-resolves; adjustments and transfers leave the alert to an operator."""
        entry = await self._ledger.last_increase(projection.tenant_id, projection.item_id, max_seq=projection.last_seq)
        return entry is not None and EntryType(entry.entry_type) == EntryType.RESTOCK

    async def _assess(self, item: Item, on_hand: int, wac: float) -> _Assessment:
        settings = self._settings
        forecast = await self._usable_forecast(item, on_hand)
        daily_demand = forecast.projected_daily_demand if forecast else 0.0
        imminent = forecast is not None and forecast.imminent_stockout

        classification = classify_stock(
            on_hand,
            item.reorder_point,
            critical_factor=settings.critical_on_hand_factor,
            high_factor=settings.high_on_hand_factor,
            low_factor=settings.low_on_hand_factor,
        )
        if imminent:
            classification = bump_for_stockout(classification)

        return _Assessment(
            item=item,
            on_hand=on_hand,
            unit_cost=item.cost or wac,
            classification=classification,
            imminent_stockout=imminent,
            urgency=urgency_score(on_hand, item.reorder_point, item.category in settings.critical_categories),
            suggested_quantity=suggested_order_quantity(
                daily_demand, on_hand, item.lead_time_days, settings.safety_days, item.reorder_quantity
            ),
        )

    async def _usable_forecast(self, item: Item, on_hand: int) -> Forecast | None:
        try:
            forecast = await self._forecaster.forecast_for(item, on_hand)
        except EngineError as exc:
            if exc.kind != ErrorKind.INSUFFICIENT_HISTORY:
                raise
            return None
        if forecast.history_days < self._settings.forecast_min_history_days:
            return None
        return forecast

    async def _open_alert(self, tenant_id: str, item_id: str) -> Alert | None:
        async with self._session_factory() as db:
            marker = await db.get(OpenAlert, (tenant_id, item_id))
            if marker is None:
                return None
            alert = await db.get(Alert, marker.alert_id)
            if alert is None or AlertState(alert.state) not in OPEN_ALERT_STATES:
                return None
            return alert

    # ── Alert writes ─────────────────────────────────────────────────────

    async def _create_alert(self, a: _Assessment) -> Alert:
        item = a.item
        now = self._clock.utcnow()
        today = now.date()
        initial = await self._recipients(item.tenant_id, NotificationStage.INITIAL)
        supplier = await self._supplier_recipients(item, a.classification.priority)

        alert = Alert(
            tenant_id=item.tenant_id,
            item_id=item.item_id,
            alert_type=a.classification.alert_type.value,
            priority=a.classification.priority.value,
            state=AlertState.ACTIVE.value,
            observed_on_hand=a.on_hand,
            reorder_point=item.reorder_point,
            suggested_quantity=a.suggested_quantity,
            estimated_cost=round(a.suggested_quantity * a.unit_cost, 2),
            urgency_score=a.urgency,
            expected_delivery_date=today + timedelta(days=item.lead_time_days),
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(alert)
                    await db.flush()
                    db.add(OpenAlert(tenant_id=item.tenant_id, item_id=item.item_id, alert_id=alert.alert_id, opened_at=now))
                    await db.flush()
                    await self._dispatcher.enqueue(
                        NotificationRequest(item.tenant_id, alert.alert_id, NotificationStage.INITIAL, initial, today),
                        db=db,
                    )
                    if supplier:
                        await self._dispatcher.enqueue(
                            NotificationRequest(
                                item.tenant_id, alert.alert_id, NotificationStage.SUPPLIER, supplier, today
                            ),
                            db=db,
                        )
        except IntegrityError as exc:
            # Another process opened an alert for this item first
            logger.warning("evaluator.open_alert_taken", tenant_id=item.tenant_id, item_id=item.item_id)
            existing = await self._open_alert(item.tenant_id, item.item_id)
            if existing is None:
                raise EngineError(
                    ErrorKind.ALERT_CONFLICT, "Open alert slot contended", item_id=item.item_id
                ) from exc
            return existing

        logger.info(
            "evaluator.alert_created",
            tenant_id=item.tenant_id,
            item_id=item.item_id,
            alert_id=str(alert.alert_id),
            alert_type=alert.alert_type,
            priority=alert.priority,
            on_hand=a.on_hand,
            suggested_quantity=a.suggested_quantity,
        )
        await self._publisher.publish("created", [alert])
        return alert

    async def _update_alert(self, alert: Alert, a: _Assessment) -> tuple[Alert, bool]:
        item = a.item
        now = self._clock.utcnow()
        today = now.date()
        priority = a.classification.priority
        admins = await self._recipients(item.tenant_id, NotificationStage.ESCALATION)
        supplier = await self._supplier_recipients(item, priority)

        escalated = False
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Alert)
                    .where(
                        Alert.alert_id == alert.alert_id,
                        Alert.state.in_([s.value for s in OPEN_ALERT_STATES]),
                    )
                    .values(
                        alert_type=a.classification.alert_type.value,
                        priority=priority.value,
                        observed_on_hand=a.on_hand,
                        urgency_score=a.urgency,
                        suggested_quantity=a.suggested_quantity,
                        estimated_cost=round(a.suggested_quantity * a.unit_cost, 2),
                        expected_delivery_date=today + timedelta(days=item.lead_time_days),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Closed underneath us; the next pass opens a fresh alert
                    return await load_alert(db, alert.alert_id), False

                alert = await load_alert(db, alert.alert_id)
                if (
                    priority == Priority.CRITICAL
                    and alert.state == AlertState.ACTIVE.value
                    and not await self._dispatcher.has_escalation_on(db, alert.alert_id, today)
                ):
                    created = await self._dispatcher.enqueue(
                        NotificationRequest(item.tenant_id, alert.alert_id, NotificationStage.ESCALATION, admins, today),
                        db=db,
                    )
                    escalated = bool(created)
                if supplier:
                    await self._dispatcher.enqueue(
                        NotificationRequest(item.tenant_id, alert.alert_id, NotificationStage.SUPPLIER, supplier, today),
                        db=db,
                    )

        logger.info(
            "evaluator.alert_updated",
            tenant_id=item.tenant_id,
            item_id=item.item_id,
            alert_id=str(alert.alert_id),
            priority=priority.value,
            on_hand=a.on_hand,
            escalated=escalated,
        )
        await self._publisher.publish("escalated" if escalated else "updated", [alert])
        return alert, escalated

    async def _auto_resolve(self, alert: Alert) -> Alert:
        resolved, _ = await transition_with_retry(
            self._session_factory,
            alert.alert_id,
            RESOLVE,
            actor_id="system",
            now=self._clock.utcnow(),
            max_retries=self._settings.alert_cas_max_retries,
        )
        logger.info(
            "evaluator.alert_auto_resolved",
            tenant_id=alert.tenant_id,
            item_id=alert.item_id,
            alert_id=str(alert.alert_id),
        )
        await self._publisher.publish("resolved", [resolved])
        return resolved

    async def _recipients(self, tenant_id: str, stage: NotificationStage, supplier: str | None = None) -> list[Recipient]:
        try:
            return await self._directory.recipients_for_stage(tenant_id, stage, supplier)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "evaluator.recipients_unavailable",
                tenant_id=tenant_id,
                stage=stage.value,
                error=str(exc),
                exc_info=True,
            )
            return []

    async def _supplier_recipients(self, item: Item, priority: Priority) -> list[Recipient]:
        threshold = Priority(self._settings.supplier_notification_min_priority.lower())
        if not item.preferred_supplier or priority.rank < threshold.rank:
            return []
        return await self._recipients(item.tenant_id, NotificationStage.SUPPLIER, item.preferred_supplier)

    # ── Lifecycle operations ─────────────────────────────────────────────

    async def ack_alert(self, tenant_id: str, alert_id, actor_id: str) -> Alert:
        return await self._transition(tenant_id, alert_id, ACKNOWLEDGE, actor_id)

    async def resolve_alert(self, tenant_id: str, alert_id, actor_id: str) -> Alert:
        return await self._transition(tenant_id, alert_id, RESOLVE, actor_id)

    async def dismiss_alert(self, tenant_id: str, alert_id, actor_id: str, reason: str) -> Alert:
        return await self._transition(tenant_id, alert_id, DISMISS, actor_id, reason=reason)

    async def _transition(
        self, tenant_id: str, alert_id, transition: Transition, actor_id: str, reason: str | None = None
    ) -> Alert:
        current = await self.get_alert(tenant_id, alert_id)
        async with self._locks.hold(("evaluate", tenant_id, current.item_id)):
            alert, changed = await transition_with_retry(
                self._session_factory,
                current.alert_id,
                transition,
                actor_id=actor_id,
                now=self._clock.utcnow(),
                max_retries=self._settings.alert_cas_max_retries,
                tenant_id=tenant_id,
                reason=reason,
            )
        if changed:
            await self._publisher.publish(alert.state, [alert])
        return alert

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_alert(self, tenant_id: str, alert_id) -> Alert:
        async with self._session_factory() as db:
            return await load_alert(db, as_alert_id(alert_id), tenant_id)

    async def list_alerts(
        self,
        tenant_id: str,
        priority: Priority | str | None = None,
        state: AlertState | str | None = None,
        item_id: str | None = None,
    ) -> list[Alert]:
        """Alerts for a tenant, most urgent first."""
        query = select(Alert).where(Alert.tenant_id == tenant_id)
        if priority is not None:
            query = query.where(Alert.priority == Priority(priority).value)
        if state is not None:
            query = query.where(Alert.state == AlertState(state).value)
        if item_id is not None:
            query = query.where(Alert.item_id == item_id)
        async with self._session_factory() as db:
            alerts = list((await db.execute(query)).scalars().all())
        alerts.sort(key=lambda a: (-Priority(a.priority).rank, -a.urgency_score, a.created_at))
        return alerts


    async def reorder_history(
        self,
        tenant_id: str,
        item_id: str | None = None,
        state: AlertState | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
    ) -> list[Alert]:
        """Closed alerts, most recently closed first."""
        closed = [AlertState.RESOLVED.value, AlertState.DISMISSED.value]
        if state is not None:
            closed = [s for s in closed if s == AlertState(state).value]
        query = select(Alert).where(Alert.tenant_id == tenant_id, Alert.state.in_(closed))
        if item_id is not None:
            query = query.where(Alert.item_id == item_id)
        async with self._session_factory() as db:
            alerts = list((await db.execute(query)).scalars().all())

        def closed_at(alert: Alert) -> datetime:
            return alert.resolved_at or alert.dismissed_at or alert.updated_at

        if since is not None:
            alerts = [a for a in alerts if closed_at(a) >= since]
        if until is not None:
            alerts = [a for a in alerts if closed_at(a) <= until]
        alerts.sort(key=lambda a: (closed_at(a), a.created_at), reverse=True)
        return alerts[:limit]

    async def reorder_stats(self, tenant_id: str) -> dict[str, Any]:
        alerts = await self.list_alerts(tenant_id)
        open_alerts = [a for a in alerts if AlertState(a.state) in OPEN_ALERT_STATES]

        auto_items = [item for item in await self._catalogue.active_items(tenant_id) if item.auto_reorder_enabled]
        needing = 0
        for item in auto_items:
            projection = await self._ledger.get_projection(tenant_id, item.item_id)
            if projection.on_hand <= item.reorder_point:
                needing += 1

        by_priority = {p.value: 0 for p in Priority}
        for alert in open_alerts:
            by_priority[alert.priority] += 1
        by_state = {s.value: 0 for s in AlertState}
        for alert in alerts:
            by_state[alert.state] += 1

        return {
            "open_alerts": len(open_alerts),
            "by_priority": by_priority,
            "by_state": by_state,
            "items_with_auto_reorder": len(auto_items),
            "items_needing_reorder": needing,
            "recent_history": [alert_to_dict(a) for a in await self.reorder_history(tenant_id, limit=5)],
            "as_of": self._clock.utcnow().isoformat(),
        }
