"""
InventoryEngine — wires the ledger, evaluator, snapshots, forecasting and
notifications together and exposes the boundary operations.

Collaborators (database, transport, recipient directory, clock, alert
publisher) are passed in; ``from_settings`` builds the production set.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from alerts.dispatcher import DispatchReport, NotificationDispatcher
from alerts.email import SendGridTransport
from alerts.engine import EvaluationSummary, ReorderEvaluator, alert_to_dict
from alerts.publisher import AlertPublisher, RedisAlertPublisher
from alerts.recipients import RecipientDirectory, SettingsRecipientDirectory
from alerts.transport import Transport
from core.clock import Clock
from core.config import Settings, get_settings
from core.errors import EngineError, ErrorKind
from core.locks import KeyedLocks
from core.types import OPEN_ALERT_STATES, AlertState, Priority, SnapshotTrigger
from db.models import Alert, Snapshot
from db.session import build_engine, build_session_factory
from inventory.items import ItemCatalogue
from inventory.ledger import AppendResult, NewEntry, StockLedger
from inventory.projection import Projection
from inventory.snapshots import SnapshotBuilder
from ml.anomaly import AnomalyDetector, ConsumptionAnomaly
from ml.forecast import Forecast, Forecaster, ItemTrend, category_trends
from workers.scheduler import JobScheduler, evaluation_hook

logger = structlog.get_logger()

NOTIFICATION_CADENCE_SECONDS = 15
ANOMALY_CADENCE_SECONDS = 6 * 60 * 60
THRESHOLD_SNAPSHOT_CADENCE_SECONDS = 60 * 60


class InventoryEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock,
        transport: Transport,
        directory: RecipientDirectory,
        *,
        publisher: AlertPublisher | None = None,
        db_engine: AsyncEngine | None = None,
    ):
        self.settings = settings
        self.clock = clock
        self._db_engine = db_engine
        self.locks = KeyedLocks()

        self.catalogue = ItemCatalogue(session_factory, clock)
        self.ledger = StockLedger(session_factory, settings, clock, locks=self.locks)
        self.forecaster = Forecaster(self.ledger, self.catalogue, settings, clock)
        self.anomalies = AnomalyDetector(self.forecaster, self.catalogue, clock)
        self.dispatcher = NotificationDispatcher(session_factory, transport, settings, clock)
        self.evaluator = ReorderEvaluator(
            session_factory,
            self.ledger,
            self.catalogue,
            self.forecaster,
            self.dispatcher,
            directory,
            settings,
            clock,
            publisher=publisher,
            locks=self.locks,
        )
        self.snapshots = SnapshotBuilder(session_factory, self.ledger, self.catalogue, settings, clock)

        self.scheduler = JobScheduler(settings, clock, self.catalogue.tenants)
        self.scheduler.register("evaluate", self.evaluate, every_seconds=settings.evaluator_cadence_seconds)
        self.scheduler.register(
            "snapshot", self._scheduled_snapshot, daily_at_hour=settings.snapshot_hour_utc
        )
        self.scheduler.register(
            "snapshot_threshold", self.snapshots.snapshot_if_threshold, every_seconds=THRESHOLD_SNAPSHOT_CADENCE_SECONDS
        )
        self.scheduler.register(
            "notifications", self.dispatch_notifications, every_seconds=NOTIFICATION_CADENCE_SECONDS
        )
        self.scheduler.register("anomalies", self.detect_anomalies, every_seconds=ANOMALY_CADENCE_SECONDS)
        self.ledger.add_append_hook(evaluation_hook(self.scheduler))

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        transport: Transport | None = None,
        directory: RecipientDirectory | None = None,
    ) -> "InventoryEngine":
        settings = settings or get_settings()
        db_engine = build_engine(settings)
        engine = cls(
            build_session_factory(db_engine),
            settings,
            clock or Clock(),
            transport or SendGridTransport(settings.sendgrid_api_key, settings.alert_from_email),
            directory or SettingsRecipientDirectory(settings.notification_recipients),
            publisher=RedisAlertPublisher(settings.redis_url),
            db_engine=db_engine,
        )
        logger.info("engine.configured", app_env=settings.app_env, worker_concurrency=settings.worker_concurrency)
        return engine

    async def close(self) -> None:
        await self.scheduler.shutdown()
        if self._db_engine is not None:
            await self._db_engine.dispose()

    # ── Ledger ───────────────────────────────────────────────────────────

    async def append(self, entry: NewEntry) -> AppendResult:
        return await self.ledger.append(entry)

    async def get_projection(self, tenant_id: str, item_id: str) -> Projection:
        return await self.ledger.get_projection(tenant_id, item_id)

    # ── Alerts ───────────────────────────────────────────────────────────

    async def evaluate(self, tenant_id: str) -> dict[str, Any]:
        summary: EvaluationSummary = await self.evaluator.evaluate(tenant_id)
        return summary.to_dict()

    async def list_alerts(
        self,
        tenant_id: str,
        priority: Priority | str | None = None,
        state: AlertState | str | None = None,
    ) -> list[Alert]:
        return await self.evaluator.list_alerts(tenant_id, priority=priority, state=state)

    async def ack_alert(self, tenant_id: str, alert_id, actor_id: str) -> Alert:
        return await self.evaluator.ack_alert(tenant_id, alert_id, actor_id)

    async def resolve_alert(self, tenant_id: str, alert_id, actor_id: str) -> Alert:
        return await self.evaluator.resolve_alert(tenant_id, alert_id, actor_id)

    async def dismiss_alert(self, tenant_id: str, alert_id, actor_id: str, reason: str) -> Alert:
        return await self.evaluator.dismiss_alert(tenant_id, alert_id, actor_id, reason)

    async def describe_alert(self, tenant_id: str, alert_id) -> dict[str, Any]:
        alert = await self.evaluator.get_alert(tenant_id, alert_id)
        return alert_to_dict(alert, await self.dispatcher.notification_log(alert.alert_id))

    async def dispatch_notifications(self, tenant_id: str | None = None) -> DispatchReport:
        return await self.dispatcher.dispatch_due(tenant_id)

    async def reorder_stats(self, tenant_id: str) -> dict[str, Any]:
        return await self.evaluator.reorder_stats(tenant_id)

    async def reorder_history(
        self,
        tenant_id: str,
        item_id: str | None = None,
        state: AlertState | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        alerts = await self.evaluator.reorder_history(tenant_id, item_id, state, since, until, limit)
        return [alert_to_dict(a) for a in alerts]

    # ── History & forecasting ────────────────────────────────────────────

    async def snapshot(self, tenant_id: str, trigger_kind: SnapshotTrigger | str = SnapshotTrigger.MANUAL) -> Snapshot:
        return await self.snapshots.snapshot(tenant_id, trigger_kind)

    async def _scheduled_snapshot(self, tenant_id: str) -> Snapshot:
        return await self.snapshots.snapshot(tenant_id, SnapshotTrigger.SCHEDULED)

    async def forecast(
        self, tenant_id: str, item_id: str, horizon_days: int = 14, confidence: float | None = None
    ) -> Forecast:
        return await self.forecaster.forecast(tenant_id, item_id, horizon_days, confidence)

    async def detect_anomalies(self, tenant_id: str) -> list[ConsumptionAnomaly]:
        return await self.anomalies.detect(tenant_id)

    async def trend_analysis(self, tenant_id: str, period_days: int = 30) -> list[ItemTrend]:
        return await self.forecaster.trend_analysis(tenant_id, period_days)

    async def top_items(self, tenant_id: str, period_days: int = 30, limit: int = 10) -> dict[str, list[dict[str, Any]]]:
        return await self.snapshots.top_items(tenant_id, period_days, limit)

    async def dashboard(self, tenant_id: str, top_n: int = 10) -> dict[str, Any]:
        """Key metrics, open alerts, reorder stats, stockout outlook, consumption trends,
        top items, anomalies and recommendations over the last 30 days."""
        key_metrics = await self.snapshots.key_metrics(tenant_id)

        open_alerts = [a for a in await self.list_alerts(tenant_id) if AlertState(a.state) in OPEN_ALERT_STATES]
        by_priority = {p.value: 0 for p in Priority}
        for alert in open_alerts:
            by_priority[alert.priority] += 1

        forecasts: list[Forecast] = []
        for item in await self.catalogue.active_items(tenant_id):
            try:
                forecasts.append(await self.forecast(tenant_id, item.item_id))
            except EngineError as exc:
                if exc.kind != ErrorKind.INSUFFICIENT_HISTORY:
                    raise
        forecasts.sort(key=lambda f: (f.days_of_stock is None, f.days_of_stock or 0.0))
        anomalies = await self.detect_anomalies(tenant_id)
        trends = await self.trend_analysis(tenant_id)
        reorder = await self.reorder_stats(tenant_id)

        return {
            "tenant_id": tenant_id,
            "generated_at": self.clock.utcnow().isoformat(),
            "key_metrics": key_metrics,
            "alerts": {
                "open": len(open_alerts),
                "by_priority": by_priority,
                "top": [alert_to_dict(a) for a in open_alerts[:top_n]],
            },
            "reorder": {
                "items_with_auto_reorder": reorder["items_with_auto_reorder"],
                "items_needing_reorder": reorder["items_needing_reorder"],
                "recent_history": reorder["recent_history"],
            },
            "forecasting": [f.to_dict() for f in forecasts[:top_n]],
            "trends": {
                "categories": category_trends(trends),
                "items": [t.to_dict() for t in trends[:top_n]],
            },
            "top_items": await self.top_items(tenant_id, limit=top_n),
            "anomalies": [a.to_dict() for a in anomalies[:top_n]],
            "recommendations": recommendations(key_metrics, anomalies, forecasts),
        }


def recommendations(
    key_metrics: dict[str, Any], anomalies: list[ConsumptionAnomaly], forecasts: list[Forecast]
) -> list[dict[str, str]]:
    result = []
    low_stock = key_metrics.get("low_stock_count", 0) + key_metrics.get("out_of_stock_count", 0)
    if low_stock > 0:
        result.append(
            {
                "type": "stock_management",
                "priority": Priority.HIGH.value,
                "description": f"{low_stock} items are at or below their reorder point",
                "action": "Review reorder points and schedule replenishment",
            }
        )

    critical_anomalies = sum(1 for a in anomalies if a.severity == Priority.CRITICAL)
    if critical_anomalies:
        result.append(
            {
                "type": "anomaly_investigation",
                "priority": Priority.CRITICAL.value,
                "description": f"{critical_anomalies} critical consumption anomalies detected",
                "action": "Investigate unusual consumption patterns immediately",
            }
        )

    critical_forecasts = sum(1 for f in forecasts if f.risk_level == Priority.CRITICAL)
    if critical_forecasts:
        result.append(
            {
                "type": "demand_forecasting",
                "priority": Priority.HIGH.value,
                "description": f"{critical_forecasts} items predicted to stock out within lead time",
                "action": "Place orders for these items now",
            }
        )
    return result
