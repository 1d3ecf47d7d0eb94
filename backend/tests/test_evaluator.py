"""
Tests for the Reorder Evaluator — classification, urgency, deduplication and lifecycle.

Covers:
  - Stock classification boundaries (inclusive reorder point)
  - Urgency score
  - At most one open alert per item; evaluate is idempotent
  - Auto-resolve once a restock lifts stock clear of the alert
  - No escalation for acknowledged alerts
  - Supplier notifications above the configured priority
  - ack / resolve / dismiss transitions
  - Reorder history of closed alerts and per-tenant reorder stats
"""

import uuid
from datetime import timedelta

import pytest

from conftest import TENANT_ID, consume, register, restock
from alerts.engine import classify_stock, urgency_score
from core.errors import EngineError, ErrorKind
from core.types import AlertState, AlertType, EntryType, NotificationStage, Priority
from db.models import OpenAlert
from inventory.ledger import NewEntry

# ── Classification ─────────────────────────────────────────────────────


class TestClassifyStock:
    def test_exactly_reorder_point_is_reorder_needed(self):
        result = classify_stock(10, 10)
        assert result.alert_type == AlertType.REORDER_NEEDED
        assert result.priority == Priority.MEDIUM

    def test_ceil_quarter_is_high(self):
        assert classify_stock(3, 10).priority == Priority.HIGH

    def test_floor_quarter_is_critical(self):
        result = classify_stock(2, 10)
        assert result.alert_type == AlertType.CRITICAL_STOCK
        assert result.priority == Priority.CRITICAL

    def test_half_reorder_point_is_high(self):
        assert classify_stock(5, 10).priority == Priority.HIGH
        assert classify_stock(6, 10).priority == Priority.MEDIUM

    def test_low_stock_band(self):
        result = classify_stock(15, 10)
        assert result.alert_type == AlertType.LOW_STOCK
        assert result.priority == Priority.LOW
        assert classify_stock(16, 10) is None

    def test_zero_or_negative_is_critical(self):
        assert classify_stock(0, 10).priority == Priority.CRITICAL
        assert classify_stock(-3, 10).priority == Priority.CRITICAL
        assert classify_stock(0, 0).alert_type == AlertType.CRITICAL_STOCK

    def test_zero_reorder_point_with_stock(self):
        assert classify_stock(1, 0) is None

    def test_factors_are_configurable(self):
        assert classify_stock(4, 10, critical_factor=0.4).priority == Priority.CRITICAL
        assert classify_stock(12, 10, low_factor=1.0) is None


class TestUrgencyScore:
    def test_scales_with_deficit(self):
        assert urgency_score(9, 10) == 10
        assert urgency_score(2, 10) == 80
        assert urgency_score(0, 10) == 100

    def test_capped_and_floored(self):
        assert urgency_score(-5, 10) == 100
        assert urgency_score(15, 10) == 0

    def test_critical_category_bonus(self):
        assert urgency_score(9, 10, critical_category=True) == 20
        assert urgency_score(0, 10, critical_category=True) == 100

    def test_zero_reorder_point(self):
        assert urgency_score(0, 0) == 100
        assert urgency_score(4, 0) == 0


# ── Evaluation ─────────────────────────────────────────────────────────


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_creates_alert_with_initial_tasks(self, engine, publisher):
        await register(engine, reorder_point=10, reorder_quantity=20)
        await restock(engine, "towels", 5, unit_cost=2.5)

        alerts = await engine.list_alerts(TENANT_ID)
        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_type == AlertType.REORDER_NEEDED.value
        assert alert.priority == Priority.HIGH.value
        assert alert.state == AlertState.ACTIVE.value
        assert alert.observed_on_hand == 5
        assert alert.suggested_quantity == 20
        assert alert.estimated_cost == pytest.approx(50.0)
        assert alert.urgency_score == 50

        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert sorted((t.stage, t.recipient) for t in tasks) == [
            ("initial", "admin-1"),
            ("initial", "manager-1"),
        ]
        assert ("created", str(alert.alert_id)) in publisher.events

    @pytest.mark.asyncio
    async def test_evaluate_twice_is_a_no_op(self, engine):
        await register(engine)
        await restock(engine, "towels", 4)

        first = await engine.evaluate(TENANT_ID)
        second = await engine.evaluate(TENANT_ID)
        assert first["created"] == second["created"] == 0
        assert second["updated"] == 0

        alerts = await engine.list_alerts(TENANT_ID)
        assert len(alerts) == 1
        assert len(await engine.dispatcher.tasks_for_alert(alerts[0].alert_id)) == 2

    @pytest.mark.asyncio
    async def test_one_open_alert_per_item(self, engine, session_factory):
        await register(engine)
        await restock(engine, "towels", 9)
        await consume(engine, "towels", 3)
        await consume(engine, "towels", 4)

        open_alerts = await engine.list_alerts(TENANT_ID, state=AlertState.ACTIVE)
        assert len(open_alerts) == 1
        assert open_alerts[0].observed_on_hand == 2
        async with session_factory() as db:
            marker = await db.get(OpenAlert, (TENANT_ID, "towels"))
        assert marker.alert_id == open_alerts[0].alert_id

    @pytest.mark.asyncio
    async def test_higher_stock_does_not_rewrite_alert(self, engine):
        await register(engine, reorder_point=10)
        await restock(engine, "towels", 4)
        before = (await engine.list_alerts(TENANT_ID))[0]

        await restock(engine, "towels", 2)
        after = (await engine.list_alerts(TENANT_ID))[0]
        assert after.alert_id == before.alert_id
        assert after.observed_on_hand == 4
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_critical_category_raises_urgency(self, engine):
        await register(engine, "bandages", category="medical")
        await restock(engine, "bandages", 9)
        alert = (await engine.list_alerts(TENANT_ID))[0]
        assert alert.urgency_score == 20

    @pytest.mark.asyncio
    async def test_auto_resolve_when_stock_recovers(self, engine, publisher):
        await register(engine, reorder_point=10)
        await restock(engine, "towels", 8)
        alert = (await engine.list_alerts(TENANT_ID))[0]

        await restock(engine, "towels", 30)
        resolved = await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)
        assert resolved.state == AlertState.RESOLVED.value
        assert resolved.resolved_by == "system"
        assert ("resolved", str(alert.alert_id)) in publisher.events
        assert await engine.list_alerts(TENANT_ID, state=AlertState.ACTIVE) == []

    @pytest.mark.asyncio
    async def test_low_stock_alert_resolves_above_low_band(self, engine):
        await register(engine, reorder_point=10)
        await restock(engine, "towels", 14)
        alert = (await engine.list_alerts(TENANT_ID))[0]
        assert alert.alert_type == AlertType.LOW_STOCK.value

        await restock(engine, "towels", 1)
        assert (await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)).state == AlertState.ACTIVE.value

        await restock(engine, "towels", 1)
        assert (await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)).state == AlertState.RESOLVED.value

    @pytest.mark.asyncio
    async def test_adjustment_recovery_leaves_alert_open(self, engine):
        await register(engine, reorder_point=10)
        await restock(engine, "towels", 5)
        alert = (await engine.list_alerts(TENANT_ID))[0]

        await engine.append(NewEntry(TENANT_ID, "towels", EntryType.ADJUSTMENT, 20))
        await engine.scheduler.wait_idle()
        summary = await engine.evaluate(TENANT_ID)
        assert summary["resolved"] == 0
        assert (await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)).state == AlertState.ACTIVE.value

        await restock(engine, "towels", 1)
        assert (await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)).state == AlertState.RESOLVED.value

    @pytest.mark.asyncio
    async def test_acknowledged_alert_is_not_escalated(self, engine):
        await register(engine)
        await restock(engine, "towels", 9)
        alert = (await engine.list_alerts(TENANT_ID))[0]
        await engine.ack_alert(TENANT_ID, alert.alert_id, "lead")

        await consume(engine, "towels", 7)
        updated = await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)
        assert updated.priority == Priority.CRITICAL.value
        assert updated.state == AlertState.ACKNOWLEDGED.value
        assert await engine.dispatcher.tasks_for_alert(alert.alert_id, NotificationStage.ESCALATION) == []

    @pytest.mark.asyncio
    async def test_supplier_notified_from_high_priority(self, engine):
        await register(engine, "linen", preferred_supplier="acme")
        await restock(engine, "linen", 8)
        medium = (await engine.list_alerts(TENANT_ID))[0]
        stages = {t.stage for t in await engine.dispatcher.tasks_for_alert(medium.alert_id)}
        assert stages == {NotificationStage.INITIAL.value}

        await consume(engine, "linen", 4)
        tasks = await engine.dispatcher.tasks_for_alert(medium.alert_id, NotificationStage.SUPPLIER)
        assert [t.recipient for t in tasks] == ["acme-orders"]

    @pytest.mark.asyncio
    async def test_list_alerts_orders_by_priority(self, engine):
        await register(engine, "towels")
        await register(engine, "soap")
        await restock(engine, "towels", 8)
        await restock(engine, "soap", 1)

        alerts = await engine.list_alerts(TENANT_ID)
        assert [a.item_id for a in alerts] == ["soap", "towels"]
        critical = await engine.list_alerts(TENANT_ID, priority="critical")
        assert [a.item_id for a in critical] == ["soap"]

    @pytest.mark.asyncio
    async def test_inactive_items_are_skipped(self, engine):
        await register(engine)
        await engine.catalogue.deactivate_item(TENANT_ID, "towels")
        summary = await engine.evaluate(TENANT_ID)
        assert summary["items_evaluated"] == 0


# ── Lifecycle ──────────────────────────────────────────────────────────


class TestLifecycle:
    async def _open_alert(self, engine):
        await register(engine)
        await restock(engine, "towels", 5)
        return (await engine.list_alerts(TENANT_ID))[0]

    @pytest.mark.asyncio
    async def test_acknowledge_then_reacknowledge(self, engine):
        alert = await self._open_alert(engine)
        acked = await engine.ack_alert(TENANT_ID, alert.alert_id, "housekeeping-lead")
        assert acked.state == AlertState.ACKNOWLEDGED.value
        assert acked.acknowledged_by == "housekeeping-lead"
        assert acked.version == alert.version + 1

        again = await engine.ack_alert(TENANT_ID, str(alert.alert_id), "someone-else")
        assert again.version == acked.version
        assert again.acknowledged_by == "housekeeping-lead"

    @pytest.mark.asyncio
    async def test_resolve_releases_open_slot(self, engine, session_factory):
        alert = await self._open_alert(engine)
        await engine.ack_alert(TENANT_ID, alert.alert_id, "lead")
        resolved = await engine.resolve_alert(TENANT_ID, alert.alert_id, "lead")
        assert resolved.state == AlertState.RESOLVED.value
        assert resolved.resolved_by == "lead"

        async with session_factory() as db:
            assert await db.get(OpenAlert, (TENANT_ID, "towels")) is None

        # Stock is still low, so the next pass opens a fresh alert
        summary = await engine.evaluate(TENANT_ID)
        assert summary["created"] == 1
        open_alerts = await engine.list_alerts(TENANT_ID, state="active")
        assert len(open_alerts) == 1
        assert open_alerts[0].alert_id != alert.alert_id

    @pytest.mark.asyncio
    async def test_terminal_states_reject_transitions(self, engine):
        alert = await self._open_alert(engine)
        await engine.resolve_alert(TENANT_ID, alert.alert_id, "lead")
        for call in (
            engine.ack_alert(TENANT_ID, alert.alert_id, "lead"),
            engine.resolve_alert(TENANT_ID, alert.alert_id, "lead"),
            engine.dismiss_alert(TENANT_ID, alert.alert_id, "lead", "duplicate"),
        ):
            with pytest.raises(EngineError) as exc:
                await call
            assert exc.value.kind == ErrorKind.ALERT_NOT_OPEN

    @pytest.mark.asyncio
    async def test_dismiss_requires_reason(self, engine):
        alert = await self._open_alert(engine)
        with pytest.raises(EngineError) as exc:
            await engine.dismiss_alert(TENANT_ID, alert.alert_id, "lead", "  ")
        assert exc.value.kind == ErrorKind.INVALID_ENTRY

        dismissed = await engine.dismiss_alert(TENANT_ID, alert.alert_id, "lead", "stock counted wrong")
        assert dismissed.state == AlertState.DISMISSED.value
        assert dismissed.dismissed_reason == "stock counted wrong"

    @pytest.mark.asyncio
    async def test_unknown_alert(self, engine):
        alert = await self._open_alert(engine)
        with pytest.raises(EngineError) as exc:
            await engine.ack_alert(TENANT_ID, uuid.uuid4(), "lead")
        assert exc.value.kind == ErrorKind.ALERT_NOT_FOUND

        with pytest.raises(EngineError) as exc:
            await engine.ack_alert("other-hotel", alert.alert_id, "lead")
        assert exc.value.kind == ErrorKind.ALERT_NOT_FOUND

        with pytest.raises(EngineError) as exc:
            await engine.ack_alert(TENANT_ID, "not-a-uuid", "lead")
        assert exc.value.kind == ErrorKind.ALERT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_describe_alert_includes_delivered_log(self, engine, clock):
        alert = await self._open_alert(engine)
        clock.advance(seconds=10)
        await engine.dispatch_notifications(TENANT_ID)

        described = await engine.describe_alert(TENANT_ID, alert.alert_id)
        assert described["alert_id"] == str(alert.alert_id)
        assert sorted(entry["recipient"] for entry in described["notification_log"]) == ["admin-1", "manager-1"]
        assert {entry["stage"] for entry in described["notification_log"]} == {"initial"}


# ── Reorder stats & history ────────────────────────────────────────────


class TestReorderStats:
    async def _history(self, engine, clock):
        await register(engine, "towels")
        await register(engine, "soap")
        await register(engine, "sheets", auto_reorder_enabled=False)
        await restock(engine, "towels", 5)
        await restock(engine, "soap", 30)

        clock.advance(hours=1)
        sheets = (await engine.evaluator.list_alerts(TENANT_ID, item_id="sheets"))[0]
        await engine.dismiss_alert(TENANT_ID, sheets.alert_id, "lead", "discontinued")

    @pytest.mark.asyncio
    async def test_history_lists_closed_alerts_newest_first(self, engine, clock):
        await self._history(engine, clock)

        history = await engine.reorder_history(TENANT_ID)
        assert [(h["item_id"], h["state"]) for h in history] == [("sheets", "dismissed"), ("soap", "resolved")]
        assert history[0]["dismissed_reason"] == "discontinued"

    @pytest.mark.asyncio
    async def test_history_filters(self, engine, clock):
        await self._history(engine, clock)

        assert [h["item_id"] for h in await engine.reorder_history(TENANT_ID, state="resolved")] == ["soap"]
        assert await engine.reorder_history(TENANT_ID, state=AlertState.ACTIVE) == []
        assert await engine.reorder_history(TENANT_ID, item_id="towels") == []
        since = clock.utcnow() - timedelta(minutes=30)
        assert [h["item_id"] for h in await engine.reorder_history(TENANT_ID, since=since)] == ["sheets"]
        assert [h["item_id"] for h in await engine.reorder_history(TENANT_ID, until=since)] == ["soap"]
        assert len(await engine.reorder_history(TENANT_ID, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_stats_count_alerts_and_items(self, engine, clock):
        await self._history(engine, clock)

        stats = await engine.reorder_stats(TENANT_ID)
        assert stats["open_alerts"] == 1
        assert stats["by_priority"] == {"low": 0, "medium": 0, "high": 1, "critical": 0}
        assert stats["by_state"] == {"active": 1, "acknowledged": 0, "resolved": 1, "dismissed": 1}
        assert stats["items_with_auto_reorder"] == 2
        assert stats["items_needing_reorder"] == 1
        assert [h["item_id"] for h in stats["recent_history"]] == ["sheets", "soap"]
        assert stats["as_of"] == clock.utcnow().isoformat()

    @pytest.mark.asyncio
    async def test_stats_for_empty_tenant(self, engine):
        stats = await engine.reorder_stats(TENANT_ID)
        assert stats["open_alerts"] == 0
        assert stats["items_needing_reorder"] == 0
        assert stats["recent_history"] == []
