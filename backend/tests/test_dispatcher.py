"""
Tests for the Notification Dispatcher — ordering, coalescing, retries and dedup.

Covers:
  - Backoff schedule and idempotency tokens
  - Coalesce window and per-group sends
  - Retryable / terminal failures, attempt limit
  - ESCALATION waits for INITIAL and is dropped once acknowledged
  - Recipient fan-in: deferral across passes, one call per recipient within one
  - Closed alerts, stale in-flight tasks, batch size
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import update

from conftest import TENANT_ID, RecordingTransport, consume, register, restock
from alerts.dispatcher import NotificationRequest, backoff_seconds, digest_token, group_token, idempotency_token
from alerts.transport import Recipient, TransportError
from core.types import NotificationStage, TaskState
from db.models import NotificationTask
from inventory.engine import InventoryEngine


async def _open_alert(engine, on_hand: int = 5):
    await register(engine)
    await restock(engine, "towels", on_hand)
    return (await engine.list_alerts(TENANT_ID))[0]


async def _states(engine, alert_id, stage=None):
    return sorted(t.state for t in await engine.dispatcher.tasks_for_alert(alert_id, stage))


@pytest.fixture
def single_transport():
    return RecordingTransport(multi=False)


@pytest.fixture
async def single_engine(session_factory, settings, clock, directory, single_transport):
    larder = InventoryEngine(session_factory, settings, clock, single_transport, directory)
    yield larder
    await larder.close()


# ── Pure helpers ───────────────────────────────────────────────────────


class TestTokens:
    def test_backoff_doubles_until_cap(self):
        assert [backoff_seconds(n, 30, 3600) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]
        assert backoff_seconds(12, 30, 3600) == 3600

    def test_escalation_token_carries_date(self):
        day = date(2026, 3, 15)
        assert idempotency_token("a1", NotificationStage.INITIAL, "r1", day) == "a1:initial:r1"
        assert idempotency_token("a1", NotificationStage.ESCALATION, "r1", day) == "a1:escalation:r1:2026-03-15"
        assert group_token("a1", "escalation", day) == "a1:escalation:2026-03-15"
        assert group_token("a1", "supplier", day) == "a1:supplier"


# ── Delivery ───────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_waits_for_coalesce_window(self, engine, clock, transport):
        alert = await _open_alert(engine)
        report = await engine.dispatch_notifications(TENANT_ID)
        assert report.claimed == 0
        assert transport.sent == []

        clock.advance(seconds=5)
        report = await engine.dispatch_notifications(TENANT_ID)
        assert report.claimed == 2
        assert report.sends == 1
        assert sorted(transport.recipients_sent()) == ["admin-1", "manager-1"]
        assert transport.sent[0].idempotency_key == f"{alert.alert_id}:initial"
        assert await _states(engine, alert.alert_id) == ["delivered", "delivered"]

    @pytest.mark.asyncio
    async def test_one_send_per_recipient_without_multi_support(self, single_engine, single_transport, clock):
        alert = await _open_alert(single_engine)
        clock.advance(seconds=6)
        report = await single_engine.dispatch_notifications(TENANT_ID)

        assert report.sends == 2
        assert sorted(m.idempotency_key for m in single_transport.sent) == [
            f"{alert.alert_id}:initial:admin-1",
            f"{alert.alert_id}:initial:manager-1",
        ]

    @pytest.mark.asyncio
    async def test_delivered_once(self, engine, clock, transport):
        alert = await _open_alert(engine)
        clock.advance(seconds=6)
        await engine.dispatch_notifications(TENANT_ID)
        clock.advance(minutes=5)
        report = await engine.dispatch_notifications(TENANT_ID)
        await engine.evaluate(TENANT_ID)

        assert report.claimed == 0
        assert len(transport.sent) == 1
        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert all(t.transport_message_id == "msg-1" for t in tasks)

    @pytest.mark.asyncio
    async def test_enqueue_skips_known_tokens(self, engine, clock):
        alert = await _open_alert(engine)
        request = NotificationRequest(
            TENANT_ID, alert.alert_id, NotificationStage.INITIAL, [Recipient("manager-1", "ops@hotel.test")], clock.today()
        )
        assert await engine.dispatcher.enqueue(request) == []
        assert len(await engine.dispatcher.tasks_for_alert(alert.alert_id)) == 2

    @pytest.mark.asyncio
    async def test_retryable_failure_backs_off(self, engine, clock, transport):
        alert = await _open_alert(engine)
        transport.fail_next(TransportError("503 from provider", retryable=True))
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)
        assert report.retrying == 2
        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert {t.state for t in tasks} == {TaskState.RETRYING.value}
        assert all(t.attempts == 1 for t in tasks)
        assert all(t.next_attempt_at == clock.utcnow() + timedelta(seconds=30) for t in tasks)

        clock.advance(seconds=10)
        assert (await engine.dispatch_notifications(TENANT_ID)).claimed == 0

        clock.advance(seconds=20)
        report = await engine.dispatch_notifications(TENANT_ID)
        assert report.delivered == 2
        assert await _states(engine, alert.alert_id) == ["delivered", "delivered"]

    @pytest.mark.asyncio
    async def test_terminal_failure_marks_failed(self, engine, clock, transport):
        alert = await _open_alert(engine)
        transport.fail_next(TransportError("invalid address", retryable=False))
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.failed == 2
        assert report.errors == ["invalid address", "invalid address"]
        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert {(t.state, t.last_error) for t in tasks} == {("failed", "invalid address")}
        # The alert itself is untouched
        assert (await engine.evaluator.get_alert(TENANT_ID, alert.alert_id)).state == "active"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, engine, clock, transport, settings):
        alert = await _open_alert(engine)
        transport.fail_next(*[TransportError("timeout") for _ in range(settings.notification_max_attempts)])

        for _ in range(settings.notification_max_attempts):
            clock.advance(seconds=settings.notification_backoff_cap_seconds)
            await engine.dispatch_notifications(TENANT_ID)

        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert {t.state for t in tasks} == {TaskState.FAILED.value}
        assert {t.attempts for t in tasks} == {settings.notification_max_attempts}

    @pytest.mark.asyncio
    async def test_escalation_waits_for_initial_then_fan_in(self, engine, clock, transport):
        await register(engine)
        await restock(engine, "towels", 9)
        await consume(engine, "towels", 7)
        alert = (await engine.list_alerts(TENANT_ID))[0]

        clock.advance(seconds=6)
        first = await engine.dispatch_notifications(TENANT_ID)
        assert first.claimed == 2
        assert first.waiting_on_initial == 1
        assert await _states(engine, alert.alert_id, NotificationStage.ESCALATION) == ["pending"]

        # admin-1 was just reached by the INITIAL message
        sent_at = clock.utcnow()
        clock.advance(seconds=1)
        second = await engine.dispatch_notifications(TENANT_ID)
        assert second.deferred == 1
        escalation = (await engine.dispatcher.tasks_for_alert(alert.alert_id, NotificationStage.ESCALATION))[0]
        assert escalation.next_attempt_at == sent_at + timedelta(seconds=30)

        clock.advance(seconds=30)
        third = await engine.dispatch_notifications(TENANT_ID)
        assert third.delivered == 1
        assert transport.sent[-1].subject.startswith("ESCALATED:")
        assert transport.sent[-1].idempotency_key == f"{alert.alert_id}:escalation:{clock.today().isoformat()}"

    @pytest.mark.asyncio
    async def test_closed_alert_tasks_fail(self, engine, clock, transport):
        alert = await _open_alert(engine)
        await engine.dismiss_alert(TENANT_ID, alert.alert_id, "lead", "miscounted")
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.failed == 2
        assert transport.sent == []
        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert {t.last_error for t in tasks} == {"alert_closed"}

    @pytest.mark.asyncio
    async def test_batch_size_limits_claims(self, engine, clock):
        await _open_alert(engine)
        clock.advance(seconds=6)
        report = await engine.dispatcher.dispatch_due(TENANT_ID, batch_size=1)
        assert report.claimed == 1


    @pytest.mark.asyncio
    async def test_escalation_dropped_once_acknowledged(self, engine, clock, transport):
        await register(engine)
        await restock(engine, "towels", 9)
        await consume(engine, "towels", 7)
        alert = (await engine.list_alerts(TENANT_ID))[0]
        assert await _states(engine, alert.alert_id, NotificationStage.ESCALATION) == ["pending"]

        await engine.ack_alert(TENANT_ID, alert.alert_id, "lead")
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.claimed == 2
        assert report.failed == 1
        escalation = (await engine.dispatcher.tasks_for_alert(alert.alert_id, NotificationStage.ESCALATION))[0]
        assert (escalation.state, escalation.last_error) == ("failed", "alert_acknowledged")
        assert len(transport.sent) == 1
        assert not transport.sent[0].subject.startswith("ESCALATED:")


# ── Fan-in ─────────────────────────────────────────────────────────────


async def _two_alerts(engine, **towels_fields):
    await register(engine, "towels", **towels_fields)
    await register(engine, "soap")
    # Evaluating the tenant opens alerts for towels (HIGH at 5) and soap (CRITICAL at 0)
    await restock(engine, "towels", 5)
    alerts = await engine.list_alerts(TENANT_ID)
    assert sorted(a.item_id for a in alerts) == ["soap", "towels"]
    return alerts


class TestFanIn:
    @pytest.mark.asyncio
    async def test_same_recipients_across_alerts_share_one_call(self, engine, clock, transport):
        alerts = await _two_alerts(engine)
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.claimed == 4
        assert report.sends == 1
        assert report.fanned_in == 1
        assert report.delivered == 4
        assert sorted(transport.recipients_sent()) == ["admin-1", "manager-1"]

        message = transport.sent[0]
        assert message.idempotency_key.startswith("digest:")
        assert message.subject == "Larder Alert [CRITICAL]: 2 notices"
        assert "Towels is at 5" in message.body
        assert "Soap is at 0" in message.body
        for alert in alerts:
            assert await _states(engine, alert.alert_id) == ["delivered", "delivered"]

    @pytest.mark.asyncio
    async def test_calls_only_carry_groups_addressed_to_their_recipients(self, engine, clock, transport):
        await _two_alerts(engine, preferred_supplier="acme")
        clock.advance(seconds=6)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.sends == 2
        by_recipients = {tuple(sorted(r.id for r in m.recipients)): m for m in transport.sent}
        assert set(by_recipients) == {("admin-1", "manager-1"), ("acme-orders",)}
        assert by_recipients[("acme-orders",)].subject.startswith("Purchase request:")
        assert by_recipients[("admin-1", "manager-1")].subject.endswith("2 notices")

    @pytest.mark.asyncio
    async def test_single_recipient_transport_gets_one_call_per_recipient(
        self, single_engine, single_transport, clock
    ):
        await _two_alerts(single_engine)
        clock.advance(seconds=6)
        report = await single_engine.dispatch_notifications(TENANT_ID)

        assert report.claimed == 4
        assert report.sends == 2
        assert sorted(single_transport.recipients_sent()) == ["admin-1", "manager-1"]
        assert all(len(m.recipients) == 1 for m in single_transport.sent)

    @pytest.mark.asyncio
    async def test_digest_token_is_stable_across_retries(self, engine, clock, transport):
        await _two_alerts(engine)
        transport.fail_next(TransportError("503 from provider", retryable=True))
        clock.advance(seconds=6)
        first = await engine.dispatch_notifications(TENANT_ID)
        assert first.retrying == 4

        clock.advance(seconds=30)
        second = await engine.dispatch_notifications(TENANT_ID)
        assert second.sends == 1
        assert second.delivered == 4
        tokens = []
        for alert in await engine.list_alerts(TENANT_ID):
            tokens += [t.idempotency_key for t in await engine.dispatcher.tasks_for_alert(alert.alert_id)]
        assert len(tokens) == 4
        assert transport.sent[0].idempotency_key == digest_token(tokens)



class TestStaleInFlight:
    async def _strand(self, engine, session_factory, clock):
        alert = await _open_alert(engine)
        async with session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(NotificationTask)
                    .where(NotificationTask.alert_id == alert.alert_id)
                    .values(state=TaskState.SENDING.value, attempts=1, last_attempt_at=clock.utcnow())
                )
        clock.advance(minutes=11)
        return alert

    @pytest.mark.asyncio
    async def test_abandoned_when_provider_does_not_dedupe(self, engine, session_factory, clock, transport):
        alert = await self._strand(engine, session_factory, clock)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.abandoned == 2
        assert transport.sent == []
        tasks = await engine.dispatcher.tasks_for_alert(alert.alert_id)
        assert {(t.state, t.last_error) for t in tasks} == {("failed", "abandoned_in_flight")}

    @pytest.mark.asyncio
    async def test_resent_with_same_token_when_provider_dedupes(self, engine, session_factory, clock, transport):
        transport.honours_idempotency_key = True
        alert = await self._strand(engine, session_factory, clock)
        report = await engine.dispatch_notifications(TENANT_ID)

        assert report.requeued == 2
        assert report.delivered == 2
        assert transport.sent[0].idempotency_key == f"{alert.alert_id}:initial"
        assert {t.attempts for t in await engine.dispatcher.tasks_for_alert(alert.alert_id)} == {2}
