"""
Alert lifecycle transitions.

  ACTIVE ──ack──► ACKNOWLEDGED
  ACTIVE | ACKNOWLEDGED ──resolve──► RESOLVED     (terminal)
  ACTIVE | ACKNOWLEDGED ──dismiss──► DISMISSED    (terminal, reason required)

Every transition is a compare-and-set on (alert_id, state, version) and bumps
the version. Closing an alert releases the item's open_alerts row in the
same transaction so a new alert can be opened afterwards.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import EngineError, ErrorKind
from core.types import OPEN_ALERT_STATES, AlertState
from db.models import Alert, OpenAlert

logger = structlog.get_logger()


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset[AlertState]
    target: AlertState


ACKNOWLEDGE = Transition("acknowledge", frozenset({AlertState.ACTIVE}), AlertState.ACKNOWLEDGED)
RESOLVE = Transition("resolve", frozenset(OPEN_ALERT_STATES), AlertState.RESOLVED)
DISMISS = Transition("dismiss", frozenset(OPEN_ALERT_STATES), AlertState.DISMISSED)


class StaleAlert(Exception):
    """The alert moved between read and compare-and-set."""


def as_alert_id(alert_id) -> uuid.UUID:
    if isinstance(alert_id, uuid.UUID):
        return alert_id
    try:
        return uuid.UUID(str(alert_id))
    except ValueError as exc:
        raise EngineError(ErrorKind.ALERT_NOT_FOUND, "Alert not found", alert_id=str(alert_id)) from exc


def is_open(alert: Alert) -> bool:
    return AlertState(alert.state) in OPEN_ALERT_STATES


async def load_alert(db: AsyncSession, alert_id: uuid.UUID, tenant_id: str | None = None) -> Alert:
    alert = await db.get(Alert, alert_id, populate_existing=True)
    if alert is None or (tenant_id is not None and alert.tenant_id != tenant_id):
        raise EngineError(ErrorKind.ALERT_NOT_FOUND, "Alert not found", alert_id=str(alert_id))
    return alert


async def apply_transition(
    db: AsyncSession,
    alert: Alert,
    transition: Transition,
    *,
    actor_id: str,
    now: datetime,
    reason: str | None = None,
) -> bool:
    """CAS ``alert`` into ``transition.target`` within ``db``.

    Returns False when the alert already sits in the target state (idempotent
    acknowledge); raises ALERT_NOT_OPEN for any other illegal source state and
    StaleAlert when another writer got there first.
    """
    state = AlertState(alert.state)
    if state == transition.target and transition is ACKNOWLEDGE:
        return False
    if state not in transition.sources:
        raise EngineError(
            ErrorKind.ALERT_NOT_OPEN,
            f"Cannot {transition.name} an alert in state {state.value}",
            alert_id=str(alert.alert_id),
            state=state.value,
        )

    values: dict = {"state": transition.target.value, "version": alert.version + 1, "updated_at": now}
    if transition.target == AlertState.ACKNOWLEDGED:
        values.update(acknowledged_by=actor_id, acknowledged_at=now)
    elif transition.target == AlertState.RESOLVED:
        values.update(resolved_by=actor_id, resolved_at=now)
    elif transition.target == AlertState.DISMISSED:
        values.update(dismissed_by=actor_id, dismissed_at=now, dismissed_reason=reason)

    result = await db.execute(
        update(Alert)
        .where(
            Alert.alert_id == alert.alert_id,
            Alert.state == state.value,
            Alert.version == alert.version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleAlert(str(alert.alert_id))

    if AlertState(transition.target) not in OPEN_ALERT_STATES:
        await db.execute(
            delete(OpenAlert)
            .where(OpenAlert.alert_id == alert.alert_id)
            .execution_options(synchronize_session=False)
        )

    logger.info(
        "alerts.transitioned",
        alert_id=str(alert.alert_id),
        tenant_id=alert.tenant_id,
        item_id=alert.item_id,
        transition=transition.name,
        from_state=state.value,
        to_state=transition.target.value,
        actor_id=actor_id,
    )
    return True


async def transition_with_retry(
    session_factory,
    alert_id,
    transition: Transition,
    *,
    actor_id: str,
    now: datetime,
    max_retries: int,
    tenant_id: str | None = None,
    reason: str | None = None,
) -> tuple[Alert, bool]:
    """Re-read and retry the CAS up to ``max_retries`` times."""
    if transition is DISMISS and not (reason and reason.strip()):
        raise EngineError(ErrorKind.INVALID_ENTRY, "A dismissal reason is required", alert_id=str(alert_id))

    alert_id = as_alert_id(alert_id)
    for attempt in range(1, max_retries + 1):
        try:
            async with session_factory() as db:
                async with db.begin():
                    alert = await load_alert(db, alert_id, tenant_id)
                    changed = await apply_transition(
                        db, alert, transition, actor_id=actor_id, now=now, reason=reason
                    )
                    alert = await load_alert(db, alert_id)
            return alert, changed
        except StaleAlert:
            logger.warning("alerts.cas_conflict", alert_id=str(alert_id), attempt=attempt)
            continue

    raise EngineError(
        ErrorKind.ALERT_CONFLICT,
        "Alert kept changing underneath the transition",
        alert_id=str(alert_id),
        attempts=max_retries,
    )
