"""
Alert change feed over Redis pub/sub.

Every durable alert transition is published to ``alerts:{tenant_id}`` so
dashboards can follow state without polling. Publishing is best effort and
never rolls back the transition that produced it.
"""

from __future__ import annotations

import json
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from db.models import Alert

logger = structlog.get_logger()


class AlertPublisher(Protocol):
    async def publish(self, event: str, alerts: list[Alert]) -> int: ...


def alert_payload(event: str, alert: Alert) -> dict:
    return {
        "type": "alert",
        "event": event,
        "payload": {
            "alert_id": str(alert.alert_id),
            "item_id": alert.item_id,
            "alert_type": alert.alert_type,
            "priority": alert.priority,
            "state": alert.state,
            "observed_on_hand": alert.observed_on_hand,
            "suggested_quantity": alert.suggested_quantity,
            "urgency_score": alert.urgency_score,
            "version": alert.version,
            "updated_at": alert.updated_at.isoformat() if alert.updated_at else None,
        },
    }


class RedisAlertPublisher:
    """Publishes alert events; returns the number of subscribers reached."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url

    async def publish(self, event: str, alerts: list[Alert]) -> int:
        if not alerts:
            return 0

        redis = aioredis.from_url(self._redis_url)
        try:
            total_subs = 0
            for alert in alerts:
                channel = f"alerts:{alert.tenant_id}"
                total_subs += await redis.publish(channel, json.dumps(alert_payload(event, alert)))
            return total_subs
        except aioredis.RedisError as exc:
            logger.warning("alerts.publish_failed", alert_event=event, error=str(exc))
            return 0
        finally:
            await redis.aclose()


class InMemoryAlertPublisher:
    """Keeps events in a list, for tests and single-process runs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    async def publish(self, event: str, alerts: list[Alert]) -> int:
        self.events.extend((event, str(a.alert_id)) for a in alerts)
        return 0
