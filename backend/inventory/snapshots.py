"""
Snapshot Builder — immutable point-in-time inventory summaries.

A snapshot pins every active item's last_seq when it starts and bounds the
consumption window to (taken_at − 30d, taken_at], so ledger entries written
after it began never leak in. Each snapshot is one row; lines and aggregates
live in JSON columns and are never updated afterwards.

Per line:
  consumption_rate_30d = units consumed in the window / window_days
  days_of_stock        = on_hand / consumption_rate_30d   (None when rate = 0)
  unit_value           = weighted average cost, falling back to item cost

Threshold triggers compare against the previous snapshot:
  low_stock       - low-stock count grew by more than snapshot_low_stock_delta
  consumption_spike - average consumption rate rose more than snapshot_consumption_jump

Top items average each item's lines over the snapshots of a period and rank
them by consumption, value and consumption volatility.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import Clock
from core.config import Settings
from core.types import EntryType, SnapshotTrigger
from db.models import Snapshot
from inventory.items import ItemCatalogue
from inventory.ledger import StockLedger

logger = structlog.get_logger()


def summarize(lines: list[dict[str, Any]]) -> dict[str, Any]:
    rates = [line["consumption_rate_30d"] for line in lines]
    return {
        "total_items": len(lines),
        "total_value": round(sum(line["total_value"] for line in lines), 2),
        "low_stock_count": sum(1 for line in lines if 0 < line["on_hand"] <= line["reorder_point"]),
        "out_of_stock_count": sum(1 for line in lines if line["on_hand"] <= 0),
        "avg_consumption_rate": round(sum(rates) / len(rates), 4) if rates else 0.0,
    }


def threshold_triggers(
    current: dict[str, Any],
    previous: dict[str, Any] | None,
    *,
    low_stock_delta: int,
    consumption_jump: float,
) -> list[dict[str, Any]]:
    """Compare two aggregate blocks and describe what crossed a threshold."""
    if not previous:
        return []

    triggers = []
    low_stock_change = current["low_stock_count"] - previous.get("low_stock_count", 0)
    if low_stock_change > low_stock_delta:
        triggers.append(
            {"type": "low_stock", "threshold": low_stock_delta, "actual_value": low_stock_change}
        )

    previous_rate = previous.get("avg_consumption_rate", 0.0)
    limit = previous_rate * (1 + consumption_jump)
    if previous_rate > 0 and current["avg_consumption_rate"] > limit:
        triggers.append(
            {
                "type": "consumption_spike",
                "threshold": round(limit, 4),
                "actual_value": current["avg_consumption_rate"],
            }
        )
    return triggers


def top_items(snapshots: Iterable[Snapshot], limit: int = 10) -> dict[str, list[dict[str, Any]]]:
    """Per-item averages over snapshot lines, ranked by consumption, value and volatility."""
    rows = [
        {
            "item_id": line["item_id"],
            "name": line.get("name") or line["item_id"],
            "category": line.get("category") or "uncategorized",
            "consumption_rate": float(line["consumption_rate_30d"]),
            "total_value": float(line["total_value"]),
            "on_hand": float(line["on_hand"]),
        }
        for snapshot in snapshots
        for line in snapshot.lines
    ]
    if not rows:
        return {"top_by_consumption": [], "top_by_value": [], "most_volatile": []}

    frame = pd.DataFrame(rows)
    stats = (
        frame.groupby("item_id")
        .agg(
            name=("name", "first"),
            category=("category", "first"),
            avg_consumption=("consumption_rate", "mean"),
            avg_value=("total_value", "mean"),
            avg_stock=("on_hand", "mean"),
            volatility=("consumption_rate", lambda s: float(np.std(s.to_numpy()))),
        )
        .reset_index()
        .round({"avg_consumption": 4, "avg_value": 2, "avg_stock": 2, "volatility": 4})
    )

    def ranked(column: str) -> list[dict[str, Any]]:
        ordered = stats.sort_values([column, "item_id"], ascending=[False, True])
        return ordered.head(limit).to_dict("records")

    return {
        "top_by_consumption": ranked("avg_consumption"),
        "top_by_value": ranked("avg_value"),
        "most_volatile": ranked("volatility"),
    }


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "snapshot_id": str(snapshot.snapshot_id),
        "tenant_id": snapshot.tenant_id,
        "taken_at": snapshot.taken_at.isoformat(),
        "trigger_kind": snapshot.trigger_kind,
        "lines": snapshot.lines,
        "aggregates": snapshot.aggregates,
        "triggers": snapshot.triggers,
    }


class SnapshotBuilder:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: StockLedger,
        catalogue: ItemCatalogue,
        settings: Settings,
        clock: Clock,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._catalogue = catalogue
        self._settings = settings
        self._clock = clock

    async def build_lines(self, tenant_id: str, taken_at: datetime) -> list[dict[str, Any]]:
        """Per-item lines as of ``taken_at`` without persisting anything."""
        items = await self._catalogue.active_items(tenant_id)
        pinned = {item.item_id: await self._ledger.get_projection(tenant_id, item.item_id) for item in items}

        window_days = self._settings.consumption_window_days
        entries = await self._ledger.tenant_entries(
            tenant_id,
            since=taken_at - timedelta(days=window_days),
            until=taken_at,
            entry_types=(EntryType.CONSUMPTION,),
        )
        consumed: dict[str, int] = defaultdict(int)
        for entry in entries:
            projection = pinned.get(entry.item_id)
            if projection is not None and entry.seq <= projection.last_seq:
                consumed[entry.item_id] += -entry.quantity

        lines = []
        for item in items:
            projection = pinned[item.item_id]
            rate = consumed[item.item_id] / window_days
            unit_value = projection.weighted_average_cost or item.cost or 0.0
            lines.append(
                {
                    "item_id": item.item_id,
                    "name": item.name,
                    "category": item.category,
                    "on_hand": projection.on_hand,
                    "last_seq": projection.last_seq,
                    "reorder_point": item.reorder_point,
                    "consumption_rate_30d": round(rate, 4),
                    "unit_value": round(unit_value, 4),
                    "total_value": round(unit_value * projection.on_hand, 2),
                    "days_of_stock": round(projection.on_hand / rate, 1) if rate > 0 else None,
                }
            )
        return lines

    async def snapshot(
        self,
        tenant_id: str,
        trigger_kind: SnapshotTrigger | str = SnapshotTrigger.MANUAL,
    ) -> Snapshot:
        return await self._write(tenant_id, SnapshotTrigger(trigger_kind))

    async def snapshot_if_threshold(self, tenant_id: str) -> Snapshot | None:
        """Write a THRESHOLD snapshot when the live picture moved past a threshold."""
        previous = await self.latest(tenant_id, 1)
        if not previous:
            return None
        current = summarize(await self.build_lines(tenant_id, self._clock.utcnow()))
        if not self._triggers(current, previous[0].aggregates):
            return None
        return await self._write(tenant_id, SnapshotTrigger.THRESHOLD)

    async def _write(self, tenant_id: str, trigger_kind: SnapshotTrigger) -> Snapshot:
        taken_at = self._clock.utcnow()
        lines = await self.build_lines(tenant_id, taken_at)
        aggregates = summarize(lines)
        previous = await self.latest(tenant_id, 1)
        triggers = self._triggers(aggregates, previous[0].aggregates if previous else None)

        snapshot = Snapshot(
            tenant_id=tenant_id,
            taken_at=taken_at,
            trigger_kind=trigger_kind.value,
            lines=lines,
            aggregates=aggregates,
            triggers=triggers,
            created_at=taken_at,
        )
        async with self._session_factory() as db:
            async with db.begin():
                db.add(snapshot)

        logger.info(
            "snapshots.written",
            tenant_id=tenant_id,
            snapshot_id=str(snapshot.snapshot_id),
            trigger_kind=trigger_kind.value,
            total_items=aggregates["total_items"],
            triggers=[t["type"] for t in triggers],
        )
        return snapshot

    def _triggers(self, current: dict[str, Any], previous: dict[str, Any] | None) -> list[dict[str, Any]]:
        return threshold_triggers(
            current,
            previous,
            low_stock_delta=self._settings.snapshot_low_stock_delta,
            consumption_jump=self._settings.snapshot_consumption_jump,
        )

    async def latest(self, tenant_id: str, n: int = 1) -> list[Snapshot]:
        """Most recent snapshots first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Snapshot)
                .where(Snapshot.tenant_id == tenant_id)
                .order_by(Snapshot.taken_at.desc(), Snapshot.created_at.desc())
                .limit(n)
            )
            return list(result.scalars().all())

    async def since(self, tenant_id: str, start: datetime) -> list[Snapshot]:
        """Snapshots taken at or after ``start``, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Snapshot)
                .where(Snapshot.tenant_id == tenant_id, Snapshot.taken_at >= start)
                .order_by(Snapshot.taken_at.desc(), Snapshot.created_at.desc())
            )
            return list(result.scalars().all())

    async def top_items(self, tenant_id: str, period_days: int = 30, limit: int = 10) -> dict[str, list[dict[str, Any]]]:
        start = self._clock.utcnow() - timedelta(days=period_days)
        return top_items(await self.since(tenant_id, start), limit)

    async def key_metrics(self, tenant_id: str) -> dict[str, Any]:
        """Latest aggregates plus the change against the snapshot before it."""
        snapshots = await self.latest(tenant_id, 2)
        if not snapshots:
            return {}

        latest = snapshots[0].aggregates
        metrics = dict(latest)
        metrics["taken_at"] = snapshots[0].taken_at.isoformat()
        if len(snapshots) > 1:
            previous = snapshots[1].aggregates
            metrics["changes"] = {
                "total_value": round(latest["total_value"] - previous.get("total_value", 0), 2),
                "low_stock_count": latest["low_stock_count"] - previous.get("low_stock_count", 0),
                "avg_consumption_rate": round(
                    latest["avg_consumption_rate"] - previous.get("avg_consumption_rate", 0.0), 4
                ),
            }
        return metrics
