"""
Stock Projection — derived onHand / weighted-average-cost view of the ledger.

The projection is a pure left fold over ledger entries in seq order:

  onHand'  = onHand + quantity
  wac'     = (wac × onHand + unitCost × qty) / (onHand + qty)   (qty > 0, unitCost > 0)

WAC is computed before the onHand update and is left untouched by negative
entries and transfers. When stock was at or below zero before a costed
receipt, the receipt's unit cost becomes the new WAC.

ProjectionCache is the per-process write-through copy. Writes are
compare-and-set on last_seq so a stale writer can never roll it back.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from core.types import EntryType


@dataclass(frozen=True)
class Projection:
    """onHand and WAC for one (tenant, item) as of ``last_seq``."""

    tenant_id: str
    item_id: str
    on_hand: int = 0
    last_seq: int = 0
    weighted_average_cost: float = 0.0
    last_updated: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.item_id)

    def apply(
        self,
        seq: int,
        entry_type: EntryType | str,
        quantity: int,
        unit_cost: float,
        at: datetime | None = None,
    ) -> "Projection":
        """Fold one entry. ``seq`` must directly follow ``last_seq``."""
        if seq != self.last_seq + 1:
            raise ValueError(f"Ledger gap: expected seq {self.last_seq + 1}, got {seq}")

        wac = self.weighted_average_cost
        if EntryType(entry_type) != EntryType.TRANSFER and quantity > 0 and unit_cost > 0:
            wac = weighted_average_cost(wac, self.on_hand, unit_cost, quantity)

        return replace(
            self,
            on_hand=self.on_hand + quantity,
            last_seq=seq,
            weighted_average_cost=wac,
            last_updated=at or self.last_updated,
        )

    @classmethod
    def from_row(cls, row) -> "Projection":
        return cls(
            tenant_id=row.tenant_id,
            item_id=row.item_id,
            on_hand=row.on_hand,
            last_seq=row.last_seq,
            weighted_average_cost=row.weighted_average_cost,
            last_updated=row.last_updated,
        )

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "item_id": self.item_id,
            "on_hand": self.on_hand,
            "last_seq": self.last_seq,
            "weighted_average_cost": round(self.weighted_average_cost, 4),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


def weighted_average_cost(wac: float, on_hand: int, unit_cost: float, quantity: int) -> float:
    """Moving average cost after receiving ``quantity`` at ``unit_cost``."""
    if on_hand <= 0:
        return float(unit_cost)
    return (wac * on_hand + unit_cost * quantity) / (on_hand + quantity)


def fold(tenant_id: str, item_id: str, entries: Iterable, start: Projection | None = None) -> Projection:
    """Fold ledger rows (anything with seq/entry_type/quantity/unit_cost/recorded_at)."""
    projection = start or Projection(tenant_id=tenant_id, item_id=item_id)
    for entry in entries:
        projection = projection.apply(
            entry.seq,
            entry.entry_type,
            entry.quantity,
            entry.unit_cost or 0.0,
            entry.recorded_at,
        )
    return projection


class ProjectionCache:
    """In-process projection cache keyed by (tenant, item)."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, Projection] = {}

    def get(self, key: Hashable) -> Projection | None:
        return self._entries.get(key)

    def put(self, projection: Projection, expected_last_seq: int | None = None) -> bool:
        """Store ``projection`` if the cached copy still sits at ``expected_last_seq``.

        With no expectation the write only succeeds when it moves the cache
        forward.
        """
        current = self._entries.get(projection.key)
        if current is not None:
            if expected_last_seq is not None and current.last_seq != expected_last_seq:
                return False
            if current.last_seq > projection.last_seq:
                return False
        self._entries[projection.key] = projection
        return True

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
