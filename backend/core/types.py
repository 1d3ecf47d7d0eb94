"""Shared enumerations for ledger, alert, notification and snapshot records."""

from enum import Enum


class EntryType(str, Enum):
    """Kind of physical stock movement recorded in the ledger."""

    RESTOCK = "restock"
    CONSUMPTION = "consumption"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    DAMAGE_CHARGE = "damage_charge"


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    REORDER_NEEDED = "reorder_needed"
    CRITICAL_STOCK = "critical_stock"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class AlertState(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


OPEN_ALERT_STATES = (AlertState.ACTIVE, AlertState.ACKNOWLEDGED)


class NotificationStage(str, Enum):
    INITIAL = "initial"
    ESCALATION = "escalation"
    SUPPLIER = "supplier"


class TaskState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


class SnapshotTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    THRESHOLD = "threshold"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    VOLATILE = "volatile"
    STABLE = "stable"
