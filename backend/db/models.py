"""
Larder Database Models

8 tables for the inventory reorder & consumption engine.
Multi-tenant via tenant_id on all tables.

Tables:
  Catalogue (1-2):
  1. items                   - Stocked items with their reorder policy
  2. reorder_policy_changes  - Append-only log of policy edits

  Ledger (3-4):
  3. ledger_entries          - Append-only stock movements (seq per item)
  4. stock_projections       - Derived onHand / WAC cache, CAS on last_seq

  Alerts (5-7):
  5. alerts                  - Reorder alerts, CAS on (state, version)
  6. open_alerts             - Single-row mutex per item for the open alert
  7. notification_tasks      - Idempotent per (alert, stage, recipient) deliveries

  History (8):
  8. snapshots               - Immutable point-in-time inventory summaries
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

# ─── 1. Items ───────────────────────────────────────────────────────────────


class Item(Base):
    __tablename__ = "items"

    tenant_id = Column(String(64), primary_key=True)
    item_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=False, default="general")
    unit_of_measure = Column(String(20), nullable=False, default="unit")
    cost = Column(Float, nullable=False, default=0.0)
    preferred_supplier = Column(String(100))
    reorder_point = Column(Integer, nullable=False, default=0)
    reorder_quantity = Column(Integer, nullable=False, default=1)
    max_stock = Column(Integer, nullable=False, default=0)
    lead_time_days = Column(Integer, nullable=False, default=7)
    auto_reorder_enabled = Column(Boolean, nullable=False, default=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_items_tenant_active", "tenant_id", "active"),
        CheckConstraint("reorder_point <= max_stock", name="ck_item_rop_le_max"),
        CheckConstraint("reorder_point >= 0", name="ck_item_rop_non_negative"),
        CheckConstraint("auto_reorder_enabled = false OR reorder_quantity >= 1", name="ck_item_auto_reorder_qty"),
    )

    def policy(self) -> dict:
        return {
            "reorder_point": self.reorder_point,
            "reorder_quantity": self.reorder_quantity,
            "max_stock": self.max_stock,
            "lead_time_days": self.lead_time_days,
            "auto_reorder_enabled": self.auto_reorder_enabled,
        }


# ─── 2. Reorder Policy Changes ─────────────────────────────────────────────


class ReorderPolicyChange(Base):
    __tablename__ = "reorder_policy_changes"

    change_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    item_id = Column(String(64), nullable=False)
    revision = Column(Integer, nullable=False)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    actor_id = Column(String(100), nullable=False, default="system")
    previous_policy = Column(JSON)
    new_policy = Column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "item_id", "revision", name="uq_policy_change_revision"),
        Index("ix_policy_changes_item", "tenant_id", "item_id", "changed_at"),
    )


# ─── 3. Ledger Entries ──────────────────────────────────────────────────────


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    entry_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    item_id = Column(String(64), nullable=False)
    seq = Column(Integer, nullable=False)
    recorded_at = Column(DateTime, nullable=False)
    entry_type = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Float, nullable=False, default=0.0)
    actor_id = Column(String(100), nullable=False, default="system")
    reference_kind = Column(String(50))
    reference_id = Column(String(100))
    reference_description = Column(Text)
    location_from = Column(String(100))
    location_to = Column(String(100))
    entry_metadata = Column("metadata", JSON, default=dict)
    idempotency_key = Column(String(128))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "item_id", "seq", name="uq_ledger_item_seq"),
        UniqueConstraint("tenant_id", "item_id", "idempotency_key", name="uq_ledger_idempotency_key"),
        Index("ix_ledger_item_time", "tenant_id", "item_id", "recorded_at"),
        CheckConstraint("seq >= 1", name="ck_ledger_seq_positive"),
        CheckConstraint(
            "entry_type IN ('restock', 'consumption', 'transfer', 'adjustment', 'damage_charge')",
            name="ck_ledger_entry_type",
        ),
        CheckConstraint("entry_type != 'restock' OR quantity > 0", name="ck_ledger_restock_positive"),
        CheckConstraint(
            "entry_type NOT IN ('consumption', 'damage_charge') OR quantity < 0",
            name="ck_ledger_outflow_negative",
        ),
        CheckConstraint("entry_type != 'transfer' OR quantity = 0", name="ck_ledger_transfer_zero"),
    )


# ─── 4. Stock Projections ───────────────────────────────────────────────────


class StockProjection(Base):
    __tablename__ = "stock_projections"

    tenant_id = Column(String(64), primary_key=True)
    item_id = Column(String(64), primary_key=True)
    on_hand = Column(Integer, nullable=False, default=0)
    last_seq = Column(Integer, nullable=False, default=0)
    weighted_average_cost = Column(Float, nullable=False, default=0.0)
    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 5. Alerts ──────────────────────────────────────────────────────────────


class Alert(Base):
    __tablename__ = "alerts"

    alert_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    item_id = Column(String(64), nullable=False)
    alert_type = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False)
    state = Column(String(20), nullable=False, default="active")
    observed_on_hand = Column(Integer, nullable=False)
    reorder_point = Column(Integer, nullable=False)
    suggested_quantity = Column(Integer, nullable=False)
    estimated_cost = Column(Float, nullable=False, default=0.0)
    urgency_score = Column(Integer, nullable=False, default=0)
    expected_delivery_date = Column(Date)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    acknowledged_by = Column(String(100))
    acknowledged_at = Column(DateTime)
    resolved_by = Column(String(100))
    resolved_at = Column(DateTime)
    dismissed_by = Column(String(100))
    dismissed_at = Column(DateTime)
    dismissed_reason = Column(Text)

    __table_args__ = (
        Index("ix_alerts_tenant_state", "tenant_id", "state"),
        Index("ix_alerts_item", "tenant_id", "item_id"),
        CheckConstraint(
            "alert_type IN ('low_stock', 'reorder_needed', 'critical_stock')",
            name="ck_alert_type",
        ),
        CheckConstraint("priority IN ('low', 'medium', 'high', 'critical')", name="ck_alert_priority"),
        CheckConstraint("state IN ('active', 'acknowledged', 'resolved', 'dismissed')", name="ck_alert_state"),
        CheckConstraint("urgency_score BETWEEN 0 AND 100", name="ck_alert_urgency_range"),
    )

    notification_tasks = relationship("NotificationTask", back_populates="alert", cascade="all, delete-orphan")


# ─── 6. Open Alerts ─────────────────────────────────────────────────────────


class OpenAlert(Base):
    __tablename__ = "open_alerts"

    tenant_id = Column(String(64), primary_key=True)
    item_id = Column(String(64), primary_key=True)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=False, unique=True)
    opened_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 7. Notification Tasks ──────────────────────────────────────────────────


class NotificationTask(Base):
    __tablename__ = "notification_tasks"

    task_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    tenant_id = Column(String(64), nullable=False)
    alert_id = Column(GUID(), ForeignKey("alerts.alert_id"), nullable=False)
    stage = Column(String(20), nullable=False)
    stage_date = Column(Date, nullable=False)
    recipient = Column(String(100), nullable=False)
    address = Column(String(255), nullable=False)
    template = Column(String(50), nullable=False)
    state = Column(String(20), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=False)
    last_attempt_at = Column(DateTime)
    delivered_at = Column(DateTime)
    transport_message_id = Column(String(255))
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_tasks_due", "state", "next_attempt_at"),
        Index("ix_notification_tasks_alert", "alert_id", "stage"),
        CheckConstraint("stage IN ('initial', 'escalation', 'supplier')", name="ck_notification_stage"),
        CheckConstraint(
            "state IN ('pending', 'sending', 'retrying', 'delivered', 'failed')",
            name="ck_notification_state",
        ),
    )

    alert = relationship("Alert", back_populates="notification_tasks")


# ─── 8. Snapshots ───────────────────────────────────────────────────────────


class Snapshot(Base):
    __tablename__ = "snapshots"

    snapshot_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    taken_at = Column(DateTime, nullable=False)
    trigger_kind = Column(String(20), nullable=False)
    lines = Column(JSON, nullable=False, default=list)
    aggregates = Column(JSON, nullable=False, default=dict)
    triggers = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_snapshots_tenant_time", "tenant_id", "taken_at"),
        CheckConstraint("trigger_kind IN ('scheduled', 'manual', 'threshold')", name="ck_snapshot_trigger"),
    )
