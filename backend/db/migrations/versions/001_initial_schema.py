"""
Initial schema - all 8 tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Items
    op.create_table(
        "items",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(100), nullable=False, server_default="general"),
        sa.Column("unit_of_measure", sa.String(20), nullable=False, server_default="unit"),
        sa.Column("cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("preferred_supplier", sa.String(100)),
        sa.Column("reorder_point", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reorder_quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_stock", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lead_time_days", sa.Integer, nullable=False, server_default="7"),
        sa.Column("auto_reorder_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("reorder_point <= max_stock", name="ck_item_rop_le_max"),
        sa.CheckConstraint("reorder_point >= 0", name="ck_item_rop_non_negative"),
        sa.CheckConstraint(
            "auto_reorder_enabled = false OR reorder_quantity >= 1", name="ck_item_auto_reorder_qty"
        ),
    )
    op.create_index("ix_items_tenant_active", "items", ["tenant_id", "active"])

    # 2. Reorder Policy Changes
    op.create_table(
        "reorder_policy_changes",
        sa.Column("change_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("revision", sa.Integer, nullable=False),
        sa.Column("changed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("actor_id", sa.String(100), nullable=False, server_default="system"),
        sa.Column("previous_policy", sa.JSON),
        sa.Column("new_policy", sa.JSON, nullable=False),
        sa.UniqueConstraint("tenant_id", "item_id", "revision", name="uq_policy_change_revision"),
    )
    op.create_index("ix_policy_changes_item", "reorder_policy_changes", ["tenant_id", "item_id", "changed_at"])

    # 3. Ledger Entries
    op.create_table(
        "ledger_entries",
        sa.Column("entry_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("seq", sa.Integer, nullable=False),
        sa.Column("recorded_at", sa.DateTime, nullable=False),
        sa.Column("entry_type", sa.String(20), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("actor_id", sa.String(100), nullable=False, server_default="system"),
        sa.Column("reference_kind", sa.String(50)),
        sa.Column("reference_id", sa.String(100)),
        sa.Column("reference_description", sa.Text),
        sa.Column("location_from", sa.String(100)),
        sa.Column("location_to", sa.String(100)),
        sa.Column("metadata", sa.JSON),
        sa.Column("idempotency_key", sa.String(128)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "item_id", "seq", name="uq_ledger_item_seq"),
        sa.UniqueConstraint("tenant_id", "item_id", "idempotency_key", name="uq_ledger_idempotency_key"),
        sa.CheckConstraint("seq >= 1", name="ck_ledger_seq_positive"),
        sa.CheckConstraint(
            "entry_type IN ('restock', 'consumption', 'transfer', 'adjustment', 'damage_charge')",
            name="ck_ledger_entry_type",
        ),
        sa.CheckConstraint("entry_type != 'restock' OR quantity > 0", name="ck_ledger_restock_positive"),
        sa.CheckConstraint(
            "entry_type NOT IN ('consumption', 'damage_charge') OR quantity < 0",
            name="ck_ledger_outflow_negative",
        ),
        sa.CheckConstraint("entry_type != 'transfer' OR quantity = 0", name="ck_ledger_transfer_zero"),
    )
    op.create_index("ix_ledger_item_time", "ledger_entries", ["tenant_id", "item_id", "recorded_at"])

    # 4. Stock Projections
    op.create_table(
        "stock_projections",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("on_hand", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_seq", sa.Integer, nullable=False, server_default="0"),
        sa.Column("weighted_average_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 5. Alerts
    op.create_table(
        "alerts",
        sa.Column("alert_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(20), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="active"),
        sa.Column("observed_on_hand", sa.Integer, nullable=False),
        sa.Column("reorder_point", sa.Integer, nullable=False),
        sa.Column("suggested_quantity", sa.Integer, nullable=False),
        sa.Column("estimated_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("urgency_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("expected_delivery_date", sa.Date),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("acknowledged_by", sa.String(100)),
        sa.Column("acknowledged_at", sa.DateTime),
        sa.Column("resolved_by", sa.String(100)),
        sa.Column("resolved_at", sa.DateTime),
        sa.Column("dismissed_by", sa.String(100)),
        sa.Column("dismissed_at", sa.DateTime),
        sa.Column("dismissed_reason", sa.Text),
        sa.CheckConstraint(
            "alert_type IN ('low_stock', 'reorder_needed', 'critical_stock')",
            name="ck_alert_type",
        ),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high', 'critical')", name="ck_alert_priority"),
        sa.CheckConstraint(
            "state IN ('active', 'acknowledged', 'resolved', 'dismissed')", name="ck_alert_state"
        ),
        sa.CheckConstraint("urgency_score BETWEEN 0 AND 100", name="ck_alert_urgency_range"),
    )
    op.create_index("ix_alerts_tenant_state", "alerts", ["tenant_id", "state"])
    op.create_index("ix_alerts_item", "alerts", ["tenant_id", "item_id"])

    # 6. Open Alerts
    op.create_table(
        "open_alerts",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("alert_id", UUID(as_uuid=True), sa.ForeignKey("alerts.alert_id"), nullable=False, unique=True),
        sa.Column("opened_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 7. Notification Tasks
    op.create_table(
        "notification_tasks",
        sa.Column("task_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("alert_id", UUID(as_uuid=True), sa.ForeignKey("alerts.alert_id"), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False),
        sa.Column("stage_date", sa.Date, nullable=False),
        sa.Column("recipient", sa.String(100), nullable=False),
        sa.Column("address", sa.String(255), nullable=False),
        sa.Column("template", sa.String(50), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime, nullable=False),
        sa.Column("last_attempt_at", sa.DateTime),
        sa.Column("delivered_at", sa.DateTime),
        sa.Column("transport_message_id", sa.String(255)),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("stage IN ('initial', 'escalation', 'supplier')", name="ck_notification_stage"),
        sa.CheckConstraint(
            "state IN ('pending', 'sending', 'retrying', 'delivered', 'failed')",
            name="ck_notification_state",
        ),
    )
    op.create_index("ix_notification_tasks_due", "notification_tasks", ["state", "next_attempt_at"])
    op.create_index("ix_notification_tasks_alert", "notification_tasks", ["alert_id", "stage"])

    # 8. Snapshots
    op.create_table(
        "snapshots",
        sa.Column("snapshot_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("taken_at", sa.DateTime, nullable=False),
        sa.Column("trigger_kind", sa.String(20), nullable=False),
        sa.Column("lines", sa.JSON, nullable=False),
        sa.Column("aggregates", sa.JSON, nullable=False),
        sa.Column("triggers", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("trigger_kind IN ('scheduled', 'manual', 'threshold')", name="ck_snapshot_trigger"),
    )
    op.create_index("ix_snapshots_tenant_time", "snapshots", ["tenant_id", "taken_at"])


def downgrade() -> None:
    for table in (
        "snapshots",
        "notification_tasks",
        "open_alerts",
        "alerts",
        "stock_projections",
        "ledger_entries",
        "reorder_policy_changes",
        "items",
    ):
        op.drop_table(table)
