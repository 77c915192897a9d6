"""Bundle sync schema: bundles, sync state, webhook ledger, orders.

Revision ID: 001_bundle_sync
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_bundle_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "bundles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("trainer_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("image_url", sa.String(1000), nullable=True),
        sa.Column("components", sa.JSON(), nullable=False),
        sa.Column("services", sa.JSON(), nullable=False),
        sa.Column("approval_status", sa.String(32), nullable=False, server_default="draft"),
        *_timestamps(),
    )

    # One SyncRecord per bundle; version is the optimistic-concurrency counter
    op.create_table(
        "sync_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("bundle_id", sa.String(36), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("external_handle", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_pushed_version", sa.Integer(), nullable=True),
        sa.Column("last_pushed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("bundle_id", name="uq_sync_record_bundle"),
    )
    op.create_index("ix_sync_records_bundle_id", "sync_records", ["bundle_id"])
    op.create_index("ix_sync_records_external_id", "sync_records", ["external_id"])

    op.create_table(
        "sync_transition_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("bundle_id", sa.String(36), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=False),
        sa.Column("to_status", sa.String(32), nullable=False),
        sa.Column("trigger", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_transition_log_bundle_id", "sync_transition_log", ["bundle_id"])

    op.create_table(
        "pending_operations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("bundle_id", sa.String(36), nullable=False),
        sa.Column("operation_id", sa.String(255), nullable=True),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("next_poll_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("bundle_id", name="uq_pending_operation_bundle"),
    )

    # Unique dedupe_key is the at-most-once guarantee for webhook processing
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("dedupe_key", sa.String(512), nullable=False),
        sa.Column("topic", sa.String(64), nullable=False),
        sa.Column("external_resource_id", sa.String(255), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.UniqueConstraint("dedupe_key", name="uq_webhook_event_dedupe_key"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("external_order_id", sa.String(64), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("trainer_id", sa.String(64), nullable=True),
        sa.Column("bundle_ids", sa.JSON(), nullable=False),
        sa.Column("line_items", sa.JSON(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(8), nullable=True),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("fulfillment_status", sa.String(32), nullable=False, server_default="unfulfilled"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("tracking_number", sa.String(255), nullable=True),
        sa.Column("tracking_url", sa.String(1000), nullable=True),
        sa.Column("carrier", sa.String(255), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("external_order_id", name="uq_order_external_id"),
    )

    op.create_table(
        "entitlements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("order_id", sa.String(36), nullable=False),
        sa.Column("bundle_id", sa.String(36), nullable=False),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("activated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "bundle_id", name="uq_entitlement_order_bundle"),
    )
    op.create_index("ix_entitlements_order_id", "entitlements", ["order_id"])


def downgrade() -> None:
    op.drop_table("entitlements")
    op.drop_table("orders")
    op.drop_table("webhook_events")
    op.drop_table("pending_operations")
    op.drop_table("sync_transition_log")
    op.drop_table("sync_records")
    op.drop_table("bundles")
