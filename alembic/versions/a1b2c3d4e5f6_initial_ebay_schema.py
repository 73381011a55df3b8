"""Initial eBay integration schema.

Creates:
- ebay_credentials: one OAuth connection per bookkeeping user
- inventory_items: stock the orders link to
- ebay_orders: reconciled orders, unique per (user_id, ebay_order_id)
- sync_logs: audit trail for every sync, refresh and forced reauth

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _money(name: str) -> list[sa.Column]:
    return [
        sa.Column(f"{name}_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column(f"{name}_currency", sa.String(3), nullable=False, server_default="USD"),
    ]


def upgrade() -> None:
    """Create the eBay integration tables."""
    op.create_table(
        "ebay_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(450), nullable=False),
        sa.Column("ebay_user_id", sa.String(100), nullable=True),
        sa.Column("ebay_username", sa.String(100), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False, server_default=""),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=False, server_default=""),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scopes", sa.Text(), nullable=True),
        sa.Column("is_connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_ebay_credentials_user_id", "ebay_credentials", ["user_id"], unique=True)
    op.create_index(
        "ix_ebay_credentials_refresh_token_expires_at",
        "ebay_credentials",
        ["refresh_token_expires_at"],
    )
    op.create_index("ix_ebay_credentials_is_connected", "ebay_credentials", ["is_connected"])

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(450),
            nullable=False,
            comment="Bookkeeping application user ID",
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("internal_sku", sa.String(50), nullable=True),
        sa.Column("ebay_sku", sa.String(50), nullable=True),
        sa.Column("cost_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("cost_currency", sa.String(3), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_inventory_items_user_id", "inventory_items", ["user_id"])
    op.create_index("ix_inventory_items_internal_sku", "inventory_items", ["internal_sku"])
    op.create_index("ix_inventory_items_ebay_sku", "inventory_items", ["ebay_sku"])
    op.create_index("ix_inventory_items_status", "inventory_items", ["status"])

    op.create_table(
        "ebay_orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.String(450),
            nullable=False,
            comment="Bookkeeping application user ID",
        ),
        sa.Column("ebay_order_id", sa.String(100), nullable=False),
        sa.Column("legacy_order_id", sa.String(100), nullable=True),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("buyer_username", sa.String(100), nullable=False),
        sa.Column("item_title", sa.String(200), nullable=False),
        sa.Column("ebay_item_id", sa.String(50), nullable=True),
        sa.Column("sku", sa.String(50), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("fulfillment_status", sa.String(20), nullable=False),
        *_money("gross_sale"),
        *_money("shipping_paid"),
        *_money("shipping_actual"),
        *_money("final_value_fee"),
        *_money("payment_processing_fee"),
        *_money("additional_fees"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "inventory_item_id",
            sa.Integer(),
            sa.ForeignKey("inventory_items.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "ebay_order_id", name="uq_ebay_orders_user_order"),
    )
    op.create_index("ix_ebay_orders_user_id", "ebay_orders", ["user_id"])
    op.create_index("ix_ebay_orders_order_date", "ebay_orders", ["order_date"])
    op.create_index("ix_ebay_orders_inventory_item_id", "ebay_orders", ["inventory_item_id"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(450), nullable=False),
        sa.Column(
            "job_id",
            sa.String(36),
            nullable=False,
            comment="UUID for correlating logs across services",
        ),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("trigger", sa.String(20), nullable=False),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_type", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", JSON(), nullable=True),
        sa.Column("orders_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_linked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_skipped", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_sync_logs_user_id", "sync_logs", ["user_id"])
    op.create_index("ix_sync_logs_job_id", "sync_logs", ["job_id"])
    op.create_index("ix_sync_logs_started_at", "sync_logs", ["started_at"])
    op.create_index("ix_sync_logs_status", "sync_logs", ["status"])
    op.create_index("ix_sync_logs_error_type", "sync_logs", ["error_type"])
    op.create_index("ix_sync_logs_user_started", "sync_logs", ["user_id", "started_at"])
    op.create_index("ix_sync_logs_status_started", "sync_logs", ["status", "started_at"])


def downgrade() -> None:
    """Drop the eBay integration tables."""
    op.drop_table("sync_logs")
    op.drop_table("ebay_orders")
    op.drop_table("inventory_items")
    op.drop_table("ebay_credentials")
