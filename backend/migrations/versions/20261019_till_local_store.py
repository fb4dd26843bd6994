"""Till local store: inventory cache, held carts, offline sale outbox

Revision ID: 20261019_till_local
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_till_local"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "cached_inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=120), nullable=True),
        sa.Column("branch_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reorder_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("selling_price_cents", sa.Integer(), nullable=True),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("batch_number", sa.String(length=64), nullable=True),
        sa.Column("barcode_id", sa.String(length=128), nullable=True),
        sa.Column("dispensing_unit", sa.String(length=32), nullable=True),
        sa.Column("cached_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("pharmacy_id", "branch_id", "product_id", name="uq_cached_inventory_scope_product"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_cached_inventory_items_pharmacy_id", "cached_inventory_items", ["pharmacy_id"])
    op.create_index("ix_cached_inventory_scope_name", "cached_inventory_items", ["pharmacy_id", "branch_id", "name"])
    op.create_index("ix_cached_inventory_barcode", "cached_inventory_items", ["pharmacy_id", "barcode_id"])

    op.create_table(
        "held_transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("register_id", sa.String(length=64), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("held_by", sa.String(length=255), nullable=True),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_held_transactions_pharmacy_id", "held_transactions", ["pharmacy_id"])
    op.create_index("ix_held_transactions_scope_held_at", "held_transactions", ["pharmacy_id", "branch_id", "held_at"])

    op.create_table(
        "offline_sales",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("local_receipt_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("pharmacy_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_offline_sales_pharmacy_id", "offline_sales", ["pharmacy_id"])
    op.create_index("ix_offline_sales_status", "offline_sales", ["status"])
    op.create_index("ix_offline_sales_status_created", "offline_sales", ["status", "created_at"])


def downgrade():
    op.drop_index("ix_offline_sales_status_created", table_name="offline_sales")
    op.drop_index("ix_offline_sales_status", table_name="offline_sales")
    op.drop_index("ix_offline_sales_pharmacy_id", table_name="offline_sales")
    op.drop_table("offline_sales")

    op.drop_index("ix_held_transactions_scope_held_at", table_name="held_transactions")
    op.drop_index("ix_held_transactions_pharmacy_id", table_name="held_transactions")
    op.drop_table("held_transactions")

    op.drop_index("ix_cached_inventory_barcode", table_name="cached_inventory_items")
    op.drop_index("ix_cached_inventory_scope_name", table_name="cached_inventory_items")
    op.drop_index("ix_cached_inventory_items_pharmacy_id", table_name="cached_inventory_items")
    op.drop_table("cached_inventory_items")
