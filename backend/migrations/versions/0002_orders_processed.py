"""orders ingestion: marketplace_orders_processed

Revision ID: 0002_orders_processed
Revises: 0001_initial_schema
Create Date: 2026-10-18 00:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# ---- Alembic identifiers ----
revision = "0002_orders_processed"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "marketplace_orders_processed",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column(
            "marketplace_account_id",
            sa.Integer(),
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("remote_order_id", sa.String(64), nullable=False),
        sa.Column("remote_line_id", sa.String(64), nullable=False),
        sa.Column("remote_sku", sa.String(255), nullable=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "provider", "marketplace_account_id", "remote_order_id", "remote_line_id",
            name="uk_order_line_processed",
        ),
    )
    op.create_index("idx_orders_processed_product", "marketplace_orders_processed", ["product_id"])


def downgrade() -> None:
    op.drop_index("idx_orders_processed_product", table_name="marketplace_orders_processed")
    op.drop_table("marketplace_orders_processed")
