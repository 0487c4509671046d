"""initial schema: accounts, credentials, tokens, listings, mappings, ignores, products, sync logs

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# ---- Alembic identifiers ----
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _created():
    return sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def _updated():
    return sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ===================== products (catalog) =====================
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sku", sa.String(255), nullable=True),
        sa.Column("name", sa.String(512), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _created(),
    )
    op.create_index("ix_products_sku", "products", ["sku"])

    # ===================== marketplace_accounts =====================
    op.create_table(
        "marketplace_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("provider_account_id", sa.String(128), nullable=True),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("client_id", sa.String(256), nullable=True),
        sa.Column("client_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("client_secret_iv", sa.String(64), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("needs_reauth", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created(),
        _updated(),
        sa.UniqueConstraint("provider", "environment", "provider_account_id", name="uk_account_natural_key"),
    )
    op.create_index("idx_account_provider_active", "marketplace_accounts", ["provider", "is_active"])

    # ===================== provider_app_credentials =====================
    op.create_table(
        "provider_app_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("client_id_encrypted", sa.Text(), nullable=False),
        sa.Column("client_id_iv", sa.String(64), nullable=False),
        sa.Column("client_secret_encrypted", sa.Text(), nullable=False),
        sa.Column("client_secret_iv", sa.String(64), nullable=False),
        sa.Column("runame", sa.String(256), nullable=True),
        _updated(),
        sa.UniqueConstraint("provider", "environment", name="uk_provider_environment"),
    )

    # ===================== oauth_tokens =====================
    op.create_table(
        "oauth_tokens",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "marketplace_account_id",
            sa.Integer(),
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("encryption_iv", sa.String(64), nullable=True),
        sa.Column("token_type", sa.String(32), nullable=True),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("state_nonce", sa.String(64), nullable=True),
        _created(),
        _updated(),
    )
    op.create_index("idx_token_account_updated", "oauth_tokens", ["marketplace_account_id", "updated_at"])
    op.create_index("idx_token_state_nonce", "oauth_tokens", ["state_nonce"])

    # ===================== marketplace_listings =====================
    op.create_table(
        "marketplace_listings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column(
            "marketplace_account_id",
            sa.Integer(),
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("remote_id", sa.String(128), nullable=False),
        sa.Column("remote_sku", sa.String(255), nullable=True),
        sa.Column("title", sa.String(512), nullable=False, server_default=""),
        sa.Column("price_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_currency", sa.String(3), nullable=True),
        sa.Column("listing_status", sa.String(32), nullable=True),
        sa.Column("remote_quantity", sa.Integer(), nullable=True),
        _updated(),
        sa.UniqueConstraint("provider", "marketplace_account_id", "remote_id", name="uk_listing_remote"),
    )
    op.create_index("idx_listing_account_sku", "marketplace_listings", ["marketplace_account_id", "remote_sku"])

    # ===================== marketplace_products_map =====================
    op.create_table(
        "marketplace_products_map",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column(
            "marketplace_account_id",
            sa.Integer(),
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("remote_id", sa.String(128), nullable=True),
        sa.Column("remote_sku", sa.String(255), nullable=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=True),
        sa.Column("sync_status", sa.String(16), nullable=False, server_default="ok"),
        _created(),
        _updated(),
        sa.UniqueConstraint("marketplace_account_id", "remote_id", name="uk_map_account_remote_id"),
    )
    op.create_index("idx_map_account_sku", "marketplace_products_map", ["marketplace_account_id", "remote_sku"])
    op.create_index("idx_map_product", "marketplace_products_map", ["product_id"])

    # ===================== marketplace_ignores =====================
    op.create_table(
        "marketplace_ignores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column(
            "marketplace_account_id",
            sa.Integer(),
            sa.ForeignKey("marketplace_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("remote_id", sa.String(128), nullable=True),
        sa.Column("remote_sku", sa.String(255), nullable=True),
        sa.Column("reason", sa.String(64), nullable=False, server_default="manual_ignore"),
        _created(),
    )
    op.create_index("idx_ignore_account_remote", "marketplace_ignores", ["marketplace_account_id", "remote_id"])
    op.create_index("idx_ignore_account_sku", "marketplace_ignores", ["marketplace_account_id", "remote_sku"])

    # ===================== sync_logs =====================
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _created(),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("marketplace_account_id", sa.Integer(), nullable=True),
        sa.Column("operation", sa.String(64), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index("idx_sync_logs_account_op", "sync_logs", ["marketplace_account_id", "operation"])
    op.create_index("idx_sync_logs_created", "sync_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("marketplace_ignores")
    op.drop_table("marketplace_products_map")
    op.drop_table("marketplace_listings")
    op.drop_table("oauth_tokens")
    op.drop_table("provider_app_credentials")
    op.drop_table("marketplace_accounts")
    op.drop_index("ix_products_sku", table_name="products")
    op.drop_table("products")
