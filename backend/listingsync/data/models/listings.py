# listingsync/data/models/listings.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from listingsync.data.db import Base

SYNC_OK = "ok"
SYNC_PENDING = "pending"
SYNC_FAILED = "failed"
SYNC_UNMAPPED = "unmapped"
MAPPED_STATUSES = (SYNC_OK, SYNC_PENDING, SYNC_FAILED)


# ---------- remote listing snapshot ----------
class MarketplaceListing(Base):
    __tablename__ = "marketplace_listings"
    __table_args__ = (
        UniqueConstraint("provider", "marketplace_account_id", "remote_id", name="uk_listing_remote"),
        Index("idx_listing_account_sku", "marketplace_account_id", "remote_sku"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    marketplace_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=False
    )
    remote_id: Mapped[str] = mapped_column(String(128), nullable=False)
    remote_sku: Mapped[str | None] = mapped_column(String(255), default=None)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    price_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), default=None)
    price_currency: Mapped[str | None] = mapped_column(String(3), default=None)
    listing_status: Mapped[str | None] = mapped_column(String(32), default=None)
    remote_quantity: Mapped[int | None] = mapped_column(Integer, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow, server_default=func.now()
    )


# ---------- remote listing -> internal product ----------
class ListingMapping(Base):
    __tablename__ = "marketplace_products_map"
    __table_args__ = (
        UniqueConstraint("marketplace_account_id", "remote_id", name="uk_map_account_remote_id"),
        Index("idx_map_account_sku", "marketplace_account_id", "remote_sku"),
        Index("idx_map_product", "product_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    marketplace_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=False
    )
    remote_id: Mapped[str | None] = mapped_column(String(128), default=None)
    remote_sku: Mapped[str | None] = mapped_column(String(255), default=None)
    # NULL when a create through the catalog failed
    product_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("products.id"), default=None)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False, default=SYNC_OK)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow, server_default=func.now()
    )


# ---------- listings hidden from reconciliation views ----------
class ListingIgnore(Base):
    __tablename__ = "marketplace_ignores"
    __table_args__ = (
        Index("idx_ignore_account_remote", "marketplace_account_id", "remote_id"),
        Index("idx_ignore_account_sku", "marketplace_account_id", "remote_sku"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    marketplace_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=False
    )
    remote_id: Mapped[str | None] = mapped_column(String(128), default=None)
    remote_sku: Mapped[str | None] = mapped_column(String(255), default=None)
    reason: Mapped[str] = mapped_column(String(64), nullable=False, default="manual_ignore")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
