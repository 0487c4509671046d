# listingsync/data/models/orders.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from listingsync.data.db import Base


# ---------- order lines already applied to internal stock ----------
class MarketplaceOrderProcessed(Base):
    __tablename__ = "marketplace_orders_processed"
    __table_args__ = (
        UniqueConstraint(
            "provider", "marketplace_account_id", "remote_order_id", "remote_line_id",
            name="uk_order_line_processed",
        ),
        Index("idx_orders_processed_product", "product_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    marketplace_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), nullable=False
    )
    remote_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_line_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_sku: Mapped[str | None] = mapped_column(String(255), default=None)
    # the decremented (parent) product; None when the SKU was not mapped
    product_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("products.id"), default=None)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
