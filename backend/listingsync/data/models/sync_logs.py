# listingsync/data/models/sync_logs.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from listingsync.data.db import Base


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    # no FK: failed lookups are logged with the id the caller sent
    marketplace_account_id: Mapped[int | None] = mapped_column(Integer, default=None)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # ok | retry | fail
    http_status: Mapped[int | None] = mapped_column(Integer, default=None)
    error_code: Mapped[str | None] = mapped_column(String(64), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), default=None)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict | None] = mapped_column("metadata", JSON, default=None)


Index("idx_sync_logs_account_op", SyncLog.marketplace_account_id, SyncLog.operation)
Index("idx_sync_logs_created", SyncLog.created_at)
