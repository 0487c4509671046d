# listingsync/data/models/marketplace.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column

from listingsync.data.db import Base

# access_token placeholders written by the authorization flow
TOKEN_PENDING = "pending"
TOKEN_CONSUMED = "consumed"
TOKEN_SENTINELS = (TOKEN_PENDING, TOKEN_CONSUMED)


# ---------- connected seller account ----------
class MarketplaceAccount(Base):
    __tablename__ = "marketplace_accounts"
    __table_args__ = (
        UniqueConstraint(
            "provider", "environment", "provider_account_id", name="uk_account_natural_key"
        ),
        Index("idx_account_provider_active", "provider", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(64), default=None)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="ebay")
    environment: Mapped[str] = mapped_column(String(16), nullable=False, default="production")
    provider_account_id: Mapped[str | None] = mapped_column(String(128), default=None)
    display_name: Mapped[str | None] = mapped_column(String(128), default=None)

    # optional per-account app credentials; provider_app_credentials is the fallback
    client_id: Mapped[str | None] = mapped_column(String(256), default=None)
    client_secret_encrypted: Mapped[str | None] = mapped_column(Text, default=None)
    client_secret_iv: Mapped[str | None] = mapped_column(String(64), default=None)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    needs_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow, server_default=func.now()
    )

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"


# ---------- app credentials per provider environment ----------
class ProviderAppCredential(Base):
    __tablename__ = "provider_app_credentials"
    __table_args__ = (UniqueConstraint("provider", "environment", name="uk_provider_environment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    environment: Mapped[str] = mapped_column(String(16), nullable=False)
    client_id_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    client_id_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    client_secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    # one IV per field; GCM nonces are never reused under the master key
    client_secret_iv: Mapped[str] = mapped_column(String(64), nullable=False)
    runame: Mapped[str | None] = mapped_column(String(256), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow, server_default=func.now()
    )


# ---------- OAuth tokens (latest row wins) ----------
class OAuthToken(Base):
    __tablename__ = "oauth_tokens"
    __table_args__ = (
        Index("idx_token_account_updated", "marketplace_account_id", "updated_at"),
        Index("idx_token_state_nonce", "state_nonce"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # NULL only for pending authorization rows
    marketplace_account_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id", ondelete="CASCADE"), default=None
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, default=None)
    encryption_iv: Mapped[str | None] = mapped_column(String(64), default=None)
    token_type: Mapped[str | None] = mapped_column(String(32), default=None)
    scope: Mapped[str | None] = mapped_column(Text, default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    state_nonce: Mapped[str | None] = mapped_column(String(64), default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, server_default=func.now()
    )
