# listingsync/services/credentials.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.errors import APIError
from listingsync.data.models.marketplace import (
    TOKEN_CONSUMED,
    TOKEN_PENDING,
    TOKEN_SENTINELS,
    MarketplaceAccount,
    OAuthToken,
    ProviderAppCredential,
)
from listingsync.services.crypto import CryptoError, FieldCipher

logger = logging.getLogger("lsync.credentials")

# refresh a little before the provider's own expiry
TOKEN_EXPIRY_SKEW_SECONDS = 120
DEFAULT_EXPIRES_IN = 7200


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str


def expires_at_from(expires_in: Optional[int], *, skew: int = TOKEN_EXPIRY_SKEW_SECONDS) -> datetime:
    seconds = max(0, int(expires_in or DEFAULT_EXPIRES_IN) - skew)
    return datetime.utcnow() + timedelta(seconds=seconds)


class CredentialStore:
    """
    Read/write access to accounts, token rows and provider app credentials.

    Only flushes; the request boundary owns the commit. The cipher is built on
    first use so read paths work without a configured master key.
    """

    def __init__(self, db: Session, settings: Settings, *, cipher: FieldCipher | None = None):
        self.db = db
        self.settings = settings
        self._cipher = cipher

    @property
    def cipher(self) -> FieldCipher:
        if self._cipher is None:
            self._cipher = FieldCipher.from_settings(self.settings)
        return self._cipher

    # ---------- accounts ----------
    def get_active_account(self, account_id: int, *, provider: str = "ebay") -> MarketplaceAccount | None:
        return self.db.scalar(
            select(MarketplaceAccount).where(
                MarketplaceAccount.id == int(account_id),
                MarketplaceAccount.provider == provider,
                MarketplaceAccount.is_active.is_(True),
            )
        )

    def list_active_accounts(self, *, provider: str) -> list[MarketplaceAccount]:
        q = (
            select(MarketplaceAccount)
            .where(MarketplaceAccount.provider == provider, MarketplaceAccount.is_active.is_(True))
            .order_by(MarketplaceAccount.created_at.desc(), MarketplaceAccount.id.desc())
        )
        return list(self.db.execute(q).scalars().all())

    # ---------- tokens ----------
    def current_token(self, account_id: int) -> OAuthToken | None:
        """Latest non-placeholder token row: updated_at, then created_at, then id, all descending."""
        q = (
            select(OAuthToken)
            .where(
                OAuthToken.marketplace_account_id == int(account_id),
                OAuthToken.access_token.not_in(TOKEN_SENTINELS),
            )
            .order_by(OAuthToken.updated_at.desc(), OAuthToken.created_at.desc(), OAuthToken.id.desc())
            .limit(1)
        )
        return self.db.scalar(q)

    def decrypt_refresh_token(self, token: OAuthToken) -> str | None:
        if not token.refresh_token_encrypted or not token.encryption_iv:
            return None
        try:
            return self.cipher.decrypt(token.refresh_token_encrypted, token.encryption_iv)
        except CryptoError as e:
            logger.warning("refresh token decrypt failed token_id=%s err=%s", token.id, e)
            return None

    def update_access_token(self, account_id: int, access_token: str, expires_in: Optional[int]) -> int:
        """
        Field scoped update keyed by account id. Only access_token, updated_at
        and (when known) expires_at change; concurrent refreshes converge on
        last write wins.
        """
        values: dict = {"access_token": access_token, "updated_at": datetime.utcnow()}
        if expires_in:
            values["expires_at"] = datetime.utcnow() + timedelta(seconds=int(expires_in))
        res = self.db.execute(
            update(OAuthToken)
            .where(
                OAuthToken.marketplace_account_id == int(account_id),
                OAuthToken.access_token.not_in(TOKEN_SENTINELS),
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return int(res.rowcount or 0)

    def insert_token(
        self,
        account_id: int,
        *,
        access_token: str,
        refresh_token: Optional[str],
        expires_in: Optional[int],
        scope: Optional[str],
        token_type: Optional[str],
    ) -> OAuthToken:
        enc, iv = self.cipher.encrypt(refresh_token) if refresh_token else (None, None)
        now = datetime.utcnow()
        row = OAuthToken(
            marketplace_account_id=int(account_id),
            access_token=access_token,
            refresh_token_encrypted=enc,
            encryption_iv=iv,
            scope=scope,
            token_type=token_type,
            expires_at=expires_at_from(expires_in),
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return row

    # ---------- authorization state ----------
    def create_pending_state(self, nonce: str, *, ttl_seconds: int) -> OAuthToken:
        row = OAuthToken(
            marketplace_account_id=None,
            access_token=TOKEN_PENDING,
            state_nonce=nonce,
            expires_at=datetime.utcnow() + timedelta(seconds=int(ttl_seconds)),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def find_live_pending(self, nonce: str) -> OAuthToken | None:
        return self.db.scalar(
            select(OAuthToken).where(
                OAuthToken.state_nonce == nonce,
                OAuthToken.access_token == TOKEN_PENDING,
                OAuthToken.expires_at > datetime.utcnow(),
            )
        )

    def purge_nonce(self, nonce: str) -> int:
        res = self.db.execute(delete(OAuthToken).where(OAuthToken.state_nonce == nonce))
        return int(res.rowcount or 0)

    def consume_pending(self, row: OAuthToken) -> None:
        row.access_token = TOKEN_CONSUMED
        row.updated_at = datetime.utcnow()
        self.db.add(row)
        self.db.flush()

    # ---------- client credentials ----------
    def resolve_client_credentials(self, account: MarketplaceAccount) -> ClientCredentials | None:
        """
        Account-level credentials first, then provider_app_credentials for the
        account's environment. None when neither resolves.
        """
        if account.client_id and account.client_secret_encrypted and account.client_secret_iv:
            try:
                secret = self.cipher.decrypt(account.client_secret_encrypted, account.client_secret_iv)
                return ClientCredentials(account.client_id, secret)
            except CryptoError as e:
                logger.warning("account client secret decrypt failed account_id=%s err=%s", account.id, e)

        row = self.db.scalar(
            select(ProviderAppCredential).where(
                ProviderAppCredential.provider == account.provider,
                ProviderAppCredential.environment == account.environment,
            )
        )
        if row is None:
            return None
        try:
            client_id = self.cipher.decrypt(row.client_id_encrypted, row.client_id_iv)
            client_secret = self.cipher.decrypt(row.client_secret_encrypted, row.client_secret_iv)
        except CryptoError as e:
            logger.warning(
                "provider credentials decrypt failed provider=%s env=%s err=%s",
                account.provider, account.environment, e,
            )
            return None
        if not client_id or not client_secret:
            return None
        return ClientCredentials(client_id, client_secret)

    def upsert_provider_credentials(
        self,
        *,
        provider: str,
        environment: str,
        client_id: str,
        client_secret: str,
        runame: Optional[str],
    ) -> ProviderAppCredential:
        id_enc, id_iv = self.cipher.encrypt(client_id)
        secret_enc, secret_iv = self.cipher.encrypt(client_secret)
        row = self.db.scalar(
            select(ProviderAppCredential).where(
                ProviderAppCredential.provider == provider,
                ProviderAppCredential.environment == environment,
            )
        )
        if row is None:
            row = ProviderAppCredential(provider=provider, environment=environment)
        row.client_id_encrypted = id_enc
        row.client_id_iv = id_iv
        row.client_secret_encrypted = secret_enc
        row.client_secret_iv = secret_iv
        row.runame = runame
        row.updated_at = datetime.utcnow()
        self.db.add(row)
        self.db.flush()
        return row


def require_account_and_token(store: CredentialStore, account_id: int) -> tuple[MarketplaceAccount, OAuthToken]:
    """Precondition shared by every provider-calling operation; fails before any network call."""
    account = store.get_active_account(account_id)
    if account is None:
        raise APIError("account_not_found", "Marketplace account not found or inactive.", 404)
    token = store.current_token(int(account.id))
    if token is None:
        raise APIError("token_missing", "No OAuth token for this account; reconnect eBay.", 424)
    return account, token
