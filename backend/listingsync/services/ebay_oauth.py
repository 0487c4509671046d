# listingsync/services/ebay_oauth.py
from __future__ import annotations

import base64
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.errors import APIError
from listingsync.core.metrics import TOKEN_REFRESHES
from listingsync.data.models.marketplace import MarketplaceAccount, OAuthToken
from listingsync.providers.ebay import endpoints
from listingsync.providers.ebay.client import EbayClient
from listingsync.providers.ebay.schemas import TokenExchangeError, TokenExchangeOk
from listingsync.services.credentials import CredentialStore
from listingsync.services.crypto import CryptoError
from listingsync.services.http_retry import RetryPolicy

logger = logging.getLogger("lsync.oauth")

PROVIDER = "ebay"
_REQUIRED_SCOPE_RE = re.compile(r"\bsell\.inventory\b|\bsell\.account\b|\bsell\.fulfillment\b")


def _redact(val: Any) -> Any:
    if not isinstance(val, str):
        return val
    if len(val) > 16:
        return val[:4] + "***" + val[-4:]
    return val


class OAuthExchangeFailed(Exception):
    """The token endpoint rejected an authorization-code exchange."""

    def __init__(self, status_code: int, body: dict[str, Any]):
        super().__init__(f"token exchange failed: HTTP {status_code}")
        self.status_code = status_code
        self.body = body


# ---------- state ----------
@dataclass(frozen=True)
class OAuthState:
    nonce: str
    environment: str
    account_id: Optional[int] = None


def encode_state(state: OAuthState) -> str:
    payload: dict[str, Any] = {"n": state.nonce, "environment": state.environment}
    if state.account_id is not None:
        payload["account_id"] = state.account_id
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_state(value: Optional[str]) -> OAuthState | None:
    """None for anything that is not base64url JSON carrying a nonce."""
    if not value:
        return None
    try:
        padded = value + "=" * (-len(value) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("n"), str) or not data["n"]:
        return None
    account_id: Optional[int] = None
    try:
        if data.get("account_id") not in (None, ""):
            account_id = int(data["account_id"])
    except (TypeError, ValueError):
        account_id = None
    return OAuthState(
        nonce=data["n"],
        environment=endpoints.normalize_environment(data.get("environment")),
        account_id=account_id,
    )


def has_required_scopes(scope: Optional[str]) -> bool:
    return bool(_REQUIRED_SCOPE_RE.search(scope or ""))


# ---------- grants ----------
async def complete_authorization(
    client: EbayClient,
    *,
    code: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str,
) -> TokenExchangeOk:
    """Exchange an authorization code. Raises OAuthExchangeFailed on any non-2xx or token-less response."""
    result = await client.exchange_code(
        code, redirect_uri=redirect_uri, client_id=client_id, client_secret=client_secret
    )
    if isinstance(result, TokenExchangeError):
        logger.error(
            "eBay code exchange failed env=%s status=%s error=%s body=%s",
            client.environment, result.status_code, result.error, json.dumps(result.body)[:1000],
        )
        raise OAuthExchangeFailed(result.status_code, result.body)
    logger.info(
        "eBay code exchange ok env=%s token=%s has_refresh=%s scope=%s",
        client.environment, _redact(result.access_token), bool(result.refresh_token), result.scope,
    )
    return result


async def refresh_access_token(
    client: EbayClient,
    *,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    scopes: Optional[str],
) -> TokenExchangeOk | None:
    """Refresh-token grant. Returns None on every failure; never raises for provider or network errors."""
    try:
        result = await client.refresh(
            refresh_token, client_id=client_id, client_secret=client_secret, scope=scopes
        )
    except httpx.HTTPError as e:
        logger.warning("eBay refresh transport error env=%s err=%s", client.environment, e.__class__.__name__)
        TOKEN_REFRESHES.labels(outcome="error").inc()
        return None
    if isinstance(result, TokenExchangeError):
        logger.warning(
            "eBay refresh failed env=%s status=%s body=%s",
            client.environment, result.status_code, json.dumps(result.body)[:120],
        )
        TOKEN_REFRESHES.labels(outcome="rejected").inc()
        return None
    TOKEN_REFRESHES.labels(outcome="ok").inc()
    return result


class TokenRefresher:
    """
    Refreshes the current token of one account and writes it back.

    Used by every engine on a 401: resolves client credentials (account,
    then provider table), decrypts the stored refresh token, calls the grant
    and updates the token row in place.
    """

    def __init__(self, store: CredentialStore, client: EbayClient, account: MarketplaceAccount, token: OAuthToken):
        self.store = store
        self.client = client
        self.account = account
        self.token = token
        self.refresh_calls = 0

    async def refresh(self) -> str | None:
        self.refresh_calls += 1
        try:
            refresh_token = self.store.decrypt_refresh_token(self.token)
            creds = self.store.resolve_client_credentials(self.account) if refresh_token else None
        except CryptoError as e:
            logger.warning("refresh aborted account_id=%s crypto=%s", self.account.id, e)
            return None
        if not refresh_token or creds is None:
            logger.warning(
                "refresh aborted account_id=%s has_refresh=%s has_client=%s",
                self.account.id, bool(refresh_token), creds is not None,
            )
            TOKEN_REFRESHES.labels(outcome="unresolved").inc()
            return None

        scopes = self.token.scope or self.store.settings.EBAY_REFRESH_DEFAULT_SCOPE
        refreshed = await refresh_access_token(
            self.client,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            refresh_token=refresh_token,
            scopes=scopes,
        )
        if refreshed is None:
            return None

        self.store.update_access_token(int(self.account.id), refreshed.access_token, refreshed.expires_in)
        self.token.access_token = refreshed.access_token
        logger.info("token refreshed account_id=%s token=%s", self.account.id, _redact(refreshed.access_token))
        return refreshed.access_token


# ---------- authorization start ----------
def build_authorize_redirect(
    store: CredentialStore,
    *,
    account_id: Optional[int],
    environment: Optional[str],
) -> str:
    settings = store.settings
    account: MarketplaceAccount | None = None
    if account_id is not None:
        account = store.get_active_account(account_id, provider=PROVIDER)
        if account is None:
            raise APIError("account_not_found", "Marketplace account not found.", 404)

    env = endpoints.normalize_environment(
        (account.environment if account else None) or environment or settings.EBAY_DEFAULT_ENVIRONMENT
    )
    runame = settings.runame_for(env)
    if not runame:
        raise APIError("missing_runame", f"No RuName configured for {env}.", 500)

    client_id = settings.EBAY_APP_ID
    if not client_id and account is not None:
        creds = store.resolve_client_credentials(account)
        client_id = creds.client_id if creds else None
    if not client_id:
        raise APIError("client_credentials_missing", "eBay client id is not configured.", 424)

    nonce = secrets.token_hex(16)
    store.create_pending_state(nonce, ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS)
    state = encode_state(OAuthState(nonce=nonce, environment=env, account_id=account_id))
    url = endpoints.authorize_url(env, client_id=client_id, runame=runame, scopes=settings.EBAY_SCOPES, state=state)
    logger.info("eBay authorize url generated env=%s account_id=%s nonce=%s", env, account_id, _redact(nonce))
    return url


# ---------- callback ----------
def _connected_redirect(settings: Settings, *, insufficient_scope: bool) -> str:
    qs = {"provider": PROVIDER}
    if insufficient_scope:
        qs.update({"connected": "0", "reason": "insufficient_scope"})
    else:
        qs["connected"] = "1"
    return f"{settings.OAUTH_CONNECTED_REDIRECT}?{urlencode(qs)}"


def _display_name(environment: str) -> str:
    return f"eBay {'Sandbox' if environment == 'sandbox' else 'Production'}"


def _resolve_account(
    db: Session, *, state: OAuthState, provider_account_id: str
) -> MarketplaceAccount:
    """Reactivate the account named by the state, else upsert on (provider, environment, provider_account_id)."""
    now = datetime.utcnow()
    if state.account_id is not None:
        existing = db.scalar(
            select(MarketplaceAccount).where(
                MarketplaceAccount.id == state.account_id,
                MarketplaceAccount.provider == PROVIDER,
            )
        )
        if existing is not None:
            existing.is_active = True
            existing.environment = state.environment
            existing.display_name = _display_name(state.environment)
            existing.updated_at = now
            db.add(existing)
            db.flush()
            return existing
        logger.warning("state account_id=%s not found, falling back to upsert", state.account_id)

    account = db.scalar(
        select(MarketplaceAccount).where(
            MarketplaceAccount.provider == PROVIDER,
            MarketplaceAccount.environment == state.environment,
            MarketplaceAccount.provider_account_id == provider_account_id,
        )
    )
    if account is None:
        account = MarketplaceAccount(
            provider=PROVIDER,
            environment=state.environment,
            provider_account_id=provider_account_id,
        )
    account.display_name = _display_name(state.environment)
    account.is_active = True
    account.updated_at = now
    db.add(account)
    db.flush()
    return account


@dataclass(frozen=True)
class CallbackResult:
    account_id: int
    redirect_url: str
    insufficient_scope: bool


async def handle_callback(
    store: CredentialStore,
    http: httpx.AsyncClient,
    *,
    code: Optional[str],
    state: Optional[str],
    retry: RetryPolicy | None = None,
) -> CallbackResult:
    db = store.db
    settings = store.settings

    if not code:
        raise APIError("missing_code", "Missing authorization code.", 400)

    decoded = decode_state(state)
    if decoded is None:
        raise APIError("invalid_or_expired_state", "Invalid or expired state.", 401)
    pending = store.find_live_pending(decoded.nonce)
    if pending is None:
        store.purge_nonce(decoded.nonce)
        raise APIError("invalid_or_expired_state", "Invalid or expired state.", 401)

    env = decoded.environment
    runame = settings.runame_for(env)
    if not runame:
        raise APIError("missing_runame", f"No RuName configured for {env}.", 500)
    client_id, client_secret = settings.EBAY_APP_ID, settings.EBAY_CERT_ID
    if not client_id or not client_secret:
        raise APIError("client_credentials_missing", "eBay app credentials are not configured.", 500)

    client = EbayClient(http, environment=env, retry=retry)
    try:
        tokens = await complete_authorization(
            client, code=code, redirect_uri=runame, client_id=client_id, client_secret=client_secret
        )
    except OAuthExchangeFailed as e:
        raise APIError(
            "token_exchange_failed",
            "eBay rejected the authorization code.",
            502,
            {"provider_status": e.status_code, "provider_error": e.body},
        )

    if not tokens.refresh_token:
        raise APIError("no_refresh_token", "eBay returned no refresh token.", 502)

    insufficient = not has_required_scopes(tokens.scope)
    if insufficient:
        logger.warning("eBay callback insufficient scope env=%s scope=%s", env, tokens.scope)

    # provider credentials feed later refreshes; failure here is not fatal
    try:
        store.upsert_provider_credentials(
            provider=PROVIDER, environment=env, client_id=client_id, client_secret=client_secret, runame=runame
        )
    except CryptoError as e:
        logger.warning("provider_app_credentials upsert skipped env=%s err=%s", env, e)

    account = _resolve_account(db, state=decoded, provider_account_id=client_id)
    account.needs_reauth = insufficient
    db.add(account)

    try:
        store.insert_token(
            int(account.id),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            scope=tokens.scope,
            token_type=tokens.token_type,
        )
    except CryptoError as e:
        raise APIError("crypto_not_configured", "Refresh token could not be encrypted.", 500, {"detail": str(e)[:200]})
    store.consume_pending(pending)

    logger.info("eBay account connected account_id=%s env=%s needs_reauth=%s", account.id, env, insufficient)
    return CallbackResult(
        account_id=int(account.id),
        redirect_url=_connected_redirect(settings, insufficient_scope=insufficient),
        insufficient_scope=insufficient,
    )
