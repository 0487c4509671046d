# listingsync/core/config.py
from __future__ import annotations

from functools import lru_cache
from typing import Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _as_list(value: Any) -> List[str]:
    """
    Lenient parsing for list-like environment variables:
    - already a list -> str().strip() each item
    - JSON array string -> json.loads
    - comma separated string -> split(",")
    - anything else / None / empty -> []
    Never raises.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if str(x).strip()]
    s = str(value).strip()
    if not s:
        return []
    if s.startswith("[") and s.endswith("]"):
        try:
            import json
            arr = json.loads(s)
            if isinstance(arr, list):
                return [str(x).strip() for x in arr if str(x).strip()]
        except Exception:
            pass
    return [x.strip() for x in s.split(",") if x.strip()]


class Settings(BaseSettings):
    # =========================
    # App
    # =========================
    APP_NAME: str = "listing-sync"
    APP_VERSION: str = "1.0.0"
    API_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENV: str = "prod"

    # =========================
    # Database
    # =========================
    DATABASE_URL: str = "sqlite:///./listingsync.db"
    DB_POOL_PRE_PING: bool = True
    DB_POOL_RECYCLE: int = 1800
    DB_ECHO: bool = False

    # =========================
    # CORS / trusted hosts
    # =========================
    # Any: leave JSON decoding to the validator below
    CORS_ORIGINS: Any = []
    CORS_ALLOW_CREDENTIALS: bool = True
    ALLOWED_HOSTS: Any = []
    FRONTEND_ORIGIN: Optional[str] = None

    # =========================
    # Crypto (master key)
    # =========================
    CRYPTO_MASTER_KEY_B64: str = ""  # base64 of a 32 byte AES key

    # =========================
    # eBay application
    # =========================
    EBAY_APP_ID: Optional[str] = None
    EBAY_CERT_ID: Optional[str] = None
    EBAY_RUNAME_PROD: Optional[str] = None
    EBAY_RUNAME_SANDBOX: Optional[str] = None
    EBAY_DEFAULT_ENVIRONMENT: str = "production"
    EBAY_SCOPES: Any = [
        "https://api.ebay.com/oauth/api_scope",
        "https://api.ebay.com/oauth/api_scope/sell.inventory",
        "https://api.ebay.com/oauth/api_scope/sell.account",
        "https://api.ebay.com/oauth/api_scope/sell.fulfillment",
    ]
    EBAY_REFRESH_DEFAULT_SCOPE: str = "https://api.ebay.com/oauth/api_scope/sell.inventory"

    # =========================
    # OAuth flow
    # =========================
    OAUTH_STATE_TTL_SECONDS: int = 600
    OAUTH_CONNECTED_REDIRECT: str = "/pricing"

    # =========================
    # HTTP client
    # =========================
    HTTP_CLIENT_TIMEOUT_SECONDS: float = 30.0
    HTTP_RETRY_MAX_ATTEMPTS: int = 3
    HTTP_RETRY_DELAYS_SECONDS: Any = [0.5, 1.0, 2.0]

    # =========================
    # Listings / migration / stock
    # =========================
    MIGRATION_MAX_BATCH_SIZE: int = 50
    MIGRATION_ASSUME_SUCCESS_ON_UNITEMIZED: bool = True
    LISTINGS_MAX_PAGE_SIZE: int = 200
    LISTINGS_OFFERS_CONCURRENCY: int = 3
    LISTINGS_MAX_OFFERS_PER_SKU: int = 5
    STOCK_PUSH_MAX_ITEMS: int = 25
    ORDERS_SYNC_WINDOW_MINUTES: int = 120
    ORDERS_PAGE_LIMIT: int = 100
    ORDERS_MAX_PAGES: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ---------- validators ----------
    @field_validator("CORS_ORIGINS", "ALLOWED_HOSTS", "EBAY_SCOPES", mode="before")
    @classmethod
    def _coerce_list_like(cls, v: Any) -> List[str]:
        return _as_list(v)

    @field_validator("HTTP_RETRY_DELAYS_SECONDS", mode="before")
    @classmethod
    def _coerce_delays(cls, v: Any) -> List[float]:
        try:
            delays = [float(x) for x in _as_list(v)]
        except ValueError:
            raise ValueError("HTTP_RETRY_DELAYS_SECONDS must be a list of seconds")
        return delays or [0.5, 1.0, 2.0]

    @field_validator("EBAY_DEFAULT_ENVIRONMENT", mode="before")
    @classmethod
    def _normalize_environment(cls, v: Any) -> str:
        s = str(v or "").strip().lower()
        return "sandbox" if s == "sandbox" else "production"

    @field_validator("MIGRATION_MAX_BATCH_SIZE")
    @classmethod
    def _clamp_batch(cls, v: int) -> int:
        # bulk_migrate_listing accepts at most 50 ids
        return max(1, min(int(v), 50))

    def runame_for(self, environment: str) -> Optional[str]:
        return self.EBAY_RUNAME_SANDBOX if environment == "sandbox" else self.EBAY_RUNAME_PROD


@lru_cache
def get_settings() -> Settings:
    return Settings()
