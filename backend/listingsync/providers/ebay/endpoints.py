# listingsync/providers/ebay/endpoints.py
from __future__ import annotations

from datetime import datetime
from urllib.parse import urlencode

API_HOST_PROD = "https://api.ebay.com"
API_HOST_SANDBOX = "https://api.sandbox.ebay.com"
AUTH_HOST_PROD = "https://auth.ebay.com"
AUTH_HOST_SANDBOX = "https://auth.sandbox.ebay.com"

TOKEN_PATH = "/identity/v1/oauth2/token"
AUTHORIZE_PATH = "/oauth2/authorize"
INVENTORY_ITEM_PATH = "/sell/inventory/v1/inventory_item"
OFFER_PATH = "/sell/inventory/v1/offer"
BULK_MIGRATE_PATH = "/sell/inventory/v1/bulk_migrate_listing"
BULK_UPDATE_PRICE_QUANTITY_PATH = "/sell/inventory/v1/bulk_update_price_quantity"
ORDER_PATH = "/sell/fulfillment/v1/order"

# provider error ids with dedicated handling
ERROR_MISSING_LOCALE = 25709
ERROR_INVALID_SKU = 25707

# bulk_migrate_listing accepts at most this many listing ids
BULK_MIGRATE_MAX_IDS = 50


def normalize_environment(value: str | None) -> str:
    return "sandbox" if (value or "").strip().lower() == "sandbox" else "production"


def api_host(environment: str) -> str:
    return API_HOST_SANDBOX if normalize_environment(environment) == "sandbox" else API_HOST_PROD


def auth_host(environment: str) -> str:
    return AUTH_HOST_SANDBOX if normalize_environment(environment) == "sandbox" else AUTH_HOST_PROD


def api_url(environment: str, path: str) -> str:
    return f"{api_host(environment)}{path}"


def token_url(environment: str) -> str:
    return api_url(environment, TOKEN_PATH)


def authorize_url(environment: str, *, client_id: str, runame: str, scopes: list[str], state: str) -> str:
    qs = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": runame,
        "scope": " ".join(scopes),
        "prompt": "login",
        "state": state,
    }
    return f"{auth_host(environment)}{AUTHORIZE_PATH}?{urlencode(qs)}"


def _iso_z(value: datetime) -> str:
    return value.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def lastmodified_filter(since: datetime, until: datetime) -> str:
    """Fulfillment ``filter`` value for orders modified in [since, until] (naive UTC)."""
    return f"lastmodifieddate:[{_iso_z(since)}..{_iso_z(until)}]"


def is_api_url(environment: str, url: str) -> bool:
    return url.startswith(api_host(environment) + "/")
