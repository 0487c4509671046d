"""eBay REST client on top of the shared ``httpx.AsyncClient`` and :mod:`listingsync.services.http_retry`."""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Iterable, Optional, Sequence

import httpx

from listingsync.providers.ebay import endpoints
from listingsync.providers.ebay.schemas import TokenExchangeResult, parse_token_response
from listingsync.services.http_retry import RetryPolicy, fetch_with_retry

logger = logging.getLogger("lsync.ebay")


def basic_auth(client_id: str, client_secret: str) -> str:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def bearer_headers(access_token: str, accept_language: Optional[str] = None) -> dict[str, str]:
    h = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
    if accept_language:
        h["Accept-Language"] = accept_language
    return h


class EbayClient:
    """
    One instance per (request, environment). It owns no connection pool: the
    ``httpx.AsyncClient`` is process scoped and injected.

    Sell API methods return the raw ``httpx.Response`` so callers can branch on
    status and provider error ids; OAuth grants return a typed result.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        environment: str,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._http = http
        self.environment = endpoints.normalize_environment(environment)
        self._retry = retry or RetryPolicy()

    def _url(self, path: str) -> str:
        return endpoints.api_url(self.environment, path)

    # --------------------------- OAuth grants ---------------------------

    async def _token_grant(self, form: dict[str, str], *, client_id: str, client_secret: str) -> TokenExchangeResult:
        headers = {
            "Authorization": basic_auth(client_id, client_secret),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        url = endpoints.token_url(self.environment)
        resp = await fetch_with_retry(
            lambda: self._http.post(url, data=form, headers=headers),
            self._retry,
            label=f"ebay token grant={form.get('grant_type')}",
        )
        return parse_token_response(resp.status_code, resp.text)

    async def exchange_code(
        self, code: str, *, redirect_uri: str, client_id: str, client_secret: str
    ) -> TokenExchangeResult:
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        return await self._token_grant(form, client_id=client_id, client_secret=client_secret)

    async def refresh(
        self, refresh_token: str, *, client_id: str, client_secret: str, scope: Optional[str] = None
    ) -> TokenExchangeResult:
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scope:
            form["scope"] = scope
        return await self._token_grant(form, client_id=client_id, client_secret=client_secret)

    # --------------------------- Sell Inventory ---------------------------

    async def inventory_items(self, access_token: str, *, limit: int, offset: int) -> httpx.Response:
        url = self._url(endpoints.INVENTORY_ITEM_PATH)
        params = {"limit": str(limit), "offset": str(offset)}
        return await fetch_with_retry(
            lambda: self._http.get(url, params=params, headers=bearer_headers(access_token)),
            self._retry,
            label="ebay inventory_item",
        )

    async def offers_for_sku(self, access_token: str, sku: str, *, limit: int) -> httpx.Response:
        url = self._url(endpoints.OFFER_PATH)
        params = {"sku": sku, "limit": str(limit), "offset": "0"}
        return await fetch_with_retry(
            lambda: self._http.get(url, params=params, headers=bearer_headers(access_token)),
            self._retry,
            label="ebay offer",
        )

    async def bulk_migrate(
        self, access_token: str, listing_ids: Sequence[str], *, accept_language: Optional[str] = None
    ) -> httpx.Response:
        if len(listing_ids) > endpoints.BULK_MIGRATE_MAX_IDS:
            raise ValueError(f"bulk_migrate_listing accepts at most {endpoints.BULK_MIGRATE_MAX_IDS} ids")
        url = self._url(endpoints.BULK_MIGRATE_PATH)
        headers = {**bearer_headers(access_token, accept_language), "Content-Type": "application/json"}
        payload = {"listingIds": list(listing_ids)}
        return await fetch_with_retry(
            lambda: self._http.post(url, json=payload, headers=headers),
            self._retry,
            label="ebay bulk_migrate_listing",
        )

    async def bulk_update_quantities(
        self, access_token: str, items: Iterable[tuple[str, int]]
    ) -> httpx.Response:
        url = self._url(endpoints.BULK_UPDATE_PRICE_QUANTITY_PATH)
        headers = {**bearer_headers(access_token), "Content-Type": "application/json"}
        payload = {
            "requests": [
                {"sku": sku, "shipToLocationAvailability": {"quantity": int(qty)}}
                for sku, qty in items
            ]
        }
        return await fetch_with_retry(
            lambda: self._http.post(url, json=payload, headers=headers),
            self._retry,
            label="ebay bulk_update_price_quantity",
        )

    # --------------------------- Sell Fulfillment ---------------------------

    async def orders(
        self,
        access_token: str,
        *,
        modified_since: datetime,
        modified_until: datetime,
        limit: int,
    ) -> httpx.Response:
        url = self._url(endpoints.ORDER_PATH)
        params = {"filter": endpoints.lastmodified_filter(modified_since, modified_until), "limit": str(limit)}
        return await fetch_with_retry(
            lambda: self._http.get(url, params=params, headers=bearer_headers(access_token)),
            self._retry,
            label="ebay order",
        )

    async def follow(self, access_token: str, url: str) -> httpx.Response:
        """GET a ``next`` link returned by a paged Sell API response."""
        if url.startswith("/"):
            url = self._url(url)
        if not endpoints.is_api_url(self.environment, url):
            raise ValueError(f"refusing to send the bearer token to {url!r}")
        return await fetch_with_retry(
            lambda: self._http.get(url, headers=bearer_headers(access_token)),
            self._retry,
            label="ebay next page",
        )
