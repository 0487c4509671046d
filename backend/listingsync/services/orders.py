# listingsync/services/orders.py
"""
Remote -> internal half of stock convergence.

Recently modified Fulfillment orders are read per active eBay account; every
order line whose SKU is mapped decrements the quantity of the mapped product's
parent (the product itself when it has none), clamped at zero. Each
(account, order, line) is applied at most once: marketplace_orders_processed
records it, mapped or not.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.errors import APIError
from listingsync.core.metrics import ORDER_LINES
from listingsync.data.models import MarketplaceAccount, OAuthToken
from listingsync.data.models.catalog import Product
from listingsync.data.models.listings import ListingMapping
from listingsync.data.models.orders import MarketplaceOrderProcessed
from listingsync.providers.ebay.client import EbayClient
from listingsync.providers.ebay.schemas import OrderLine, parse_order_page
from listingsync.services.credentials import CredentialStore
from listingsync.services.ebay_oauth import TokenRefresher
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.sync_log import OUTCOME_FAIL, OUTCOME_OK, record_sync_event

logger = logging.getLogger("lsync.orders")

PROVIDER = "ebay"
OPERATION = "orders_sync"

LINE_DECREMENTED = "decremented"
LINE_UNMAPPED = "unmapped"
LINE_DUPLICATE = "duplicate"


@dataclass
class AccountOrdersSummary:
    account_id: int
    processed: int = 0
    unmapped: int = 0
    duplicates: int = 0
    pages: int = 0
    reason: Optional[str] = None
    http_status: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "account_id": self.account_id,
            "processed": self.processed,
            "unmapped": self.unmapped,
            "duplicates": self.duplicates,
        }
        if self.reason:
            body["reason"] = self.reason
        return body


@dataclass(frozen=True)
class OrdersWindow:
    since: datetime
    until: datetime

    @classmethod
    def last(cls, minutes: int, *, now: Optional[datetime] = None) -> "OrdersWindow":
        until = now or datetime.utcnow()
        return cls(since=until - timedelta(minutes=max(1, int(minutes))), until=until)


# --------------------------- line application ---------------------------


def _already_processed(db: Session, account_id: int, line: OrderLine) -> bool:
    return db.scalar(
        select(MarketplaceOrderProcessed.id).where(
            MarketplaceOrderProcessed.provider == PROVIDER,
            MarketplaceOrderProcessed.marketplace_account_id == int(account_id),
            MarketplaceOrderProcessed.remote_order_id == line.order_id,
            MarketplaceOrderProcessed.remote_line_id == line.line_id,
        )
    ) is not None


def _mapped_product_id(db: Session, account_id: int, sku: str) -> Optional[int]:
    return db.scalar(
        select(ListingMapping.product_id)
        .where(
            ListingMapping.provider == PROVIDER,
            ListingMapping.marketplace_account_id == int(account_id),
            ListingMapping.remote_sku == sku,
            ListingMapping.product_id.is_not(None),
        )
        .order_by(ListingMapping.id.asc())
        .limit(1)
    )


def apply_order_line(db: Session, account_id: int, line: OrderLine) -> str:
    """Apply one order line to internal stock; returns decremented, unmapped or duplicate."""
    if _already_processed(db, account_id, line):
        return LINE_DUPLICATE

    target: Optional[Product] = None
    product_id = _mapped_product_id(db, account_id, line.sku)
    if product_id is not None:
        product = db.get(Product, int(product_id))
        if product is not None:
            target = db.get(Product, int(product.parent_id)) if product.parent_id else product

    # processed row is flushed before any stock change
    db.add(
        MarketplaceOrderProcessed(
            provider=PROVIDER,
            marketplace_account_id=int(account_id),
            remote_order_id=line.order_id,
            remote_line_id=line.line_id,
            remote_sku=line.sku,
            product_id=int(target.id) if target is not None else None,
            quantity=int(line.quantity),
        )
    )
    try:
        db.flush()
    except IntegrityError:
        raise APIError(
            "orders_sync_conflict",
            f"Order line {line.order_id}/{line.line_id} is being processed concurrently.",
            409,
        )

    if target is None:
        return LINE_UNMAPPED
    target.quantity = max(0, int(target.quantity or 0) - int(line.quantity))
    db.add(target)
    db.flush()
    return LINE_DECREMENTED


# --------------------------- per-account ingestion ---------------------------


class OrdersIngestor:
    def __init__(
        self,
        db: Session,
        client: EbayClient,
        refresher: TokenRefresher,
        account: MarketplaceAccount,
        token: OAuthToken,
        *,
        page_limit: int = 100,
        max_pages: int = 50,
    ):
        self.db = db
        self.client = client
        self.refresher = refresher
        self.account = account
        self.access_token = token.access_token
        self.page_limit = page_limit
        self.max_pages = max_pages
        self._refreshed = False

    async def _get(self, window: OrdersWindow, next_url: Optional[str]) -> httpx.Response:
        if next_url:
            return await self.client.follow(self.access_token, next_url)
        return await self.client.orders(
            self.access_token, modified_since=window.since, modified_until=window.until, limit=self.page_limit
        )

    async def run(self, window: OrdersWindow) -> AccountOrdersSummary:
        summary = AccountOrdersSummary(account_id=int(self.account.id))
        seen: set[tuple[str, str]] = set()
        next_url: Optional[str] = None

        while summary.pages < self.max_pages:
            try:
                resp = await self._get(window, next_url)
                if resp.status_code == 401 and not self._refreshed:
                    # one refresh per account run
                    self._refreshed = True
                    new_token = await self.refresher.refresh()
                    if not new_token:
                        summary.reason = "token_expired"
                        summary.http_status = 401
                        break
                    self.access_token = new_token
                    resp = await self._get(window, next_url)
            except httpx.TransportError as e:
                logger.error("orders fetch transport failure account_id=%s err=%s", self.account.id, e.__class__.__name__)
                summary.reason = "transport_error"
                break
            except ValueError as e:
                logger.warning("orders next link rejected account_id=%s err=%s", self.account.id, e)
                summary.reason = "invalid_next_link"
                break

            summary.http_status = resp.status_code
            if resp.status_code >= 300:
                logger.warning(
                    "orders fetch failed account_id=%s status=%s body=%s",
                    self.account.id, resp.status_code, resp.text[:200],
                )
                summary.reason = "orders_fetch_failed"
                break

            summary.pages += 1
            page = parse_order_page(resp.text)
            for line in page.lines:
                key = (line.order_id, line.line_id)
                if key in seen:
                    continue
                seen.add(key)
                outcome = apply_order_line(self.db, int(self.account.id), line)
                ORDER_LINES.labels(outcome=outcome).inc()
                if outcome == LINE_DECREMENTED:
                    summary.processed += 1
                elif outcome == LINE_UNMAPPED:
                    summary.unmapped += 1
                else:
                    summary.duplicates += 1

            next_url = page.next
            if not next_url:
                break
        return summary


def _record(db: Session, summary: AccountOrdersSummary, window: OrdersWindow) -> None:
    record_sync_event(
        db,
        account_id=summary.account_id,
        operation=OPERATION,
        outcome=OUTCOME_FAIL if summary.reason else OUTCOME_OK,
        http_status=summary.http_status,
        error_code=summary.reason,
        idempotency_key=f"ebay/{summary.account_id}/orders/{window.since:%Y%m%dT%H%M%S}-{window.until:%Y%m%dT%H%M%S}",
        metadata={
            "processed": summary.processed,
            "unmapped": summary.unmapped,
            "duplicates": summary.duplicates,
            "pages": summary.pages,
        },
    )


async def sync_orders(
    db: Session,
    settings: Settings,
    http: httpx.AsyncClient,
    *,
    account_id: Optional[int] = None,
    window_minutes: Optional[int] = None,
    retry: RetryPolicy | None = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Ingest recent orders for one account (``account_id``) or every active eBay
    account. A failing account is reported in ``details``; the others still run.
    """
    store = CredentialStore(db, settings)
    if account_id is not None:
        account = store.get_active_account(int(account_id), provider=PROVIDER)
        if account is None:
            raise APIError("account_not_found", "Marketplace account not found or inactive.", 404)
        accounts = [account]
    else:
        accounts = store.list_active_accounts(provider=PROVIDER)

    window = OrdersWindow.last(window_minutes or settings.ORDERS_SYNC_WINDOW_MINUTES, now=now)
    details: list[dict[str, Any]] = []
    total = 0
    for account in accounts:
        token = store.current_token(int(account.id))
        if token is None:
            summary = AccountOrdersSummary(account_id=int(account.id), reason="token_missing")
        else:
            client = EbayClient(http, environment=account.environment, retry=retry)
            ingestor = OrdersIngestor(
                db,
                client,
                TokenRefresher(store, client, account, token),
                account,
                token,
                page_limit=max(1, int(settings.ORDERS_PAGE_LIMIT)),
                max_pages=max(1, int(settings.ORDERS_MAX_PAGES)),
            )
            summary = await ingestor.run(window)
        _record(db, summary, window)
        logger.info(
            "orders sync account_id=%s processed=%s unmapped=%s duplicates=%s reason=%s",
            summary.account_id, summary.processed, summary.unmapped, summary.duplicates, summary.reason,
        )
        total += summary.processed
        details.append(summary.as_dict())

    return {"ok": True, "accounts": len(accounts), "processed": total, "details": details}
