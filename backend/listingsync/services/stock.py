# listingsync/services/stock.py
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.errors import APIError
from listingsync.core.metrics import STOCK_PUSHES
from listingsync.data.models.catalog import Product
from listingsync.data.models.listings import ListingMapping
from listingsync.providers.ebay.client import EbayClient
from listingsync.providers.ebay.schemas import parse_price_quantity_responses, provider_errors
from listingsync.services.credentials import CredentialStore, require_account_and_token
from listingsync.services.ebay_oauth import TokenRefresher
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.listings import ListingView
from listingsync.services.sync_log import OUTCOME_FAIL, OUTCOME_OK, record_sync_event

logger = logging.getLogger("lsync.stock")

OPERATION = "stock_push"


@dataclass(frozen=True)
class StockSyncItem:
    sku: str
    quantity: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class StockPushFailed(Exception):
    """The bulk quantity update was rejected in whole or in part."""

    def __init__(self, message: str, *, status_code: int, errors: list[dict[str, Any]]):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors


def compute_mismatches(listings: Iterable[ListingView]) -> list[StockSyncItem]:
    """
    Mapped listings whose internal and last fetched remote quantities are both
    known and differ. Exact comparison; one item per SKU.
    """
    out: "OrderedDict[str, StockSyncItem]" = OrderedDict()
    for l in listings:
        if not l.is_mapped or l.qty_app is None or l.qty_remote is None or not l.remote_sku:
            continue
        if l.qty_remote == l.qty_app:
            continue
        out.setdefault(l.remote_sku, StockSyncItem(sku=l.remote_sku, quantity=int(l.qty_app)))
    return list(out.values())


def validate_push_items(raw: Sequence[Any], *, max_items: int) -> list[StockSyncItem]:
    items: list[StockSyncItem] = []
    for it in raw:
        sku = getattr(it, "sku", None) if not isinstance(it, dict) else it.get("sku")
        qty = getattr(it, "quantity", None) if not isinstance(it, dict) else it.get("quantity")
        if not isinstance(sku, str) or not sku.strip():
            raise APIError("bad_request", "Every item needs a sku.", 400)
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
            raise APIError("bad_request", f"Invalid quantity for sku {sku}.", 400)
        items.append(StockSyncItem(sku=sku, quantity=qty))
    if not items:
        raise APIError("bad_request", "items[] is required.", 400)
    if len(items) > max_items:
        raise APIError(
            "too_many_items", f"At most {max_items} items per push.", 400, {"max_items": max_items, "got": len(items)}
        )
    return items


async def _push(client: EbayClient, refresher: TokenRefresher, access_token: str, items: Sequence[StockSyncItem]) -> int:
    pairs = [(i.sku, i.quantity) for i in items]
    resp = await client.bulk_update_quantities(access_token, pairs)
    if resp.status_code == 401:
        new_token = await refresher.refresh()
        if not new_token:
            raise StockPushFailed("token_expired", status_code=401, errors=[{"message": "token_expired"}])
        resp = await client.bulk_update_quantities(new_token, pairs)

    if resp.status_code >= 300:
        raise StockPushFailed(
            f"bulk_update_price_quantity HTTP {resp.status_code}",
            status_code=resp.status_code,
            errors=provider_errors(resp.text),
        )
    failed = [r for r in parse_price_quantity_responses(resp.text) if r.failed]
    if failed:
        # no per-SKU partial success on this path
        raise StockPushFailed(
            f"{len(failed)} of {len(items)} SKUs rejected",
            status_code=resp.status_code,
            errors=[{"sku": r.sku, "statusCode": r.statusCode, "errors": r.errors} for r in failed],
        )
    return len(items)


async def push_quantities(
    db: Session,
    settings: Settings,
    http: httpx.AsyncClient,
    account_id: int,
    items: Sequence[StockSyncItem],
    *,
    retry: RetryPolicy | None = None,
    store: CredentialStore | None = None,
) -> dict[str, Any]:
    """One bulk call; any failure surfaces as a single StockPushFailed."""
    store = store or CredentialStore(db, settings)
    account, token = require_account_and_token(store, account_id)
    items = validate_push_items(items, max_items=settings.STOCK_PUSH_MAX_ITEMS)

    client = EbayClient(http, environment=account.environment, retry=retry)
    refresher = TokenRefresher(store, client, account, token)
    idem = f"ebay/{account.id}/stock/" + ",".join(sorted(i.sku for i in items))
    try:
        pushed = await _push(client, refresher, token.access_token, items)
    except (StockPushFailed, httpx.TransportError) as e:
        status = getattr(e, "status_code", None)
        errors = getattr(e, "errors", [{"message": e.__class__.__name__}])
        STOCK_PUSHES.labels(outcome="failed").inc()
        logger.warning("stock push failed account_id=%s items=%s err=%s", account.id, len(items), e)
        record_sync_event(
            db,
            account_id=int(account.id),
            operation=OPERATION,
            outcome=OUTCOME_FAIL,
            http_status=status,
            error_code="stock_update_failed",
            error_message=str(e),
            idempotency_key=idem,
            metadata={"items": len(items)},
        )
        raise StockPushFailed(str(e), status_code=status or 502, errors=errors) from e

    STOCK_PUSHES.labels(outcome="ok").inc()
    record_sync_event(
        db,
        account_id=int(account.id),
        operation=OPERATION,
        outcome=OUTCOME_OK,
        http_status=200,
        idempotency_key=idem,
        metadata={"items": pushed},
    )
    logger.info("stock push ok account_id=%s items=%s", account.id, pushed)
    return {"ok": True, "pushed": pushed, "items": [i.as_dict() for i in items]}


def collect_push_items_for_products(db: Session, product_ids: Sequence[int]) -> dict[int, list[StockSyncItem]]:
    """Mapped products grouped by account as push candidates, using the internal quantity."""
    ids = sorted({int(p) for p in product_ids})
    if not ids:
        return {}
    rows = db.execute(
        select(ListingMapping.marketplace_account_id, ListingMapping.remote_sku, Product.quantity)
        .join(Product, Product.id == ListingMapping.product_id)
        .where(
            ListingMapping.provider == "ebay",
            ListingMapping.product_id.in_(ids),
            ListingMapping.remote_sku.is_not(None),
        )
        .order_by(ListingMapping.marketplace_account_id.asc(), ListingMapping.id.asc())
    ).all()

    grouped: dict[int, list[StockSyncItem]] = {}
    seen: set[tuple[int, str]] = set()
    for account_id, sku, qty in rows:
        if qty is None or not sku or (account_id, sku) in seen:
            continue
        seen.add((account_id, sku))
        grouped.setdefault(int(account_id), []).append(StockSyncItem(sku=sku, quantity=int(qty)))
    return grouped


async def sync_products_to_remote(
    db: Session,
    settings: Settings,
    http: httpx.AsyncClient,
    product_ids: Sequence[int],
    *,
    retry: RetryPolicy | None = None,
) -> dict[str, Any]:
    """
    Push internal quantities of the given products to every account they are
    mapped on, in chunks of STOCK_PUSH_MAX_ITEMS. A failing account or chunk
    is reported and the remaining ones still run.
    """
    store = CredentialStore(db, settings)
    chunk = max(1, int(settings.STOCK_PUSH_MAX_ITEMS))
    report: list[dict[str, Any]] = []
    for account_id, items in collect_push_items_for_products(db, product_ids).items():
        for i in range(0, len(items), chunk):
            part = items[i:i + chunk]
            entry: dict[str, Any] = {"account_id": account_id, "items": len(part)}
            try:
                await push_quantities(db, settings, http, account_id, part, retry=retry, store=store)
                entry["ok"] = True
            except StockPushFailed as e:
                entry.update(ok=False, error="stock_update_failed", detail=str(e)[:200])
            except APIError as e:
                entry.update(ok=False, error=e.code, detail=e.message)
            report.append(entry)
    return {"success": all(e["ok"] for e in report), "pushes": report}
