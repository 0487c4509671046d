# listingsync/features/marketplaces/router_stock.py
from __future__ import annotations

from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.deps import get_app_settings, get_http_client, get_retry_policy
from listingsync.core.errors import APIError, error_response
from listingsync.data.db import get_db
from listingsync.features.marketplaces.schemas import StockItem, StockItemsResp, StockPushReq, SyncProductsReq
from listingsync.services.catalog import SqlCatalogService
from listingsync.services.credentials import CredentialStore
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.listings import ListingFilters, ListingsService, load_remote_page
from listingsync.services.orders import sync_orders
from listingsync.services.stock import StockPushFailed, compute_mismatches, push_quantities, sync_products_to_remote

router = APIRouter(prefix="/marketplaces/ebay", tags=["eBay Stock"])


@router.get("/accounts/{account_id}/stock/mismatches", response_model=StockItemsResp)
async def stock_mismatches(
    account_id: int,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    page_size = min(page_size, settings.LISTINGS_MAX_PAGE_SIZE)
    store = CredentialStore(db, settings)
    account, remote = await load_remote_page(store, http, account_id, page=page, page_size=page_size, retry=retry)
    view = ListingsService(db, settings, SqlCatalogService(db)).reconcile(
        account, remote, filters=ListingFilters(), page=page, page_size=page_size
    )
    return StockItemsResp(items=[StockItem(**m.as_dict()) for m in compute_mismatches(view.items)])


@router.post("/accounts/{account_id}/stock/push", response_model=None)
async def stock_push(
    account_id: int,
    body: StockPushReq,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    try:
        return await push_quantities(db, settings, http, account_id, body.items, retry=retry)
    except StockPushFailed as e:
        # returned, not raised: the failure row in sync_logs must be committed
        return error_response(
            APIError(
                "stock_update_failed",
                "eBay rejected the quantity update.",
                502,
                {"provider_status": e.status_code, "errors": e.errors},
            )
        )


@router.post("/stock/sync-products", response_model=None)
async def stock_sync_products(
    body: SyncProductsReq,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    """Push internal quantities of these products to every account they are mapped on."""
    return await sync_products_to_remote(db, settings, http, body.product_ids, retry=retry)


@router.post("/orders/sync", response_model=None)
async def orders_sync(
    account_id: Optional[int] = Query(default=None, ge=1),
    window_minutes: Optional[int] = Query(default=None, ge=1, le=10080),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    """Decrement internal stock from recently modified eBay orders, once per order line."""
    return await sync_orders(
        db, settings, http, account_id=account_id, window_minutes=window_minutes, retry=retry
    )
