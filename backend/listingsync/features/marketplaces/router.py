# listingsync/features/marketplaces/router.py
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

import httpx
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.deps import get_app_settings, get_http_client, get_retry_policy
from listingsync.core.errors import APIError, error_response
from listingsync.data.db import get_db
from listingsync.features.marketplaces.schemas import (
    AccountItem,
    AccountsResp,
    BulkLinkBySkuAction,
    CreateAction,
    IgnoreAction,
    LinkAction,
    LinkBySkuAction,
    ListingItem,
    ListingsResp,
    MappingAction,
    SnapshotResp,
)
from listingsync.services.catalog import SqlCatalogService
from listingsync.services.credentials import CredentialStore
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.listings import (
    MATCH_BAD_ITEM,
    MATCH_CONFLICT,
    MATCH_LINKED,
    MATCH_MULTIPLE,
    MATCH_NOT_FOUND,
    LinkCandidate,
    ListingFilters,
    ListingsService,
    load_remote_page,
)
from listingsync.services.sync_log import OUTCOME_FAIL, OUTCOME_OK, record_sync_event

logger = logging.getLogger("lsync.marketplaces")

# mounted under API_PREFIX by create_app
router = APIRouter(prefix="/marketplaces", tags=["Marketplaces"])


def _listings_service(db: Session, settings: Settings) -> ListingsService:
    return ListingsService(db, settings, SqlCatalogService(db))


# ---------------------------- accounts ----------------------------
@router.get("/accounts", response_model=AccountsResp)
def list_accounts(
    provider: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    if not provider or not provider.strip():
        raise APIError("bad_request", "provider is required.", 400)
    provider = provider.strip().lower()
    rows = CredentialStore(db, settings).list_active_accounts(provider=provider)
    record_sync_event(
        db, operation="accounts_list", outcome=OUTCOME_OK, provider=provider, http_status=200,
        metadata={"count": len(rows)},
    )
    return AccountsResp(
        items=[
            AccountItem(
                id=int(a.id),
                display_name=a.display_name,
                environment=a.environment,
                provider_account_id=a.provider_account_id,
                needs_reauth=bool(a.needs_reauth),
            )
            for a in rows
        ]
    )


# ---------------------------- listings ----------------------------
@router.get("/ebay/accounts/{account_id}/listings", response_model=ListingsResp)
async def list_listings(
    account_id: int,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1),
    q: Optional[str] = Query(default=None, max_length=128),
    status: Literal["all", "ok", "pending", "failed", "unmapped"] = Query(default="all"),
    only_unmapped: bool = Query(default=False),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    """One remote page decorated with mapping state. Nothing is persisted apart from a token refresh."""
    page_size = min(page_size, settings.LISTINGS_MAX_PAGE_SIZE)
    store = CredentialStore(db, settings)
    account, remote = await load_remote_page(store, http, account_id, page=page, page_size=page_size, retry=retry)
    result = _listings_service(db, settings).reconcile(
        account,
        remote,
        filters=ListingFilters(q=q, status=status, only_unmapped=only_unmapped),
        page=page,
        page_size=page_size,
    )
    return ListingsResp(
        items=[ListingItem(**it.as_dict()) for it in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        remote_total=result.remote_total,
        processed_skus=result.processed_skus,
        skipped_skus=result.skipped_skus,
    )


@router.post("/ebay/accounts/{account_id}/listings/snapshot", response_model=SnapshotResp)
async def snapshot_listings(
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
    saved = _listings_service(db, settings).save_snapshot(account, remote.listings)
    logger.info("snapshot saved account_id=%s page=%s saved=%s", account.id, page, saved)
    return SnapshotResp(saved=saved, remote_total=remote.remote_total, skipped_skus=remote.skipped_skus)


# ---------------------------- mapping ----------------------------
def _idempotency_key(account_id: int, body: Any) -> str:
    if isinstance(body, BulkLinkBySkuAction):
        ref = ",".join(sorted({i.remote_sku or i.remote_id or "" for i in body.items}))
    else:
        ref = getattr(body, "remote_sku", None) or getattr(body, "remote_id", None) or ""
    return f"ebay/{account_id}/{ref}"


_LINK_BY_SKU_ERRORS = {
    MATCH_CONFLICT: ("conflict", "SKU is already mapped to another product.", 409),
    MATCH_MULTIPLE: ("multiple_matches", "Several products share this SKU; link manually.", 409),
    MATCH_NOT_FOUND: ("product_not_found", "No product with this SKU.", 404),
    MATCH_BAD_ITEM: ("bad_request", "remote_sku is required.", 400),
}


def _apply(svc: ListingsService, account_id: int, body: Any) -> tuple[dict[str, Any], Optional[str]]:
    """Returns the response body and, for a soft failure, its error code."""
    if isinstance(body, LinkAction):
        out = svc.link_manual(account_id, product_id=body.product_id, remote_id=body.remote_id, remote_sku=body.remote_sku)
        return out.as_dict(), None

    if isinstance(body, LinkBySkuAction):
        res = svc.link_by_sku(account_id, body.remote_sku, remote_id=body.remote_id)
        if res.status != MATCH_LINKED:
            code, message, status_code = _LINK_BY_SKU_ERRORS[res.status]
            raise APIError(code, message, status_code, res.as_dict())
        return res.as_dict(), None

    if isinstance(body, BulkLinkBySkuAction):
        cands = [LinkCandidate(remote_sku=i.remote_sku, remote_id=i.remote_id) for i in body.items]
        res = svc.auto_link_by_sku(account_id, cands, dry_run=body.dry_run)
        return {**res.as_dict(), "dry_run": body.dry_run}, None

    if isinstance(body, CreateAction):
        out = svc.create(account_id, remote_id=body.remote_id, remote_sku=body.remote_sku)
        return out.as_dict(), (None if out.product_id is not None else "catalog_create_failed")

    if isinstance(body, IgnoreAction):
        added = svc.ignore(account_id, remote_id=body.remote_id, remote_sku=body.remote_sku, reason=body.reason)
        return {"ignored": True, "already_ignored": not added}, None

    raise APIError("bad_request", "Unknown action.", 400)


@router.post("/ebay/accounts/{account_id}/mapping", response_model=None)
def apply_mapping_action(
    account_id: int,
    body: MappingAction = Body(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """
    link | link_by_sku | bulk_link_by_sku | create | ignore.
    Every action leaves a sync_logs row, failures included, so errors are
    returned rather than raised to keep that row.
    """
    operation = f"mapping_{body.action}"
    idem = _idempotency_key(account_id, body)
    try:
        if CredentialStore(db, settings).get_active_account(account_id) is None:
            raise APIError("account_not_found", "Marketplace account not found or inactive.", 404)
        payload, soft_error = _apply(_listings_service(db, settings), account_id, body)
    except APIError as e:
        logger.info("%s failed account_id=%s code=%s", operation, account_id, e.code)
        record_sync_event(
            db,
            account_id=account_id,
            operation=operation,
            outcome=OUTCOME_FAIL,
            http_status=e.status_code,
            error_code=e.code,
            error_message=e.message,
            idempotency_key=idem,
        )
        return error_response(e)

    meta: dict[str, Any] = {}
    if isinstance(body, BulkLinkBySkuAction):
        meta = {"linked": payload["linked"], "total": payload["total"], "dry_run": body.dry_run}
    record_sync_event(
        db,
        account_id=account_id,
        operation=operation,
        outcome=OUTCOME_FAIL if soft_error else OUTCOME_OK,
        http_status=200,
        error_code=soft_error,
        idempotency_key=idem,
        metadata=meta or None,
    )
    return {"ok": soft_error is None, "action": body.action, "result": payload}
