# listingsync/features/marketplaces/router_migrate.py
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.deps import get_app_settings, get_http_client, get_retry_policy
from listingsync.core.errors import APIError
from listingsync.data.db import get_db
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.migration import (
    MigrationRequest,
    clamp_batch_size,
    clamp_max_batches,
    collect_listing_ids,
    run_migration,
)

logger = logging.getLogger("lsync.migrate")

router = APIRouter(prefix="/marketplaces/ebay/listings", tags=["eBay Migration"])


def _parse_body(raw: bytes) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise APIError("bad_json", "Request body is not valid JSON.", 400)
    if not isinstance(body, dict):
        raise APIError("bad_json", "Request body must be a JSON object.", 400)
    return body


def _parse_account_id(value: Optional[str]) -> int:
    s = (value or "").strip()
    if not s:
        raise APIError("missing_account_id", "account_id query parameter is required.", 400)
    try:
        account_id = int(s)
    except ValueError:
        raise APIError("missing_account_id", "account_id must be an integer.", 400)
    if account_id <= 0:
        raise APIError("missing_account_id", "account_id must be positive.", 400)
    return account_id


@router.post("/migrate", response_model=None)
async def migrate_listings(
    request: Request,
    account_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    """
    Body: {dry_run?, batch_size?, max_batches?, listing_ids?[], item_ids_csv?}.
    The body is read by hand so malformed JSON maps to bad_json.
    """
    acc_id = _parse_account_id(account_id)
    body = _parse_body(await request.body())

    listing_ids = collect_listing_ids(body.get("listing_ids"), body.get("item_ids_csv"))
    if not listing_ids:
        raise APIError("no_listing_ids", "Provide listing_ids[] or item_ids_csv.", 400)

    req = MigrationRequest(
        account_id=acc_id,
        listing_ids=listing_ids,
        dry_run=bool(body.get("dry_run")),
        batch_size=clamp_batch_size(body.get("batch_size"), settings.MIGRATION_MAX_BATCH_SIZE),
        max_batches=clamp_max_batches(body.get("max_batches")),
    )
    logger.info(
        "migrate request account_id=%s ids=%s batch_size=%s max_batches=%s dry_run=%s",
        acc_id, len(listing_ids), req.batch_size, req.max_batches, req.dry_run,
    )
    return await run_migration(db, settings, http, req, retry=retry)
