# listingsync/features/oauth/router.py
from __future__ import annotations

from typing import Literal, Optional

import httpx
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.deps import get_app_settings, get_http_client, get_retry_policy
from listingsync.core.errors import APIError, error_response
from listingsync.data.db import get_db
from listingsync.services.credentials import CredentialStore
from listingsync.services.ebay_oauth import build_authorize_redirect, handle_callback
from listingsync.services.http_retry import RetryPolicy

# mounted under API_PREFIX by create_app
router = APIRouter(prefix="/oauth/ebay", tags=["eBay OAuth"])

# the RuName on the eBay side points here; unversioned
callback_router = APIRouter(prefix="/api/oauth", tags=["OAuth Callback"])


@router.get("/authorize", response_model=None)
def ebay_authorize(
    account_id: Optional[int] = Query(default=None, ge=1),
    environment: Optional[Literal["production", "sandbox"]] = Query(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """302 to eBay's consent page; a pending state row is written first."""
    url = build_authorize_redirect(CredentialStore(db, settings), account_id=account_id, environment=environment)
    return RedirectResponse(url=url, status_code=302)


@callback_router.get("/ebay/callback", response_model=None)
async def ebay_callback(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
    retry: RetryPolicy = Depends(get_retry_policy),
):
    q = request.query_params
    try:
        result = await handle_callback(
            CredentialStore(db, settings), http, code=q.get("code"), state=q.get("state"), retry=retry
        )
    except APIError as e:
        if e.code == "invalid_or_expired_state":
            # keep the nonce purge
            return error_response(e)
        raise
    return RedirectResponse(url=result.redirect_url, status_code=302)
