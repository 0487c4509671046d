# listingsync/core/deps.py
from __future__ import annotations

import httpx
from fastapi import Request

from listingsync.core.config import Settings
from listingsync.services.http_retry import RetryPolicy

# Process scoped resources live on app.state; they are built by the lifespan in
# listingsync.app and never at import time.


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_retry_policy(request: Request) -> RetryPolicy:
    return request.app.state.retry_policy
