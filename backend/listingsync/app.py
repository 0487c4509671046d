# listingsync/app.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from listingsync.core.config import Settings, get_settings
from listingsync.core.errors import install_exception_handlers
from listingsync.core.middleware import install_middleware
from listingsync.data.db import Database
from listingsync.services.http_retry import RetryPolicy

from listingsync.features.healthz.router import router as healthz_router
from listingsync.features.oauth.router import callback_router as oauth_callback_router
from listingsync.features.oauth.router import router as oauth_router
from listingsync.features.marketplaces.router import router as marketplaces_router
from listingsync.features.marketplaces.router_migrate import router as migrate_router
from listingsync.features.marketplaces.router_stock import router as stock_router

logger = logging.getLogger("lsync.app")


def _dedupe_tags(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Remove duplicate tag entries while preserving order."""
    tags = schema.get("tags")
    if not tags:
        return schema
    seen: set[str] = set()
    unique_tags: list[dict[str, Any]] = []
    for tag in tags:
        name = tag.get("name")
        if not name or name in seen:
            continue
        seen.add(name)
        unique_tags.append(tag)
    schema["tags"] = unique_tags
    return schema


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    create_tables: bool = False,
) -> FastAPI:
    """
    The database and the outbound HTTP client are built once per process in
    the lifespan (or injected, for tests) and exposed through app.state.
    Injected resources are not closed on shutdown; their owner closes them.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = database or Database.from_settings(settings)
        client = http_client or httpx.AsyncClient(timeout=settings.HTTP_CLIENT_TIMEOUT_SECONDS)
        if create_tables:
            db.create_all()
        app.state.database = db
        app.state.http_client = client
        logger.info("%s %s started env=%s", settings.APP_NAME, settings.APP_VERSION, settings.ENV)
        try:
            yield
        finally:
            if http_client is None:
                await client.aclose()
            if database is None:
                db.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url=None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.retry_policy = RetryPolicy.from_settings(settings)

    # Core setup
    install_middleware(app, settings)
    install_exception_handlers(app)

    # Routers
    app.include_router(healthz_router)
    app.include_router(oauth_router, prefix=settings.API_PREFIX)
    app.include_router(marketplaces_router, prefix=settings.API_PREFIX)
    app.include_router(migrate_router, prefix=settings.API_PREFIX)
    app.include_router(stock_router, prefix=settings.API_PREFIX)

    # OAuth callback router
    app.include_router(oauth_callback_router)  # /api/oauth/ebay/callback (no versioning)

    def _custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=settings.APP_VERSION,
            routes=app.routes,
            description="eBay listing sync API",
        )
        app.openapi_schema = _dedupe_tags(schema)
        return app.openapi_schema

    app.openapi = _custom_openapi  # type: ignore[assignment]

    return app


app = create_app()
