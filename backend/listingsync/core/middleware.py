# listingsync/core/middleware.py
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from listingsync.core.config import Settings


def install_middleware(app: FastAPI, settings: Settings) -> None:
    """
    - ProxyHeadersMiddleware: honour X-Forwarded-* behind the reverse proxy
    - TrustedHostMiddleware: Host allow-list
    - CORSMiddleware: the pricing UI calls these endpoints cross-origin with cookies
    - GZipMiddleware: listing pages can be large
    """
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_hosts = list(settings.ALLOWED_HOSTS or [])
    if not allowed_hosts:
        allowed_hosts = ["*"] if settings.DEBUG else ["127.0.0.1", "localhost", "testserver"]
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_origins = list(settings.CORS_ORIGINS or [])
    if settings.FRONTEND_ORIGIN and settings.FRONTEND_ORIGIN not in cors_origins:
        cors_origins.append(settings.FRONTEND_ORIGIN)
    # credentials cannot be combined with "*"
    if settings.CORS_ALLOW_CREDENTIALS:
        cors_origins = [o for o in cors_origins if o != "*"]
    if not cors_origins and settings.DEBUG:
        cors_origins = ["http://localhost:5173", "http://127.0.0.1:5173"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
