from __future__ import annotations

import base64
import pathlib
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from listingsync.core.config import Settings
from listingsync.data.db import Database
from listingsync.services.crypto import FieldCipher
from listingsync.services.http_retry import RetryPolicy


ROOT = pathlib.Path(__file__).resolve().parents[1]
TEST_DB_PATH = ROOT / "test_listingsync.db"
TEST_MASTER_KEY_B64 = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{TEST_DB_PATH}",
        CRYPTO_MASTER_KEY_B64=TEST_MASTER_KEY_B64,
        EBAY_APP_ID="app-id",
        EBAY_CERT_ID="cert-id",
        EBAY_RUNAME_PROD="RuName-prod",
        EBAY_RUNAME_SANDBOX="RuName-sandbox",
        ALLOWED_HOSTS=["testserver"],
        OAUTH_CONNECTED_REDIRECT="/pricing",
    )


@pytest.fixture
def cipher(settings: Settings) -> FieldCipher:
    return FieldCipher.from_settings(settings)


@pytest.fixture(autouse=True)
def database(settings: Settings) -> Generator[Database, None, None]:
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()
    db = Database.from_settings(settings)
    db.create_all()

    yield db

    db.dispose()
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()


@pytest.fixture()
def db_session(database: Database) -> Generator:
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry(sleeps: SleepRecorder) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delays=(0.5, 1.0, 2.0), sleep=sleeps)


@dataclass
class Seeded:
    account_id: int
    token_id: int


@pytest.fixture
def seed_account(db_session, cipher: FieldCipher) -> Callable[..., Seeded]:
    """An active eBay account with account-level app credentials and one live token."""
    from listingsync.data.models import MarketplaceAccount, OAuthToken

    def _seed(
        *,
        access_token: str = "at-1",
        refresh_token: Optional[str] = "rt-1",
        environment: str = "production",
        provider_account_id: str = "seller-1",
        with_token: bool = True,
    ) -> Seeded:
        secret_ct, secret_iv = cipher.encrypt("acct-secret")
        account = MarketplaceAccount(
            provider="ebay",
            environment=environment,
            provider_account_id=provider_account_id,
            display_name="eBay Production",
            client_id="acct-client",
            client_secret_encrypted=secret_ct,
            client_secret_iv=secret_iv,
        )
        db_session.add(account)
        db_session.flush()
        token_id = 0
        if with_token:
            rt_ct, rt_iv = cipher.encrypt(refresh_token) if refresh_token else (None, None)
            token = OAuthToken(
                marketplace_account_id=account.id,
                access_token=access_token,
                refresh_token_encrypted=rt_ct,
                encryption_iv=rt_iv,
                scope="https://api.ebay.com/oauth/api_scope/sell.inventory",
            )
            db_session.add(token)
            db_session.flush()
            token_id = int(token.id)
        db_session.commit()
        return Seeded(account_id=int(account.id), token_id=token_id)

    return _seed


@pytest.fixture
def make_client(settings: Settings, database: Database) -> Generator[Callable[..., TestClient], None, None]:
    """TestClient over create_app with a MockTransport standing in for eBay."""
    from listingsync.app import create_app

    opened: list[TestClient] = []

    async def _no_sleep(_: float) -> None:
        return None

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> TestClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app = create_app(settings, database=database, http_client=http)
        app.state.retry_policy = RetryPolicy(sleep=_no_sleep)
        client = TestClient(app, follow_redirects=False)
        client.__enter__()
        opened.append(client)
        return client

    yield _make

    for client in opened:
        client.__exit__(None, None, None)
