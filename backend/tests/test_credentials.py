from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from listingsync.core.errors import APIError
from listingsync.data.models import MarketplaceAccount, OAuthToken
from listingsync.data.models.marketplace import TOKEN_CONSUMED, TOKEN_PENDING
from listingsync.services.credentials import CredentialStore, expires_at_from, require_account_and_token


def _token(account_id, access, *, updated, created=None):
    return OAuthToken(
        marketplace_account_id=account_id,
        access_token=access,
        created_at=created or updated,
        updated_at=updated,
    )


def test_current_token_prefers_latest_and_skips_placeholders(db_session, settings, seed_account):
    seeded = seed_account(access_token="seed")
    base = datetime.utcnow() - timedelta(hours=1)
    db_session.add_all(
        [
            _token(seeded.account_id, "older", updated=base),
            _token(seeded.account_id, "newest", updated=base + timedelta(minutes=30)),
            _token(seeded.account_id, TOKEN_PENDING, updated=base + timedelta(hours=2)),
            _token(seeded.account_id, TOKEN_CONSUMED, updated=base + timedelta(hours=3)),
        ]
    )
    db_session.flush()
    # the seeded row was written "now", later than the other real tokens
    store = CredentialStore(db_session, settings)
    assert store.current_token(seeded.account_id).access_token == "seed"

    seed_row = db_session.get(OAuthToken, seeded.token_id)
    seed_row.updated_at = base - timedelta(hours=5)
    db_session.flush()
    assert store.current_token(seeded.account_id).access_token == "newest"


def test_current_token_ties_break_on_id(db_session, settings, seed_account):
    seeded = seed_account(with_token=False)
    stamp = datetime(2026, 1, 1, 12, 0, 0)
    db_session.add(_token(seeded.account_id, "first", updated=stamp))
    db_session.add(_token(seeded.account_id, "second", updated=stamp))
    db_session.flush()
    assert CredentialStore(db_session, settings).current_token(seeded.account_id).access_token == "second"


def test_update_access_token_touches_only_access_fields(db_session, settings, seed_account):
    seeded = seed_account(access_token="old", refresh_token="keep-me")
    pending = OAuthToken(marketplace_account_id=seeded.account_id, access_token=TOKEN_PENDING, state_nonce="n1")
    db_session.add(pending)
    db_session.flush()
    before = db_session.get(OAuthToken, seeded.token_id)
    rt_ct, rt_iv, scope = before.refresh_token_encrypted, before.encryption_iv, before.scope

    store = CredentialStore(db_session, settings)
    assert store.update_access_token(seeded.account_id, "new", 3600) == 1
    db_session.commit()

    row = db_session.get(OAuthToken, seeded.token_id)
    assert row.access_token == "new"
    assert (row.refresh_token_encrypted, row.encryption_iv, row.scope) == (rt_ct, rt_iv, scope)
    assert store.decrypt_refresh_token(row) == "keep-me"
    assert db_session.get(OAuthToken, pending.id).access_token == TOKEN_PENDING


def test_pending_state_lifecycle(db_session, settings):
    store = CredentialStore(db_session, settings)
    row = store.create_pending_state("nonce-1", ttl_seconds=600)
    assert store.find_live_pending("nonce-1") is not None

    store.consume_pending(row)
    assert store.find_live_pending("nonce-1") is None
    assert row.access_token == TOKEN_CONSUMED


def test_expired_pending_state_is_not_live(db_session, settings):
    store = CredentialStore(db_session, settings)
    row = store.create_pending_state("nonce-2", ttl_seconds=600)
    row.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db_session.flush()

    assert store.find_live_pending("nonce-2") is None
    assert store.purge_nonce("nonce-2") == 1


def test_resolve_client_credentials_prefers_account(db_session, settings, seed_account):
    seeded = seed_account()
    store = CredentialStore(db_session, settings)
    store.upsert_provider_credentials(
        provider="ebay", environment="production", client_id="table-id", client_secret="table-secret", runame="r"
    )
    creds = store.resolve_client_credentials(store.get_active_account(seeded.account_id))
    assert (creds.client_id, creds.client_secret) == ("acct-client", "acct-secret")


def test_resolve_client_credentials_falls_back_to_provider_table(db_session, settings, seed_account):
    seeded = seed_account()
    account = db_session.get(MarketplaceAccount, seeded.account_id)
    account.client_id = None
    db_session.flush()

    store = CredentialStore(db_session, settings)
    assert store.resolve_client_credentials(account) is None

    row = store.upsert_provider_credentials(
        provider="ebay", environment="production", client_id="table-id", client_secret="table-secret", runame="r"
    )
    assert row.client_id_iv != row.client_secret_iv
    creds = store.resolve_client_credentials(account)
    assert (creds.client_id, creds.client_secret) == ("table-id", "table-secret")


def test_require_account_and_token(db_session, settings, seed_account):
    store = CredentialStore(db_session, settings)
    with pytest.raises(APIError) as exc:
        require_account_and_token(store, 999)
    assert (exc.value.code, exc.value.status_code) == ("account_not_found", 404)

    seeded = seed_account(with_token=False)
    with pytest.raises(APIError) as exc:
        require_account_and_token(store, seeded.account_id)
    assert (exc.value.code, exc.value.status_code) == ("token_missing", 424)


def test_expires_at_applies_skew_and_default():
    now = datetime.utcnow()
    assert abs((expires_at_from(None) - now).total_seconds() - (7200 - 120)) < 5
    assert abs((expires_at_from(60) - now).total_seconds()) < 5
