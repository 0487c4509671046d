from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from listingsync.data.models import ListingMapping, Product, SyncLog

MIGRATE = "/api/v1/marketplaces/ebay/listings/migrate"


def _no_network(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be reached
    raise AssertionError(f"unexpected call {request.method} {request.url}")


def _ebay(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/inventory_item"):
        return httpx.Response(
            200,
            json={
                "total": 2,
                "inventoryItems": [
                    {"sku": "S1", "product": {"title": "Red shoe"}},
                    {"sku": "S2", "product": {"title": "Blue shoe"}},
                ],
            },
        )
    if path.endswith("/offer"):
        sku = request.url.params["sku"]
        return httpx.Response(
            200,
            json={"offers": [{"offerId": f"O-{sku}", "sku": sku, "availableQuantity": 1,
                              "pricingSummary": {"price": {"value": "5.00", "currency": "EUR"}}}]},
        )
    if path.endswith("/bulk_migrate_listing"):
        ids = json.loads(request.content)["listingIds"]
        return httpx.Response(200, json={"responses": [{"listingId": i, "statusCode": 200} for i in ids]})
    if path.endswith("/bulk_update_price_quantity"):
        return httpx.Response(
            200, json={"responses": [{"sku": "S1", "statusCode": 400, "errors": [{"errorId": 25001}]}]}
        )
    return httpx.Response(404)


def _logs(db_session, operation: str) -> list[SyncLog]:
    db_session.expire_all()
    return list(db_session.scalars(select(SyncLog).where(SyncLog.operation == operation)))


# ---------------------------- accounts ----------------------------
def test_accounts_requires_provider(make_client):
    resp = make_client(_no_network).get("/api/v1/marketplaces/accounts")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_request"


def test_accounts_lists_active_and_logs(make_client, db_session, seed_account):
    seeded = seed_account()
    resp = make_client(_no_network).get("/api/v1/marketplaces/accounts", params={"provider": "ebay"})

    assert resp.status_code == 200
    assert [a["id"] for a in resp.json()["items"]] == [seeded.account_id]
    assert len(_logs(db_session, "accounts_list")) == 1


# ---------------------------- listings ----------------------------
def test_list_listings_is_read_only(make_client, db_session, seed_account):
    seeded = seed_account()
    client = make_client(_ebay)

    resp = client.get(
        f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/listings", params={"q": "blue", "page_size": 10}
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert [i["remote_id"] for i in body["items"]] == ["O-S2"]
    assert body["total"] == 1 and body["remote_total"] == 2
    assert db_session.scalars(select(SyncLog)).all() == []


def test_listings_unknown_account_is_404(make_client):
    resp = make_client(_no_network).get("/api/v1/marketplaces/ebay/accounts/999/listings")
    assert resp.status_code == 404


def test_snapshot_then_create(make_client, db_session, seed_account):
    seeded = seed_account()
    client = make_client(_ebay)
    base = f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}"

    assert client.post(f"{base}/listings/snapshot").json()["saved"] == 2
    resp = client.post(f"{base}/mapping", json={"action": "create", "remote_id": "O-S1"})

    assert resp.status_code == 200, resp.text
    result = resp.json()["result"]
    db_session.expire_all()
    assert db_session.get(Product, result["product_id"]).name == "Red shoe"
    assert _logs(db_session, "mapping_create")[0].idempotency_key == f"ebay/{seeded.account_id}/O-S1"


# ---------------------------- mapping ----------------------------
def _product(db_session, sku):
    p = Product(sku=sku, name=sku, price=Decimal("1"), quantity=3)
    db_session.add(p)
    db_session.commit()
    return p


def test_link_by_sku_conflict_is_409_and_logged(make_client, db_session, seed_account):
    seeded = seed_account()
    old = _product(db_session, "OLD")
    _product(db_session, "S1")
    db_session.add(ListingMapping(provider="ebay", marketplace_account_id=seeded.account_id, remote_id="O-S1",
                                  remote_sku="S1", product_id=old.id))
    db_session.commit()

    resp = make_client(_no_network).post(
        f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/mapping",
        json={"action": "link_by_sku", "remote_sku": "S1", "remote_id": "O-S1"},
    )

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"
    logs = _logs(db_session, "mapping_link_by_sku")
    assert [(l.outcome, l.error_code, l.idempotency_key) for l in logs] == [
        ("fail", "conflict", f"ebay/{seeded.account_id}/S1")
    ]


def test_bulk_link_dry_run(make_client, db_session, seed_account):
    seeded = seed_account()
    _product(db_session, "S1")

    resp = make_client(_no_network).post(
        f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/mapping",
        json={"action": "bulk_link_by_sku", "dry_run": True, "items": [{"remote_sku": "S1"}, {"remote_sku": "NOPE"}]},
    )

    body = resp.json()["result"]
    assert (body["linked"], body["total"], body["dry_run"]) == (0, 2, True)
    assert [r["status"] for r in body["results"]] == ["would_link", "not_found"]
    db_session.expire_all()
    assert db_session.scalars(select(ListingMapping)).all() == []


def test_manual_link_and_ignore(make_client, db_session, seed_account):
    seeded = seed_account()
    p = _product(db_session, "S1")
    client = make_client(_no_network)
    url = f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/mapping"

    resp = client.post(url, json={"action": "link", "product_id": p.id, "remote_id": "O-S1"})
    assert resp.status_code == 200
    assert resp.json()["result"]["product_id"] == p.id

    first = client.post(url, json={"action": "ignore", "remote_id": "O-S9"}).json()["result"]
    second = client.post(url, json={"action": "ignore", "remote_id": "O-S9"}).json()["result"]
    assert (first["already_ignored"], second["already_ignored"]) == (False, True)


@pytest.mark.parametrize(
    "body",
    [{"action": "explode"}, {"action": "link", "remote_id": "x"}, {"action": "ignore"}],
)
def test_invalid_mapping_body_is_400(make_client, seed_account, body):
    seeded = seed_account()
    resp = make_client(_no_network).post(f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/mapping", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "bad_request"


# ---------------------------- migrate ----------------------------
def test_migrate_input_errors(make_client, seed_account):
    seeded = seed_account()
    client = make_client(_no_network)

    resp = client.post(MIGRATE, json={"listing_ids": ["1"]})
    assert (resp.status_code, resp.json()["error"]["code"]) == (400, "missing_account_id")

    resp = client.post(MIGRATE, params={"account_id": seeded.account_id}, content=b"{nope",
                       headers={"Content-Type": "application/json"})
    assert (resp.status_code, resp.json()["error"]["code"]) == (400, "bad_json")

    resp = client.post(MIGRATE, params={"account_id": seeded.account_id}, json={"item_ids_csv": " , "})
    assert (resp.status_code, resp.json()["error"]["code"]) == (400, "no_listing_ids")


def test_migrate_account_preconditions(make_client, seed_account):
    no_token = seed_account(with_token=False)
    client = make_client(_no_network)

    resp = client.post(MIGRATE, params={"account_id": 999}, json={"listing_ids": ["1"]})
    assert resp.status_code == 404

    resp = client.post(MIGRATE, params={"account_id": no_token.account_id}, json={"listing_ids": ["1"]})
    assert (resp.status_code, resp.json()["error"]["code"]) == (424, "token_missing")


def test_migrate_runs_and_commits_audit_row(make_client, db_session, seed_account):
    seeded = seed_account()
    client = make_client(_ebay)

    resp = client.post(
        MIGRATE,
        params={"account_id": seeded.account_id},
        json={"item_ids_csv": "a,b,c", "batch_size": 2, "max_batches": 5},
    )

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert (body["migrated"], body["failed"], body["batch_size"], body["batches_processed"]) == (3, 0, 2, 2)
    assert _logs(db_session, "inventory_migrate")[0].details["batchesProcessed"] == 2


def test_migrate_dry_run(make_client, seed_account):
    seeded = seed_account()
    resp = make_client(_no_network).post(
        MIGRATE, params={"account_id": seeded.account_id}, json={"dry_run": True, "listing_ids": ["a", "b", "c"], "batch_size": 500}
    )
    assert resp.json() == {
        "dry_run": True,
        "listing_count": 3,
        "batch_size": 50,
        "batches": 1,
        "sample_payload_first_batch": {"listingIds": ["a", "b", "c"]},
    }


# ---------------------------- stock ----------------------------
def test_stock_push_failure_is_502_and_logged(make_client, db_session, seed_account):
    seeded = seed_account()

    resp = make_client(_ebay).post(
        f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/stock/push",
        json={"items": [{"sku": "S1", "quantity": 2}]},
    )

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "stock_update_failed"
    assert [l.outcome for l in _logs(db_session, "stock_push")] == ["fail"]


def test_stock_push_too_many_items(make_client, seed_account):
    seeded = seed_account()
    items = [{"sku": f"S{i}", "quantity": 1} for i in range(26)]
    resp = make_client(_no_network).post(
        f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/stock/push", json={"items": items}
    )
    assert (resp.status_code, resp.json()["error"]["code"]) == (400, "too_many_items")


def test_stock_mismatches(make_client, db_session, seed_account):
    seeded = seed_account()
    p = _product(db_session, "S1")
    db_session.add(ListingMapping(provider="ebay", marketplace_account_id=seeded.account_id, remote_id="O-S1",
                                  remote_sku="S1", product_id=p.id))
    db_session.commit()

    resp = make_client(_ebay).get(f"/api/v1/marketplaces/ebay/accounts/{seeded.account_id}/stock/mismatches")

    assert resp.json() == {"items": [{"sku": "S1", "quantity": 3}]}
