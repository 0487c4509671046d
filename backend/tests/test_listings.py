from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from listingsync.core.errors import APIError
from listingsync.data.models import ListingMapping, MarketplaceListing, Product
from listingsync.data.models.listings import SYNC_FAILED, SYNC_OK
from listingsync.services.catalog import CatalogError, SqlCatalogService
from listingsync.services.credentials import CredentialStore
from listingsync.services.listings import (
    MATCH_CONFLICT,
    MATCH_LINKED,
    MATCH_MULTIPLE,
    MATCH_NOT_FOUND,
    MATCH_WOULD_LINK,
    LinkCandidate,
    ListingFilters,
    ListingsService,
    RemoteListing,
    RemotePage,
    load_remote_page,
)


def _remote(remote_id: str, sku: str | None, title: str = "Item", qty: int | None = 1) -> RemoteListing:
    return RemoteListing(
        remote_id=remote_id,
        remote_sku=sku,
        title=title,
        price_amount=Decimal("9.99"),
        price_currency="EUR",
        listing_status="ACTIVE",
        qty_remote=qty,
    )


def _page(*listings: RemoteListing) -> RemotePage:
    return RemotePage(listings=list(listings), remote_total=len(listings), processed_skus=len(listings), skipped_skus=0)


def _product(db, sku: str | None, name: str = "Product", qty: int | None = 5) -> Product:
    p = Product(sku=sku, name=name, price=Decimal("1"), quantity=qty)
    db.add(p)
    db.flush()
    return p


@pytest.fixture
def service(db_session, settings) -> ListingsService:
    return ListingsService(db_session, settings, SqlCatalogService(db_session))


@pytest.fixture
def account(db_session, settings, seed_account):
    seeded = seed_account()
    return CredentialStore(db_session, settings).get_active_account(seeded.account_id)


def _mapping_count(db) -> int:
    return db.scalar(select(func.count()).select_from(ListingMapping))


# ---------------------------- auto link ----------------------------
def test_single_exact_match_links(db_session, service, account):
    product = _product(db_session, "SKU-1")

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-1", remote_id="R1")])

    assert res.linked == 1
    assert res.needs_review == []
    row = db_session.scalar(select(ListingMapping))
    assert (row.remote_id, row.remote_sku, row.product_id, row.sync_status) == ("R1", "SKU-1", product.id, SYNC_OK)


def test_multiple_matches_never_write(db_session, service, account):
    _product(db_session, "DUP", name="a")
    _product(db_session, "DUP", name="b")

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="DUP")])

    assert res.linked == 0
    assert [r.status for r in res.needs_review] == [MATCH_MULTIPLE]
    assert len(res.needs_review[0].candidates) == 2
    assert _mapping_count(db_session) == 0


def test_not_found_and_case_sensitive_match(db_session, service, account):
    _product(db_session, "abc")

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="ABC"), LinkCandidate(remote_sku=" abc")])

    assert [r.status for r in res.results] == [MATCH_NOT_FOUND, MATCH_NOT_FOUND]
    assert _mapping_count(db_session) == 0


def test_conflicting_prior_mapping_is_kept(db_session, service, account):
    old = _product(db_session, "OTHER")
    _product(db_session, "SKU-9")
    db_session.add(
        ListingMapping(provider="ebay", marketplace_account_id=account.id, remote_id="R9", remote_sku="SKU-9",
                       product_id=old.id)
    )
    db_session.flush()

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-9", remote_id="R9")])

    assert res.results[0].status == MATCH_CONFLICT
    assert db_session.scalar(select(ListingMapping.product_id)) == old.id


def test_dry_run_reports_would_link_without_mutation(db_session, service, account):
    _product(db_session, "SKU-1")

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-1")], dry_run=True)

    assert res.linked == 0
    assert res.results[0].status == MATCH_WOULD_LINK
    assert _mapping_count(db_session) == 0


def test_relinking_same_product_is_idempotent(db_session, service, account):
    _product(db_session, "SKU-1")
    service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-1", remote_id="R1")])
    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-1", remote_id="R1")])

    assert res.results[0].status == MATCH_LINKED
    assert _mapping_count(db_session) == 1


def test_bulk_results_are_capped(db_session, service, account):
    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku=f"S{i}") for i in range(60)])
    body = res.as_dict()
    assert body["total"] == 60
    assert len(body["results"]) == 50
    assert len(body["needs_review"]) == 60


# ---------------------------- manual link / ignore / create ----------------------------
def test_manual_link_overwrites_existing(db_session, service, account):
    a = _product(db_session, "A")
    b = _product(db_session, "B")
    service.link_manual(account.id, product_id=a.id, remote_id="R1", remote_sku="SKU-X")

    out = service.link_manual(account.id, product_id=b.id, remote_id="R1")

    assert out.product_id == b.id
    assert out.created is False
    assert _mapping_count(db_session) == 1



def test_manual_link_keeps_sibling_listing_with_same_sku(db_session, service, account):
    p1 = _product(db_session, "P1")
    p2 = _product(db_session, "P2")

    service.link_manual(account.id, product_id=p1.id, remote_id="R1", remote_sku="SKU-A")
    service.link_manual(account.id, product_id=p2.id, remote_id="R2", remote_sku="SKU-A")

    rows = {m.remote_id: m.product_id for m in db_session.scalars(select(ListingMapping))}
    assert rows == {"R1": p1.id, "R2": p2.id}


def test_manual_link_adopts_unbound_sku_mapping(db_session, service, account):
    a = _product(db_session, "A")
    b = _product(db_session, "B")
    service.link_manual(account.id, product_id=a.id, remote_sku="SKU-X")

    out = service.link_manual(account.id, product_id=b.id, remote_id="R7", remote_sku="SKU-X")

    assert (out.remote_id, out.product_id, out.created) == ("R7", b.id, False)
    assert _mapping_count(db_session) == 1


def test_auto_link_does_not_take_over_sibling_listing(db_session, service, account):
    old = _product(db_session, "OLD")
    _product(db_session, "SKU-A")
    service.link_manual(account.id, product_id=old.id, remote_id="R1", remote_sku="SKU-A")

    res = service.auto_link_by_sku(account.id, [LinkCandidate(remote_sku="SKU-A", remote_id="R2")])

    assert res.results[0].status == MATCH_LINKED
    rows = {m.remote_id: m.product_id for m in db_session.scalars(select(ListingMapping))}
    assert rows["R1"] == old.id
    assert rows["R2"] != old.id


def test_reconcile_does_not_borrow_sibling_mapping(db_session, service, account):
    p = _product(db_session, "SKU-A")
    service.link_manual(account.id, product_id=p.id, remote_id="R1", remote_sku="SKU-A")

    view = service.reconcile(
        account, _page(_remote("R1", "SKU-A"), _remote("R2", "SKU-A")), filters=ListingFilters(), page=1, page_size=50
    )

    by_id = {it.remote_id: it for it in view.items}
    assert by_id["R1"].is_mapped is True
    assert by_id["R2"].is_mapped is False


def test_manual_link_unknown_product(db_session, service, account):
    with pytest.raises(APIError) as exc:
        service.link_manual(account.id, product_id=12345, remote_id="R1")
    assert exc.value.code == "product_not_found"


def test_ignored_listings_disappear_from_page(db_session, service, account):
    assert service.ignore(account.id, remote_id="R2") is True
    assert service.ignore(account.id, remote_id="R2") is False

    view = service.reconcile(
        account, _page(_remote("R1", "S1"), _remote("R2", "S2")), filters=ListingFilters(), page=1, page_size=50
    )
    assert [it.remote_id for it in view.items] == ["R1"]


def test_create_from_snapshot(db_session, service, account):
    service.save_snapshot(account, [_remote("R5", "NEW-SKU", title="Blue mug", qty=4)])

    out = service.create(account.id, remote_id="R5")

    product = db_session.get(Product, out.product_id)
    assert (product.sku, product.name, product.quantity) == ("NEW-SKU", "Blue mug", 4)
    assert out.sync_status == SYNC_OK


def test_create_records_failed_when_catalog_refuses(db_session, settings, account):
    class RefusingCatalog(SqlCatalogService):
        def create(self, data):
            raise CatalogError("nope")

    service = ListingsService(db_session, settings, RefusingCatalog(db_session))
    service.save_snapshot(account, [_remote("R6", "S6")])

    out = service.create(account.id, remote_id="R6")

    assert out.product_id is None
    assert out.sync_status == SYNC_FAILED


def test_create_requires_snapshot(service, account):
    with pytest.raises(APIError) as exc:
        service.create(account.id, remote_id="missing")
    assert (exc.value.code, exc.value.status_code) == ("listing_not_found", 404)


# ---------------------------- reconciliation view ----------------------------
def test_reconcile_decorates_and_filters(db_session, service, account):
    p = _product(db_session, "S1", qty=7)
    service.link_manual(account.id, product_id=p.id, remote_id="R1", remote_sku="S1")
    remote = _page(_remote("R1", "S1", title="Red shoe", qty=3), _remote("R2", "S2", title="Blue shoe"))

    view = service.reconcile(account, remote, filters=ListingFilters(), page=1, page_size=50)
    by_id = {it.remote_id: it for it in view.items}
    assert by_id["R1"].is_mapped and by_id["R1"].qty_app == 7 and by_id["R1"].qty_remote == 3
    assert by_id["R2"].sync_status == "unmapped" and by_id["R2"].product_id is None

    view = service.reconcile(account, remote, filters=ListingFilters(q="BLUE"), page=1, page_size=50)
    assert [it.remote_id for it in view.items] == ["R2"]

    view = service.reconcile(account, remote, filters=ListingFilters(only_unmapped=True), page=1, page_size=50)
    assert [it.remote_id for it in view.items] == ["R2", "R1"]

    view = service.reconcile(account, remote, filters=ListingFilters(status="ok"), page=1, page_size=50)
    assert [it.remote_id for it in view.items] == ["R1"]


def test_snapshot_upserts_on_remote_id(db_session, service, account):
    service.save_snapshot(account, [_remote("R1", "S1", title="v1")])
    service.save_snapshot(account, [_remote("R1", "S1", title="v2")])

    rows = db_session.execute(select(MarketplaceListing)).scalars().all()
    assert [r.title for r in rows] == ["v2"]


# ---------------------------- remote fetch ----------------------------
def _inventory_handler(calls: list[str], *, first_inventory_status: int = 200):
    state = {"inventory": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append(f"{request.method} {path} {request.headers.get('Authorization')}")
        if path.endswith("/oauth2/token"):
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 7200})
        if path.endswith("/inventory_item"):
            state["inventory"] += 1
            if state["inventory"] == 1 and first_inventory_status != 200:
                return httpx.Response(first_inventory_status, json={"errors": [{"errorId": 1001}]})
            return httpx.Response(
                200,
                json={
                    "total": 3,
                    "inventoryItems": [
                        {"sku": "S1", "product": {"title": "One"},
                         "availability": {"shipToLocationAvailability": {"quantity": 2}}},
                        {"sku": "BAD", "product": {"title": "Bad"}},
                        {"sku": "S3", "product": {"title": "Three"}},
                    ],
                },
            )
        if path.endswith("/offer"):
            sku = request.url.params["sku"]
            if sku == "BAD":
                return httpx.Response(400, json={"errors": [{"errorId": 25707, "message": "Invalid SKU"}]})
            return httpx.Response(
                200,
                json={
                    "offers": [
                        {
                            "offerId": f"O-{sku}",
                            "sku": sku,
                            "availableQuantity": 4,
                            "pricingSummary": {"price": {"value": "12.50", "currency": "EUR"}},
                            "listing": {"listingStatus": "ACTIVE"},
                        }
                    ]
                },
            )
        return httpx.Response(404)

    return handler


@pytest.mark.anyio
async def test_load_remote_page_skips_invalid_skus(db_session, settings, seed_account, retry):
    seeded = seed_account()
    calls: list[str] = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_inventory_handler(calls))) as http:
        account, remote = await load_remote_page(
            CredentialStore(db_session, settings), http, seeded.account_id, page=1, page_size=10, retry=retry
        )

    assert [l.remote_id for l in remote.listings] == ["O-S1", "O-S3"]
    assert (remote.remote_total, remote.processed_skus, remote.skipped_skus) == (3, 3, 1)
    first = remote.listings[0]
    assert (first.title, first.qty_remote, first.price_amount) == ("One", 4, Decimal("12.50"))


@pytest.mark.anyio
async def test_load_remote_page_refreshes_once_on_401(db_session, settings, seed_account, retry):
    seeded = seed_account(access_token="stale")
    calls: list[str] = []
    handler = _inventory_handler(calls, first_inventory_status=401)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        _, remote = await load_remote_page(
            CredentialStore(db_session, settings), http, seeded.account_id, page=1, page_size=10, retry=retry
        )

    inventory_calls = [c for c in calls if "/inventory_item" in c]
    assert inventory_calls == [
        "GET /sell/inventory/v1/inventory_item Bearer stale",
        "GET /sell/inventory/v1/inventory_item Bearer fresh",
    ]
    assert sum(1 for c in calls if c.startswith("POST /identity")) == 1
    assert len(remote.listings) == 2


@pytest.mark.anyio
async def test_load_remote_page_token_expired_when_refresh_fails(db_session, settings, seed_account, retry):
    seeded = seed_account(refresh_token=None)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"errors": [{"errorId": 1001}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(APIError) as exc:
            await load_remote_page(
                CredentialStore(db_session, settings), http, seeded.account_id, page=1, page_size=10, retry=retry
            )
    assert (exc.value.code, exc.value.status_code) == ("token_expired", 401)
