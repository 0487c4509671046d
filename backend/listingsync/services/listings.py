# listingsync/services/listings.py
from __future__ import annotations

"""
Listing reconciliation:
- fetch one page of remote listings (inventory_item -> offers per SKU)
- decorate them with mapping state from marketplace_products_map
- linking primitives: exact-SKU auto link, manual link, create, ignore

Auto link never guesses: zero matches is not_found, several matches is
multiple_matches, and a SKU already mapped to another product is conflict.
All of them land in needs_review and nothing is written for them.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Literal, Optional, Sequence

import httpx
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.errors import APIError
from listingsync.data.models.listings import (
    SYNC_FAILED,
    SYNC_OK,
    SYNC_UNMAPPED,
    ListingIgnore,
    ListingMapping,
    MarketplaceListing,
)
from listingsync.data.models.marketplace import MarketplaceAccount, OAuthToken
from listingsync.providers.ebay.client import EbayClient
from listingsync.providers.ebay.schemas import InventoryPage, OfferPage, is_invalid_sku, parse_json
from listingsync.services.catalog import CatalogError, CatalogService, NewProduct
from listingsync.services.credentials import CredentialStore, require_account_and_token
from listingsync.services.ebay_oauth import TokenRefresher
from listingsync.services.http_retry import RetryPolicy

logger = logging.getLogger("lsync.listings")

PROVIDER = "ebay"
StatusFilter = Literal["all", "ok", "pending", "failed", "unmapped"]

MATCH_LINKED = "ok"
MATCH_WOULD_LINK = "would_link"
MATCH_NOT_FOUND = "not_found"
MATCH_MULTIPLE = "multiple_matches"
MATCH_CONFLICT = "conflict"
MATCH_BAD_ITEM = "bad_item"
NEEDS_REVIEW = (MATCH_MULTIPLE, MATCH_NOT_FOUND, MATCH_CONFLICT)

BULK_RESULTS_LIMIT = 50


# --------------------------- shapes ---------------------------


@dataclass
class RemoteListing:
    remote_id: str
    remote_sku: Optional[str]
    title: str
    price_amount: Optional[Decimal]
    price_currency: Optional[str]
    listing_status: Optional[str]
    qty_remote: Optional[int]


@dataclass
class RemotePage:
    listings: list[RemoteListing]
    remote_total: int
    processed_skus: int
    skipped_skus: int


@dataclass
class ListingView:
    remote_id: str
    remote_sku: Optional[str]
    title: str
    price_amount: Optional[Decimal]
    price_currency: Optional[str]
    listing_status: Optional[str]
    product_id: Optional[int]
    sync_status: str
    is_mapped: bool
    qty_remote: Optional[int]
    qty_app: Optional[int]

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["price_amount"] = float(self.price_amount) if self.price_amount is not None else None
        return d


@dataclass
class ListingPage:
    items: list[ListingView]
    total: int
    page: int
    page_size: int
    remote_total: int
    processed_skus: int
    skipped_skus: int


@dataclass(frozen=True)
class ListingFilters:
    q: Optional[str] = None
    status: StatusFilter = "all"
    only_unmapped: bool = False


@dataclass(frozen=True)
class LinkCandidate:
    remote_sku: Optional[str]
    remote_id: Optional[str] = None


@dataclass
class LinkResult:
    remote_sku: Optional[str]
    status: str
    product_id: Optional[int] = None
    remote_id: Optional[str] = None
    candidates: Optional[list[dict[str, Any]]] = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None or k in ("remote_sku", "status")}


@dataclass
class AutoLinkResult:
    linked: int
    total: int
    needs_review: list[LinkResult] = field(default_factory=list)
    results: list[LinkResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "linked": self.linked,
            "total": self.total,
            "needs_review": [r.as_dict() for r in self.needs_review],
            "results": [r.as_dict() for r in self.results[:BULK_RESULTS_LIMIT]],
        }


@dataclass
class MappingOutcome:
    remote_id: Optional[str]
    remote_sku: Optional[str]
    product_id: Optional[int]
    sync_status: str
    created: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# --------------------------- remote fetch ---------------------------


async def fetch_remote_page(
    client: EbayClient,
    refresher: TokenRefresher,
    account: MarketplaceAccount,
    token: OAuthToken,
    *,
    limit: int,
    offset: int,
    max_offers_per_sku: int,
    concurrency: int,
) -> RemotePage:
    """One inventory page, then offers per SKU with bounded concurrency."""
    access_token = token.access_token
    resp = await client.inventory_items(access_token, limit=limit, offset=offset)
    if resp.status_code == 401:
        logger.warning("inventory 401 account_id=%s; refreshing", account.id)
        new_token = await refresher.refresh()
        if not new_token:
            raise APIError("token_expired", "eBay token expired and could not be refreshed.", 401)
        access_token = new_token
        resp = await client.inventory_items(access_token, limit=limit, offset=offset)

    if resp.status_code >= 400:
        logger.error("inventory error account_id=%s status=%s body=%s", account.id, resp.status_code, resp.text[:1000])
        raise APIError(
            "inventory_error",
            "eBay inventory request failed.",
            502,
            {"provider_status": resp.status_code, "excerpt": resp.text[:200]},
        )
    data = parse_json(resp.text)
    if not isinstance(data, dict):
        raise APIError("invalid_json_inventory", "eBay returned an unreadable inventory page.", 502, {"excerpt": resp.text[:200]})

    inv = InventoryPage.model_validate(data)
    by_sku = {it.sku: it for it in inv.inventoryItems if it.sku}
    skus = list(by_sku.keys())
    if not skus:
        return RemotePage(listings=[], remote_total=int(inv.total or 0), processed_skus=0, skipped_skus=0)

    sem = asyncio.Semaphore(max(1, concurrency))

    async def _offers(sku: str) -> list:
        async with sem:
            r = await client.offers_for_sku(access_token, sku, limit=max_offers_per_sku)
        if is_invalid_sku(r.status_code, r.text):
            logger.info("offer lookup skipped invalid sku=%s", sku)
            raise LookupError(sku)
        if r.status_code >= 400:
            logger.warning("offer lookup failed sku=%s status=%s body=%s", sku, r.status_code, r.text[:200])
            raise LookupError(sku)
        page = OfferPage.model_validate(parse_json(r.text) or {})
        return page.offers

    settled = await asyncio.gather(*(_offers(s) for s in skus), return_exceptions=True)

    listings: list[RemoteListing] = []
    skipped = 0
    for sku, res in zip(skus, settled):
        if isinstance(res, BaseException):
            if not isinstance(res, Exception):
                raise res
            skipped += 1
            continue
        item = by_sku[sku]
        for offer in res:
            if not offer.offerId:
                continue
            qty = offer.available_quantity if offer.available_quantity is not None else item.quantity
            listings.append(
                RemoteListing(
                    remote_id=offer.offerId,
                    remote_sku=offer.sku or sku,
                    title=item.title or offer.listingDescription or "",
                    price_amount=offer.price_amount,
                    price_currency=offer.price_currency or account.currency,
                    listing_status=offer.listing_status or offer.status or "UNKNOWN",
                    qty_remote=qty,
                )
            )

    logger.info(
        "remote page account_id=%s offset=%s skus=%s offers=%s skipped=%s",
        account.id, offset, len(skus), len(listings), skipped,
    )
    return RemotePage(
        listings=listings,
        remote_total=int(inv.total if inv.total is not None else len(skus)),
        processed_skus=len(skus),
        skipped_skus=skipped,
    )


# --------------------------- reconciliation ---------------------------


class ListingsService:
    def __init__(self, db: Session, settings: Settings, catalog: CatalogService):
        self.db = db
        self.settings = settings
        self.catalog = catalog

    # ---------- lookups ----------
    def _mappings_for(self, account_id: int, listings: Sequence[RemoteListing]) -> list[ListingMapping]:
        ids = [l.remote_id for l in listings if l.remote_id]
        skus = [l.remote_sku for l in listings if l.remote_sku]
        if not ids and not skus:
            return []
        q = select(ListingMapping).where(
            ListingMapping.marketplace_account_id == int(account_id),
            or_(ListingMapping.remote_id.in_(ids), ListingMapping.remote_sku.in_(skus)),
        )
        return list(self.db.execute(q).scalars().all())

    def _ignored_for(self, account_id: int) -> tuple[set[str], set[str]]:
        rows = self.db.execute(
            select(ListingIgnore.remote_id, ListingIgnore.remote_sku).where(
                ListingIgnore.marketplace_account_id == int(account_id)
            )
        ).all()
        return {r[0] for r in rows if r[0]}, {r[1] for r in rows if r[1]}

    def find_mapping(
        self, account_id: int, *, remote_id: Optional[str], remote_sku: Optional[str]
    ) -> ListingMapping | None:
        """By remote_id when one is given; the SKU fallback then only adopts rows with no remote_id."""
        base = select(ListingMapping).where(ListingMapping.marketplace_account_id == int(account_id))
        if remote_id:
            row = self.db.scalar(base.where(ListingMapping.remote_id == remote_id))
            if row is not None:
                return row
            if not remote_sku:
                return None
            base = base.where(ListingMapping.remote_id.is_(None))
        if remote_sku:
            return self.db.scalar(
                base.where(ListingMapping.remote_sku == remote_sku).order_by(ListingMapping.id.asc()).limit(1)
            )
        return None

    def find_snapshot(
        self, account_id: int, *, remote_id: Optional[str], remote_sku: Optional[str]
    ) -> MarketplaceListing | None:
        q = select(MarketplaceListing).where(
            MarketplaceListing.provider == PROVIDER,
            MarketplaceListing.marketplace_account_id == int(account_id),
        )
        if remote_id:
            q = q.where(MarketplaceListing.remote_id == remote_id)
        elif remote_sku:
            q = q.where(MarketplaceListing.remote_sku == remote_sku)
        else:
            return None
        return self.db.scalar(q.order_by(MarketplaceListing.id.asc()).limit(1))

    # ---------- listPage ----------
    def reconcile(
        self,
        account: MarketplaceAccount,
        remote: RemotePage,
        *,
        filters: ListingFilters,
        page: int,
        page_size: int,
    ) -> ListingPage:
        """Pure read: decorate a fetched page with mapping state and apply filters."""
        ign_ids, ign_skus = self._ignored_for(int(account.id))
        mappings = self._mappings_for(int(account.id), remote.listings)
        by_id = {m.remote_id: m for m in mappings if m.remote_id}
        by_sku: dict[str, ListingMapping] = {}
        for m in mappings:
            # SKU matches only stand in for rows not yet bound to a listing
            if m.remote_sku and not m.remote_id and m.remote_sku not in by_sku:
                by_sku[m.remote_sku] = m

        product_ids = {m.product_id for m in mappings if m.product_id is not None}
        qty_by_product: dict[int, Optional[int]] = {}
        for pid in product_ids:
            p = self.catalog.get(pid)
            qty_by_product[pid] = p.quantity if p is not None else None

        items: list[ListingView] = []
        for l in remote.listings:
            if l.remote_id in ign_ids or (l.remote_sku and l.remote_sku in ign_skus):
                continue
            m = by_id.get(l.remote_id) or (by_sku.get(l.remote_sku) if l.remote_sku else None)
            mapped = m is not None and m.product_id is not None
            status = m.sync_status if m is not None else SYNC_UNMAPPED
            items.append(
                ListingView(
                    remote_id=l.remote_id,
                    remote_sku=l.remote_sku,
                    title=l.title,
                    price_amount=l.price_amount,
                    price_currency=l.price_currency,
                    listing_status=l.listing_status,
                    product_id=m.product_id if m is not None else None,
                    sync_status=status,
                    is_mapped=mapped,
                    qty_remote=l.qty_remote,
                    qty_app=qty_by_product.get(m.product_id) if mapped else None,
                )
            )

        if filters.q:
            needle = filters.q.strip().lower()
            items = [
                it for it in items
                if needle in (it.remote_sku or "").lower() or needle in (it.title or "").lower()
            ]
        if filters.status and filters.status != "all":
            items = [it for it in items if it.sync_status == filters.status]
        if filters.only_unmapped:
            # stable: unmapped first, original order kept inside each group
            items.sort(key=lambda it: 0 if it.sync_status == SYNC_UNMAPPED else 1)

        return ListingPage(
            items=items,
            total=len(items),
            page=page,
            page_size=page_size,
            remote_total=remote.remote_total,
            processed_skus=remote.processed_skus,
            skipped_skus=remote.skipped_skus,
        )

    # ---------- snapshot ----------
    def save_snapshot(self, account: MarketplaceAccount, listings: Iterable[RemoteListing]) -> int:
        """Upsert fetched listings on (provider, account, remote_id)."""
        count = 0
        now = datetime.utcnow()
        for l in listings:
            row = self.db.scalar(
                select(MarketplaceListing).where(
                    MarketplaceListing.provider == PROVIDER,
                    MarketplaceListing.marketplace_account_id == int(account.id),
                    MarketplaceListing.remote_id == l.remote_id,
                )
            )
            if row is None:
                row = MarketplaceListing(
                    provider=PROVIDER, marketplace_account_id=int(account.id), remote_id=l.remote_id
                )
            row.remote_sku = l.remote_sku
            row.title = (l.title or "")[:512]
            row.price_amount = l.price_amount
            row.price_currency = l.price_currency
            row.listing_status = l.listing_status
            row.remote_quantity = l.qty_remote
            row.updated_at = now
            self.db.add(row)
            count += 1
        self.db.flush()
        return count

    # ---------- auto link ----------
    def _match_one(self, account_id: int, cand: LinkCandidate, *, dry_run: bool) -> LinkResult:
        sku = cand.remote_sku
        if not sku or not sku.strip():
            return LinkResult(remote_sku=None, status=MATCH_BAD_ITEM)

        matches = self.catalog.find_by_sku(sku)
        if not matches:
            return LinkResult(remote_sku=sku, status=MATCH_NOT_FOUND, remote_id=cand.remote_id)
        if len(matches) > 1:
            return LinkResult(
                remote_sku=sku,
                status=MATCH_MULTIPLE,
                remote_id=cand.remote_id,
                candidates=[{"id": int(p.id), "sku": p.sku, "name": p.name} for p in matches[:10]],
            )
        product = matches[0]

        remote_id = cand.remote_id
        if not remote_id:
            snap = self.find_snapshot(account_id, remote_id=None, remote_sku=sku)
            remote_id = snap.remote_id if snap is not None else None

        existing = self.find_mapping(account_id, remote_id=remote_id, remote_sku=sku)
        if existing is not None and existing.product_id is not None and existing.product_id != product.id:
            return LinkResult(remote_sku=sku, status=MATCH_CONFLICT, remote_id=remote_id, product_id=existing.product_id)

        if dry_run:
            return LinkResult(remote_sku=sku, status=MATCH_WOULD_LINK, remote_id=remote_id, product_id=int(product.id))

        if existing is None:
            existing = ListingMapping(provider=PROVIDER, marketplace_account_id=int(account_id))
        existing.remote_id = existing.remote_id or remote_id
        existing.remote_sku = sku
        existing.product_id = int(product.id)
        existing.sync_status = SYNC_OK
        existing.updated_at = datetime.utcnow()
        self.db.add(existing)
        self.db.flush()
        return LinkResult(remote_sku=sku, status=MATCH_LINKED, remote_id=existing.remote_id, product_id=int(product.id))

    def auto_link_by_sku(
        self, account_id: int, candidates: Sequence[LinkCandidate], *, dry_run: bool = False
    ) -> AutoLinkResult:
        results = [self._match_one(account_id, c, dry_run=dry_run) for c in candidates]
        linked = sum(1 for r in results if r.status == MATCH_LINKED)
        review = [r for r in results if r.status in NEEDS_REVIEW]
        logger.info(
            "auto link account_id=%s total=%s linked=%s review=%s dry_run=%s",
            account_id, len(results), linked, len(review), dry_run,
        )
        return AutoLinkResult(linked=linked, total=len(candidates), needs_review=review, results=results)

    def link_by_sku(self, account_id: int, remote_sku: str, *, remote_id: Optional[str] = None) -> LinkResult:
        return self._match_one(account_id, LinkCandidate(remote_sku=remote_sku, remote_id=remote_id), dry_run=False)

    # ---------- manual link ----------
    def link_manual(
        self,
        account_id: int,
        *,
        product_id: int,
        remote_id: Optional[str] = None,
        remote_sku: Optional[str] = None,
    ) -> MappingOutcome:
        """Creates or overwrites the mapping; the terminal fallback when auto link cannot decide."""
        if not remote_id and not remote_sku:
            raise APIError("bad_request", "remote_id or remote_sku is required.", 400)
        if self.catalog.get(product_id) is None:
            raise APIError("product_not_found", f"Product {product_id} not found.", 404)

        snap = self.find_snapshot(account_id, remote_id=remote_id, remote_sku=remote_sku)
        if snap is not None:
            remote_id = remote_id or snap.remote_id
            remote_sku = remote_sku or snap.remote_sku

        row = self.find_mapping(account_id, remote_id=remote_id, remote_sku=remote_sku)
        created = row is None
        if row is None:
            row = ListingMapping(provider=PROVIDER, marketplace_account_id=int(account_id))
        row.remote_id = remote_id or row.remote_id
        row.remote_sku = remote_sku or row.remote_sku
        row.product_id = int(product_id)
        row.sync_status = SYNC_OK
        row.updated_at = datetime.utcnow()
        self.db.add(row)
        self.db.flush()
        logger.info(
            "manual link account_id=%s remote_id=%s sku=%s product_id=%s created=%s",
            account_id, row.remote_id, row.remote_sku, product_id, created,
        )
        return MappingOutcome(row.remote_id, row.remote_sku, row.product_id, row.sync_status, created=created)

    # ---------- ignore ----------
    def ignore(
        self,
        account_id: int,
        *,
        remote_id: Optional[str] = None,
        remote_sku: Optional[str] = None,
        reason: str = "manual_ignore",
    ) -> bool:
        """Hide a listing from future views. Returns False when it was already ignored."""
        if not remote_id and not remote_sku:
            raise APIError("bad_request", "remote_id or remote_sku is required.", 400)
        conds = []
        if remote_id:
            conds.append(ListingIgnore.remote_id == remote_id)
        if remote_sku:
            conds.append(ListingIgnore.remote_sku == remote_sku)
        exists = self.db.scalar(
            select(ListingIgnore.id).where(ListingIgnore.marketplace_account_id == int(account_id), or_(*conds))
        )
        if exists:
            return False
        self.db.add(
            ListingIgnore(
                provider=PROVIDER,
                marketplace_account_id=int(account_id),
                remote_id=remote_id,
                remote_sku=remote_sku,
                reason=reason,
            )
        )
        self.db.flush()
        return True

    # ---------- create ----------
    def create(
        self, account_id: int, *, remote_id: Optional[str] = None, remote_sku: Optional[str] = None
    ) -> MappingOutcome:
        """
        Materialize an internal product from a snapshotted listing through the
        catalog and record the resulting sync_status (ok, or failed when the
        catalog refuses).
        """
        if not remote_id and not remote_sku:
            raise APIError("bad_request", "remote_id or remote_sku is required.", 400)
        snap = self.find_snapshot(account_id, remote_id=remote_id, remote_sku=remote_sku)
        if snap is None:
            raise APIError("listing_not_found", "Listing not found; snapshot the page first.", 404)

        existing = self.find_mapping(account_id, remote_id=snap.remote_id, remote_sku=snap.remote_sku)
        if existing is not None and existing.product_id is not None:
            return MappingOutcome(existing.remote_id, existing.remote_sku, existing.product_id, existing.sync_status)

        row = existing or ListingMapping(provider=PROVIDER, marketplace_account_id=int(account_id))
        row.remote_id = snap.remote_id
        row.remote_sku = snap.remote_sku
        try:
            product = self.catalog.create(
                NewProduct(sku=snap.remote_sku, name=snap.title, price=snap.price_amount, quantity=snap.remote_quantity)
            )
        except CatalogError as e:
            logger.warning("catalog create failed account_id=%s remote_id=%s err=%s", account_id, snap.remote_id, e)
            row.product_id = None
            row.sync_status = SYNC_FAILED
        else:
            row.product_id = int(product.id)
            row.sync_status = SYNC_OK
        row.updated_at = datetime.utcnow()
        self.db.add(row)
        self.db.flush()
        return MappingOutcome(row.remote_id, row.remote_sku, row.product_id, row.sync_status, created=row.product_id is not None)


async def load_remote_page(
    store: CredentialStore,
    http: httpx.AsyncClient,
    account_id: int,
    *,
    page: int,
    page_size: int,
    retry: RetryPolicy | None = None,
) -> tuple[MarketplaceAccount, RemotePage]:
    """Resolve account and token, then fetch one remote page; page is 1-based."""
    settings = store.settings
    account, token = require_account_and_token(store, account_id)
    size = max(1, min(int(page_size), settings.LISTINGS_MAX_PAGE_SIZE))
    offset = (max(1, int(page)) - 1) * size
    client = EbayClient(http, environment=account.environment, retry=retry)
    refresher = TokenRefresher(store, client, account, token)
    remote = await fetch_remote_page(
        client,
        refresher,
        account,
        token,
        limit=size,
        offset=offset,
        max_offers_per_sku=settings.LISTINGS_MAX_OFFERS_PER_SKU,
        concurrency=settings.LISTINGS_OFFERS_CONCURRENCY,
    )
    return account, remote
