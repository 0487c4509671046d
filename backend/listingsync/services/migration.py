# listingsync/services/migration.py
from __future__ import annotations

"""
Bulk inventory migration (bulk_migrate_listing).

Per batch, in input order and strictly sequentially:
  1. call through fetch_with_retry (429/5xx/transport retried there)
  2. 401 -> one token refresh, then one retry of the same batch; a failed
     refresh marks the batch token_expired and the run moves on
  3. 400 with errorId 25709 -> retry with Accept-Language en-US, then fr-FR
  4. other non-OK -> every listing of the batch FAILED with the provider errors
  5. OK -> itemized results from responses|results; a bare OK is governed by
     MigrationPolicy.assume_success_on_unitemized_response
One sync_logs row is appended per run, dry runs excepted.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from listingsync.core.config import Settings
from listingsync.core.metrics import MIGRATION_BATCHES, MIGRATION_DURATION, MIGRATION_LISTINGS
from listingsync.providers.ebay.client import EbayClient
from listingsync.providers.ebay.endpoints import BULK_MIGRATE_MAX_IDS
from listingsync.providers.ebay.schemas import is_missing_locale, parse_bulk_migrate_items, provider_errors
from listingsync.services.credentials import CredentialStore, require_account_and_token
from listingsync.services.ebay_oauth import TokenRefresher
from listingsync.services.http_retry import RetryPolicy
from listingsync.services.sync_log import outcome_for_counts, record_sync_event

logger = logging.getLogger("lsync.migrate")

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
OPERATION = "inventory_migrate"


# --------------------------- inputs ---------------------------


def collect_listing_ids(listing_ids: Any = None, item_ids_csv: Any = None) -> list[str]:
    """listing_ids then item_ids_csv, blanks dropped, de-duplicated keeping first occurrence."""
    ids: list[str] = []
    if isinstance(listing_ids, list):
        ids.extend(x.strip() for x in listing_ids if isinstance(x, str) and x.strip())
    if isinstance(item_ids_csv, str) and item_ids_csv.strip():
        ids.extend(s.strip() for s in item_ids_csv.split(",") if s.strip())
    return list(dict.fromkeys(ids))


def clamp_batch_size(value: Any, maximum: int = BULK_MIGRATE_MAX_IDS) -> int:
    maximum = max(1, min(int(maximum), BULK_MIGRATE_MAX_IDS))
    try:
        n = int(value) if value not in (None, "") else maximum
    except (TypeError, ValueError):
        n = maximum
    if n <= 0:
        n = maximum
    return max(1, min(n, maximum))


def clamp_max_batches(value: Any) -> Optional[int]:
    if value in (None, "", 0, False):
        return None
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 1


def partition(ids: Sequence[str], batch_size: int, max_batches: Optional[int] = None) -> list[list[str]]:
    """Sequential slices of batch_size, truncated to max_batches when set."""
    batches = [list(ids[i:i + batch_size]) for i in range(0, len(ids), batch_size)]
    if max_batches is not None:
        batches = batches[:max_batches]
    return batches


def planned_batches(count: int, batch_size: int, max_batches: Optional[int]) -> int:
    planned = math.ceil(count / batch_size) if count else 0
    return min(planned, max_batches) if max_batches is not None else planned


# --------------------------- results ---------------------------


@dataclass
class MigrationResult:
    listing_id: str
    status: str
    sku: Optional[str] = None
    offer_id: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "listingId": self.listing_id,
            "status": self.status,
            "sku": self.sku,
            "offerId": self.offer_id,
            "errors": self.errors,
        }


@dataclass
class MigrationSummary:
    batch_size: int
    results: list[MigrationResult] = field(default_factory=list)
    batches_processed: int = 0
    cancelled: bool = False

    @property
    def migrated(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == STATUS_FAILED)

    @property
    def total(self) -> int:
        return len(self.results)

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "migrated": self.migrated,
            "failed": self.failed,
            "total": self.total,
            "batch_size": self.batch_size,
            "batches_processed": self.batches_processed,
            "results": [r.as_dict() for r in self.results],
        }
        if self.cancelled:
            body["cancelled"] = True
        return body


@dataclass(frozen=True)
class MigrationPolicy:
    # a bare 2xx with no itemized array counts every listing of the batch as SUCCESS
    assume_success_on_unitemized_response: bool = True
    locale_fallbacks: tuple[str, ...] = ("en-US", "fr-FR")

    @classmethod
    def from_settings(cls, settings: Settings) -> "MigrationPolicy":
        return cls(assume_success_on_unitemized_response=settings.MIGRATION_ASSUME_SUCCESS_ON_UNITEMIZED)


def _fail_all(batch: Iterable[str], errors: list[dict[str, Any]]) -> list[MigrationResult]:
    return [MigrationResult(listing_id=lid, status=STATUS_FAILED, errors=errors) for lid in batch]


# --------------------------- engine ---------------------------


class MigrationEngine:
    def __init__(
        self,
        client: EbayClient,
        refresher: TokenRefresher,
        *,
        access_token: str,
        policy: MigrationPolicy | None = None,
    ):
        self.client = client
        self.refresher = refresher
        self.access_token = access_token
        self.policy = policy or MigrationPolicy()

    async def _call(self, batch: Sequence[str], accept_language: Optional[str] = None) -> httpx.Response:
        return await self.client.bulk_migrate(self.access_token, batch, accept_language=accept_language)

    async def process_batch(self, batch: Sequence[str]) -> list[MigrationResult]:
        try:
            resp = await self._call(batch)

            if resp.status_code == 401:
                new_token = await self.refresher.refresh()
                if not new_token:
                    logger.warning("batch token_expired size=%s", len(batch))
                    MIGRATION_BATCHES.labels(outcome="token_expired").inc()
                    return _fail_all(batch, [{"message": "token_expired"}])
                # applies to this retry and to every later batch
                self.access_token = new_token
                resp = await self._call(batch)

            if is_missing_locale(resp.status_code, resp.text):
                for lang in self.policy.locale_fallbacks:
                    logger.info("batch hit errorId 25709; retrying with Accept-Language=%s", lang)
                    resp = await self._call(batch, lang)
                    if not is_missing_locale(resp.status_code, resp.text):
                        break
        except httpx.TransportError as e:
            logger.error("batch transport failure size=%s err=%s", len(batch), e.__class__.__name__)
            MIGRATION_BATCHES.labels(outcome="transport_error").inc()
            return _fail_all(batch, [{"message": f"transport_error: {e.__class__.__name__}"}])

        if resp.status_code >= 300:
            logger.warning("batch failed status=%s body=%s", resp.status_code, resp.text[:1000])
            MIGRATION_BATCHES.labels(outcome="failed").inc()
            return _fail_all(batch, provider_errors(resp.text))

        items = parse_bulk_migrate_items(resp.text)
        MIGRATION_BATCHES.labels(outcome="ok").inc()
        if not items:
            if self.policy.assume_success_on_unitemized_response:
                return [MigrationResult(listing_id=lid, status=STATUS_SUCCESS) for lid in batch]
            return _fail_all(batch, [{"message": "no_itemized_result"}])

        return [
            MigrationResult(
                listing_id=it.listing_id or "unknown",
                status=STATUS_FAILED if it.failed else STATUS_SUCCESS,
                sku=it.sku,
                offer_id=it.offer_id,
                errors=it.errors if it.failed else None,
            )
            for it in items
        ]

    async def run(
        self,
        listing_ids: Sequence[str],
        *,
        batch_size: int,
        max_batches: Optional[int] = None,
        cancel: asyncio.Event | None = None,
    ) -> MigrationSummary:
        summary = MigrationSummary(batch_size=batch_size)
        for batch in partition(listing_ids, batch_size, max_batches):
            if cancel is not None and cancel.is_set():
                summary.cancelled = True
                logger.info("migration cancelled after %s batches", summary.batches_processed)
                break
            summary.results.extend(await self.process_batch(batch))
            summary.batches_processed += 1
        for r in summary.results:
            MIGRATION_LISTINGS.labels(status=r.status.lower()).inc()
        return summary


# --------------------------- entry point ---------------------------


@dataclass(frozen=True)
class MigrationRequest:
    account_id: int
    listing_ids: list[str]
    dry_run: bool = False
    batch_size: int = BULK_MIGRATE_MAX_IDS
    max_batches: Optional[int] = None


def dry_run_plan(req: MigrationRequest) -> dict[str, Any]:
    return {
        "dry_run": True,
        "listing_count": len(req.listing_ids),
        "batch_size": req.batch_size,
        "batches": planned_batches(len(req.listing_ids), req.batch_size, req.max_batches),
        "sample_payload_first_batch": {"listingIds": list(req.listing_ids[: req.batch_size])},
    }


async def run_migration(
    db: Session,
    settings: Settings,
    http: httpx.AsyncClient,
    req: MigrationRequest,
    *,
    retry: RetryPolicy | None = None,
    policy: MigrationPolicy | None = None,
    cancel: asyncio.Event | None = None,
    store: CredentialStore | None = None,
) -> dict[str, Any]:
    store = store or CredentialStore(db, settings)
    account, token = require_account_and_token(store, req.account_id)

    if req.dry_run:
        return dry_run_plan(req)

    client = EbayClient(http, environment=account.environment, retry=retry)
    refresher = TokenRefresher(store, client, account, token)
    engine = MigrationEngine(
        client,
        refresher,
        access_token=token.access_token,
        policy=policy or MigrationPolicy.from_settings(settings),
    )

    started = time.monotonic()
    summary = await engine.run(
        req.listing_ids, batch_size=req.batch_size, max_batches=req.max_batches, cancel=cancel
    )
    MIGRATION_DURATION.observe(time.monotonic() - started)

    metadata: dict[str, Any] = {
        "migrated": summary.migrated,
        "failed": summary.failed,
        "total": summary.total,
        "batchesProcessed": summary.batches_processed,
    }
    if summary.cancelled:
        metadata["cancelled"] = True
    record_sync_event(
        db,
        account_id=int(account.id),
        operation=OPERATION,
        outcome=outcome_for_counts(summary.migrated, summary.failed),
        http_status=200,
        error_message=f"{summary.failed} failed" if summary.failed else None,
        metadata=metadata,
    )
    logger.info(
        "migration done account_id=%s migrated=%s failed=%s batches=%s refreshes=%s",
        account.id, summary.migrated, summary.failed, summary.batches_processed, refresher.refresh_calls,
    )
    return summary.as_dict()
