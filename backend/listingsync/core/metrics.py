"""Cached Prometheus metric primitives shared by the sync services."""
from __future__ import annotations

from typing import Dict, Iterable, Tuple

from prometheus_client import Counter, Histogram

_counters: Dict[Tuple[str, Tuple[str, ...]], Counter] = {}
_histograms: Dict[Tuple[str, Tuple[str, ...]], Histogram] = {}


def get_counter(name: str, documentation: str, *, labelnames: Iterable[str] = ()) -> Counter:
    key = (name, tuple(labelnames))
    if key not in _counters:
        _counters[key] = Counter(name, documentation, labelnames=list(labelnames))
    return _counters[key]


def get_histogram(
    name: str,
    documentation: str,
    *,
    labelnames: Iterable[str] = (),
    buckets: Iterable[float] | None = None,
) -> Histogram:
    key = (name, tuple(labelnames))
    if key not in _histograms:
        if buckets is not None:
            metric = Histogram(name, documentation, labelnames=list(labelnames), buckets=list(buckets))
        else:
            metric = Histogram(name, documentation, labelnames=list(labelnames))
        _histograms[key] = metric
    return _histograms[key]


HTTP_RETRIES = get_counter(
    "lsync_http_retries_total",
    "Provider HTTP attempts that were retried",
    labelnames=("reason",),
)
TOKEN_REFRESHES = get_counter(
    "lsync_token_refresh_total",
    "OAuth refresh-token exchanges",
    labelnames=("outcome",),
)
MIGRATION_BATCHES = get_counter(
    "lsync_migration_batches_total",
    "bulk_migrate_listing batches processed",
    labelnames=("outcome",),
)
MIGRATION_LISTINGS = get_counter(
    "lsync_migration_listings_total",
    "Listings processed by the migration engine",
    labelnames=("status",),
)
MIGRATION_DURATION = get_histogram(
    "lsync_migration_run_seconds",
    "Wall time of a migration run",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
STOCK_PUSHES = get_counter(
    "lsync_stock_push_total",
    "Bulk quantity pushes",
    labelnames=("outcome",),
)
ORDER_LINES = get_counter(
    "lsync_order_lines_total",
    "Fulfillment order lines seen by the orders ingestion",
    labelnames=("outcome",),
)
