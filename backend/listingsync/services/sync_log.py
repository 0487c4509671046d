# listingsync/services/sync_log.py
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from listingsync.data.models.sync_logs import SyncLog

OUTCOME_OK = "ok"
OUTCOME_RETRY = "retry"
OUTCOME_FAIL = "fail"


def outcome_for_counts(succeeded: int, failed: int) -> str:
    """ok when nothing failed, retry when some items went through, fail otherwise."""
    if failed == 0:
        return OUTCOME_OK
    return OUTCOME_RETRY if succeeded > 0 else OUTCOME_FAIL


def record_sync_event(
    db: Session,
    *,
    operation: str,
    outcome: str,
    account_id: int | None = None,
    provider: str = "ebay",
    http_status: int | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    idempotency_key: str | None = None,
    metadata: Optional[dict[str, Any]] = None,
) -> SyncLog:
    row = SyncLog(
        provider=provider,
        marketplace_account_id=account_id,
        operation=operation,
        outcome=outcome,
        http_status=http_status,
        error_code=error_code,
        error_message=(error_message or None) and error_message[:1000],
        idempotency_key=(idempotency_key or None) and idempotency_key[:255],
        details=metadata or None,
    )
    db.add(row)
    db.flush()
    return row
