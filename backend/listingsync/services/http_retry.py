# listingsync/services/http_retry.py
"""
Resilient outbound HTTP for every provider call.

- retries on 429 / 5xx responses and on transport errors (connect, read, timeout)
- fixed delay schedule indexed by attempt number, default 0.5s, 1s, 2s
- other statuses (2xx, 3xx, non-429 4xx) are returned on the first attempt
- once attempts are exhausted the last outcome wins: the last response is
  returned for the caller to inspect, or the last exception is re-raised
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from listingsync.core.config import Settings
from listingsync.core.metrics import HTTP_RETRIES

logger = logging.getLogger("lsync.http")

RequestFactory = Callable[[], Awaitable[httpx.Response]]
SleepFn = Callable[[float], Awaitable[None]]

DEFAULT_DELAYS: tuple[float, ...] = (0.5, 1.0, 2.0)


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def _retryable_response(resp: httpx.Response) -> bool:
    return is_retryable_status(resp.status_code)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delays: Sequence[float] = DEFAULT_DELAYS
    sleep: SleepFn = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls, settings: Settings, *, sleep: SleepFn | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(settings.HTTP_RETRY_MAX_ATTEMPTS)),
            delays=tuple(settings.HTTP_RETRY_DELAYS_SECONDS),
            sleep=sleep or asyncio.sleep,
        )

    def delay_for(self, attempt_number: int) -> float:
        """Delay after the given 1-based attempt; the schedule's last entry repeats."""
        if not self.delays:
            return 0.0
        idx = min(attempt_number - 1, len(self.delays) - 1)
        return float(self.delays[idx])


def _last_outcome(retry_state: RetryCallState) -> httpx.Response:
    outcome = retry_state.outcome
    if outcome is None:  # pragma: no cover
        raise RuntimeError("fetch_with_retry finished without an outcome")
    if outcome.failed:
        raise outcome.exception()
    return outcome.result()


def _log_retry(label: str):
    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            reason = "transport"
            logger.warning(
                "%s attempt=%s failed err=%s; retrying",
                label, retry_state.attempt_number, exc.__class__.__name__,
            )
        else:
            status = outcome.result().status_code if outcome is not None else None
            reason = "429" if status == 429 else "5xx"
            logger.warning("%s attempt=%s status=%s; retrying", label, retry_state.attempt_number, status)
        HTTP_RETRIES.labels(reason=reason).inc()

    return _before_sleep


async def fetch_with_retry(
    request_factory: RequestFactory,
    policy: RetryPolicy | None = None,
    *,
    label: str = "provider call",
) -> httpx.Response:
    """Run ``request_factory`` until it yields a non-retryable response or attempts run out."""
    policy = policy or RetryPolicy()

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, policy.max_attempts)),
        wait=lambda rs: policy.delay_for(rs.attempt_number),
        retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(_retryable_response),
        retry_error_callback=_last_outcome,
        before_sleep=_log_retry(label),
        sleep=policy.sleep,
        reraise=True,
    )

    async def _attempt() -> httpx.Response:
        # tenacity treats a plain callable as sync; await the coroutine here
        return await request_factory()

    return await retrying(_attempt)
