from __future__ import annotations

import httpx
import pytest

from listingsync.services.http_retry import RetryPolicy, fetch_with_retry, is_retryable_status

pytestmark = pytest.mark.anyio


def _sequence(*outcomes):
    """Request factory replaying statuses or exceptions in order, counting calls."""
    calls = {"n": 0}
    request = httpx.Request("GET", "https://api.ebay.com/x")

    async def _factory() -> httpx.Response:
        item = outcomes[min(calls["n"], len(outcomes) - 1)]
        calls["n"] += 1
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item, request=request, text=f"status {item}")

    return _factory, calls


@pytest.mark.parametrize("status,expected", [(200, False), (404, False), (429, True), (500, True), (503, True)])
def test_is_retryable_status(status, expected):
    assert is_retryable_status(status) is expected


async def test_retries_5xx_then_returns_success(retry, sleeps):
    factory, calls = _sequence(503, 503, 200)

    resp = await fetch_with_retry(factory, retry)

    assert resp.status_code == 200
    assert calls["n"] == 3
    assert sleeps.calls == [0.5, 1.0]


async def test_client_errors_return_immediately(retry, sleeps):
    factory, calls = _sequence(400, 200)

    resp = await fetch_with_retry(factory, retry)

    assert resp.status_code == 400
    assert calls["n"] == 1
    assert sleeps.calls == []


async def test_exhausted_attempts_return_last_response(retry, sleeps):
    factory, calls = _sequence(429, 502, 503)

    resp = await fetch_with_retry(factory, retry)

    assert resp.status_code == 503
    assert calls["n"] == 3
    assert sleeps.calls == [0.5, 1.0]


async def test_transport_error_is_retried(retry):
    factory, calls = _sequence(httpx.ConnectError("boom"), 200)

    resp = await fetch_with_retry(factory, retry)

    assert resp.status_code == 200
    assert calls["n"] == 2


async def test_exhausted_transport_errors_reraise_last(retry, sleeps):
    factory, calls = _sequence(httpx.ReadTimeout("t1"), httpx.ReadTimeout("t2"), httpx.ConnectError("last"))

    with pytest.raises(httpx.ConnectError):
        await fetch_with_retry(factory, retry)
    assert calls["n"] == 3
    assert len(sleeps.calls) == 2


async def test_single_attempt_policy_never_sleeps(sleeps):
    factory, calls = _sequence(500, 200)

    resp = await fetch_with_retry(factory, RetryPolicy(max_attempts=1, sleep=sleeps))

    assert resp.status_code == 500
    assert calls["n"] == 1
    assert sleeps.calls == []


def test_delay_schedule_repeats_last_entry():
    policy = RetryPolicy(delays=(0.5, 1.0))
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 1.0, 1.0]


def test_policy_from_settings(settings):
    policy = RetryPolicy.from_settings(settings.model_copy(update={"HTTP_RETRY_MAX_ATTEMPTS": 5}))
    assert policy.max_attempts == 5
    assert tuple(policy.delays) == (0.5, 1.0, 2.0)


async def test_plain_lambda_over_async_client_is_awaited(retry, sleeps):
    statuses = iter([503, 200])
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(next(statuses), json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        resp = await fetch_with_retry(lambda: http.get("https://api.ebay.com/sell/inventory/v1/inventory_item"), retry)

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert seen == ["/sell/inventory/v1/inventory_item"] * 2
    assert sleeps.calls == [0.5]
