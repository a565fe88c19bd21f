"""
Tests — Resilient HTTP Client
=============================
Header/param merging, retry with backoff, rate-limit and timeout handling.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from channel_manager.http_client import (
    HttpError,
    RateLimitError,
    RequestTimeoutError,
    ResilientHttpClient,
    backoff_delay,
    parse_reset_time,
)

from conftest import RecordingTransport, SleepRecorder

BASE_URL = "https://api.channel.test"
NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_client(handler, sleeper=None, **kwargs) -> ResilientHttpClient:
    transport = handler if isinstance(handler, httpx.MockTransport) else RecordingTransport(handler)
    return ResilientHttpClient(
        BASE_URL,
        transport=transport,
        sleep=sleeper or SleepRecorder(),
        **kwargs
    )


# ══════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════


class TestBackoff:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(1.0, n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_scales_with_base(self):
        assert backoff_delay(0.5, 3) == 2.0


class TestParseResetTime:
    def test_delta_seconds(self):
        assert parse_reset_time({"X-RateLimit-Reset": "30"}, now=NOW) == NOW + timedelta(seconds=30)

    def test_epoch_seconds(self):
        epoch = int((NOW + timedelta(minutes=5)).timestamp())
        reset = parse_reset_time({"x-ratelimit-reset": str(epoch)}, now=NOW)
        assert reset == NOW + timedelta(minutes=5)

    def test_retry_after_http_date(self):
        reset = parse_reset_time({"Retry-After": "Sun, 01 Jun 2025 12:02:00 GMT"}, now=NOW)
        assert reset == NOW + timedelta(minutes=2)

    def test_header_precedence(self):
        headers = {"retry-after": "120", "x-ratelimit-reset": "10"}
        assert parse_reset_time(headers, now=NOW) == NOW + timedelta(seconds=10)

    def test_fallback_when_missing(self):
        assert parse_reset_time({}, now=NOW, fallback_seconds=60) == NOW + timedelta(seconds=60)

    def test_fallback_when_unparseable(self):
        reset = parse_reset_time({"retry-after": "soon"}, now=NOW, fallback_seconds=45)
        assert reset == NOW + timedelta(seconds=45)


# ══════════════════════════════════════════════════════════════
# REQUESTS
# ══════════════════════════════════════════════════════════════


class TestRequestComposition:
    def test_per_call_headers_and_params_win(self):
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"ok": True}))
        client = make_client(
            transport,
            default_headers={"X-Api-Key": "default", "X-Client": "cm"},
            default_params={"lang": "en", "page": "1"}
        )

        async def run():
            async with client:
                return await client.get("/listings", headers={"X-Api-Key": "override"}, params={"page": "2"})

        response = asyncio.run(run())

        request = transport.requests[0]
        assert response.status == 200
        assert response.data == {"ok": True}
        assert request.headers["X-Api-Key"] == "override"
        assert request.headers["X-Client"] == "cm"
        assert request.url.params["lang"] == "en"
        assert request.url.params["page"] == "2"
        assert str(request.url).startswith(BASE_URL + "/listings")

    def test_json_body_is_sent(self):
        transport = RecordingTransport(lambda request: httpx.Response(201, json={"id": "r-1"}))
        client = make_client(transport)

        async def run():
            async with client:
                return await client.post("/reservations", {"guest": "Ann"})

        response = asyncio.run(run())

        assert response.status == 201
        assert transport.requests[0].method == "POST"
        assert json.loads(transport.requests[0].content) == {"guest": "Ann"}

    def test_response_headers_are_lower_cased(self):
        client = make_client(lambda request: httpx.Response(
            200, json={}, headers={"X-RateLimit-Remaining": "42"}
        ))

        async def run():
            async with client:
                return await client.get("/ping")

        response = asyncio.run(run())
        assert response.headers["x-ratelimit-remaining"] == "42"

    def test_text_calendar_body_is_returned_as_text(self):
        client = make_client(lambda request: httpx.Response(
            200, text="BEGIN:VCALENDAR", headers={"content-type": "text/calendar"}
        ))

        async def run():
            async with client:
                return await client.get("/feed.ics")

        assert asyncio.run(run()).data == "BEGIN:VCALENDAR"


class TestRetries:
    def test_server_errors_are_retried_with_exponential_backoff(self):
        sleeper = SleepRecorder()
        transport = RecordingTransport(lambda request: httpx.Response(503, json={"error": "down"}))
        client = make_client(transport, sleeper, retries=3, retry_delay=1.0)

        async def run():
            async with client:
                await client.get("/availability")

        with pytest.raises(HttpError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status == 503
        assert exc_info.value.data == {"error": "down"}
        assert len(transport.requests) == 4
        assert sleeper.delays == [1.0, 2.0, 4.0]

    def test_recovers_after_transient_failure(self):
        sleeper = SleepRecorder()
        responses = iter([httpx.Response(500), httpx.Response(200, json={"ok": True})])
        transport = RecordingTransport(lambda request: next(responses))
        client = make_client(transport, sleeper, retries=3, retry_delay=1.0)

        async def run():
            async with client:
                return await client.get("/rates")

        response = asyncio.run(run())

        assert response.data == {"ok": True}
        assert len(transport.requests) == 2
        assert sleeper.delays == [1.0]

    def test_request_timeout_status_is_retried(self):
        sleeper = SleepRecorder()
        transport = RecordingTransport(lambda request: httpx.Response(408))
        client = make_client(transport, sleeper, retries=1, retry_delay=2.0)

        async def run():
            async with client:
                await client.get("/slow")

        with pytest.raises(HttpError):
            asyncio.run(run())

        assert len(transport.requests) == 2
        assert sleeper.delays == [2.0]

    def test_client_errors_are_not_retried(self):
        sleeper = SleepRecorder()
        transport = RecordingTransport(lambda request: httpx.Response(400, json={"field": "date"}))
        client = make_client(transport, sleeper, retries=3)

        async def run():
            async with client:
                await client.put("/restrictions", {})

        with pytest.raises(HttpError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status == 400
        assert len(transport.requests) == 1
        assert sleeper.delays == []

    def test_per_call_retry_budget_overrides_default(self):
        transport = RecordingTransport(lambda request: httpx.Response(502))
        client = make_client(transport, retries=3)

        async def run():
            async with client:
                await client.get("/x", retries=0)

        with pytest.raises(HttpError):
            asyncio.run(run())
        assert len(transport.requests) == 1


class TestRateLimitResponses:
    def test_429_raises_immediately_with_reset_time(self):
        sleeper = SleepRecorder()
        transport = RecordingTransport(lambda request: httpx.Response(
            429, json={"error": "slow down"}, headers={"Retry-After": "30"}
        ))
        client = make_client(transport, sleeper, retries=3)
        before = datetime.now(timezone.utc)

        async def run():
            async with client:
                await client.get("/bookings")

        with pytest.raises(RateLimitError) as exc_info:
            asyncio.run(run())

        error = exc_info.value
        assert error.status == 429
        assert len(transport.requests) == 1
        assert sleeper.delays == []
        assert before + timedelta(seconds=29) <= error.reset_time
        assert error.reset_time <= datetime.now(timezone.utc) + timedelta(seconds=31)

    def test_429_without_reset_header_uses_fallback(self):
        client = make_client(lambda request: httpx.Response(429))
        before = datetime.now(timezone.utc)

        async def run():
            async with client:
                await client.get("/bookings")

        with pytest.raises(RateLimitError) as exc_info:
            asyncio.run(run())
        assert exc_info.value.reset_time >= before + timedelta(seconds=59)


class TestTimeoutsAndTransportErrors:
    def test_transport_timeout_becomes_request_timeout_error(self):
        sleeper = SleepRecorder()

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport = RecordingTransport(handler)
        client = make_client(transport, sleeper, retries=2, retry_delay=1.0, timeout=5.0)

        async def run():
            async with client:
                await client.get("/calendar")

        with pytest.raises(RequestTimeoutError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status == 0
        assert exc_info.value.timeout == 5.0
        assert len(transport.requests) == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_attempt_is_cancelled_after_timeout(self):
        async def slow(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        client = make_client(httpx.MockTransport(slow), retries=0, timeout=0.01)

        async def run():
            async with client:
                await client.get("/slow")

        with pytest.raises(RequestTimeoutError):
            asyncio.run(run())

    def test_connection_errors_are_not_retried(self):
        sleeper = SleepRecorder()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = RecordingTransport(handler)
        client = make_client(transport, sleeper, retries=3)

        async def run():
            async with client:
                await client.get("/ping")

        with pytest.raises(HttpError) as exc_info:
            asyncio.run(run())

        assert exc_info.value.status == 0
        assert not isinstance(exc_info.value, RequestTimeoutError)
        assert len(transport.requests) == 1
        assert sleeper.delays == []
