"""
Resilient HTTP Client
=====================

Async HTTP client used for every outbound call of the channel manager
(platform APIs and iCal feed downloads).

Behaviour:
- Default and per-call headers / query params are merged (per-call wins)
- Each attempt is cancelled after ``timeout`` seconds
- Timeouts, 5xx and 408 responses are retried with exponential backoff
  (``retry_delay * 2 ** (attempt - 1)``)
- 429 responses raise RateLimitError immediately and are never retried here
- Any other non-2xx response raises HttpError immediately
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from prometheus_client import Counter

from .config import settings

logger = structlog.get_logger(__name__)

HTTP_RETRIES = Counter(
    "channel_http_retries_total",
    "Outbound HTTP attempts that were retried",
    ["reason"]  # reason: timeout, server_error
)

RATE_LIMIT_RESET_HEADERS = ("x-ratelimit-reset", "ratelimit-reset", "retry-after")

# Values above this are treated as absolute epoch seconds rather than deltas
EPOCH_THRESHOLD = 10 ** 9


# =============================================================================
# EXCEPTIONS
# =============================================================================

class HttpError(Exception):
    """Raised for a non-successful HTTP exchange."""

    def __init__(
        self,
        message: str,
        status: int,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.message = message
        self.status = status
        self.data = data
        self.headers = headers or {}
        super().__init__(message)


class RateLimitError(HttpError):
    """Raised on HTTP 429. The caller must back off until ``reset_time``."""

    def __init__(
        self,
        message: str,
        status: int,
        reset_time: datetime,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None
    ):
        super().__init__(message, status, data, headers)
        self.reset_time = reset_time


class RequestTimeoutError(HttpError):
    """Raised when every attempt of a request timed out."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message, status=0)
        self.timeout = timeout


@dataclass
class HttpResponse:
    """Normalized response: parsed body, status code and lower-cased headers."""
    data: Any
    status: int
    headers: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# HELPERS
# =============================================================================

def parse_reset_time(
    headers: Dict[str, str],
    now: Optional[datetime] = None,
    fallback_seconds: Optional[int] = None
) -> datetime:
    """
    Compute the absolute rate-limit reset time from response headers.

    Checks X-RateLimit-Reset, RateLimit-Reset and Retry-After in that order.
    Numeric values are delta seconds unless they look like an epoch timestamp;
    Retry-After may also be an HTTP date. Falls back to now + 60s.
    """
    now = now or datetime.now(timezone.utc)
    if fallback_seconds is None:
        fallback_seconds = settings.RATE_LIMIT_FALLBACK_SECONDS
    lowered = {k.lower(): v for k, v in headers.items()}

    for name in RATE_LIMIT_RESET_HEADERS:
        raw = lowered.get(name)
        if raw is None:
            continue
        raw = raw.strip()
        try:
            value = float(raw)
        except ValueError:
            try:
                reset = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                logger.warning("Unparseable rate limit header", header=name, value=raw)
                continue
            if reset.tzinfo is None:
                reset = reset.replace(tzinfo=timezone.utc)
            return reset
        if value > EPOCH_THRESHOLD:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return now + timedelta(seconds=max(0.0, value))

    return now + timedelta(seconds=fallback_seconds)


def parse_response_data(response: httpx.Response) -> Any:
    """Parse a response body according to its content type."""
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type or content_type.endswith("+json"):
        if not response.content:
            return None
        return response.json()
    if content_type.startswith("text/") or "calendar" in content_type:
        return response.text
    return response.content


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... for attempt 1, 2, 3, ..."""
    return base_delay * (2 ** (attempt - 1))


# =============================================================================
# CLIENT
# =============================================================================

class ResilientHttpClient:
    """
    Timed, retried HTTP client on top of httpx.AsyncClient.

    Usage:
        async with ResilientHttpClient("https://api.example.com") as client:
            response = await client.get("/listings", params={"limit": "50"})
    """

    def __init__(
        self,
        base_url: str = "",
        default_headers: Optional[Dict[str, str]] = None,
        default_params: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the client.

        Args:
            base_url: Prefix for relative endpoints
            default_headers: Headers sent with every request
            default_params: Query parameters sent with every request
            timeout: Per-attempt timeout in seconds (default 30)
            retries: Retry budget for retryable failures (default 3)
            retry_delay: Base backoff delay in seconds (default 1)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used for backoff waits
        """
        self.base_url = base_url
        self.default_headers = {
            "Content-Type": "application/json",
            **(default_headers or {})
        }
        self.default_params = dict(default_params or {})
        self.timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
        self.retries = settings.HTTP_RETRIES if retries is None else retries
        self.retry_delay = settings.HTTP_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                # Timeouts are enforced per attempt by request()
                timeout=None
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Any = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None
    ) -> HttpResponse:
        """
        Execute an HTTP request with timeout, retry and error classification.

        Raises:
            RateLimitError: On 429 (never retried)
            RequestTimeoutError: When the last attempt timed out
            HttpError: On other failures (after retries for 5xx/408)
        """
        merged_headers = {**self.default_headers, **(headers or {})}
        merged_params = {**self.default_params, **(params or {})}
        timeout = self.timeout if timeout is None else timeout
        max_retries = self.retries if retries is None else retries
        base_delay = self.retry_delay if retry_delay is None else retry_delay

        client = await self.get_client()
        attempt = 0

        while True:
            try:
                return await self._attempt(
                    client,
                    method,
                    endpoint,
                    json,
                    merged_headers,
                    merged_params,
                    timeout
                )
            except RateLimitError:
                raise
            except HttpError as e:
                retryable = isinstance(e, RequestTimeoutError) or e.status >= 500 or e.status == 408
                if not retryable or attempt >= max_retries:
                    raise

                attempt += 1
                delay = backoff_delay(base_delay, attempt)
                reason = "timeout" if isinstance(e, RequestTimeoutError) else "server_error"
                HTTP_RETRIES.labels(reason=reason).inc()
                logger.warning(
                    "Retrying HTTP request",
                    method=method,
                    endpoint=endpoint,
                    status=e.status,
                    attempt=attempt,
                    max_retries=max_retries,
                    delay=delay
                )
                await self._sleep(delay)

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        method: str,
        endpoint: str,
        json: Any,
        headers: Dict[str, str],
        params: Dict[str, Any],
        timeout: float
    ) -> HttpResponse:
        """Perform a single attempt and translate the outcome."""
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.request(
                    method=method,
                    url=endpoint,
                    json=json,
                    params=params or None,
                    headers=headers
                ),
                timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s: {method} {endpoint}",
                timeout=timeout
            )
        except httpx.RequestError as e:
            logger.error(
                "HTTP request failed",
                method=method,
                endpoint=endpoint,
                error=str(e)
            )
            raise HttpError(f"Request failed: {e}", status=0)

        response_headers = {k.lower(): v for k, v in response.headers.items()}
        logger.debug(
            "HTTP response",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            elapsed_ms=int((time.monotonic() - started) * 1000)
        )

        if response.status_code == 429:
            raise RateLimitError(
                "Rate limit exceeded",
                status=429,
                reset_time=parse_reset_time(response_headers),
                data=parse_response_data(response),
                headers=response_headers
            )

        if not response.is_success:
            raise HttpError(
                f"HTTP Error: {response.status_code} {response.reason_phrase}",
                status=response.status_code,
                data=parse_response_data(response),
                headers=response_headers
            )

        return HttpResponse(
            data=parse_response_data(response),
            status=response.status_code,
            headers=response_headers
        )

    async def get(self, endpoint: str, **kwargs) -> HttpResponse:
        return await self.request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, json: Any = None, **kwargs) -> HttpResponse:
        return await self.request("POST", endpoint, json, **kwargs)

    async def put(self, endpoint: str, json: Any = None, **kwargs) -> HttpResponse:
        return await self.request("PUT", endpoint, json, **kwargs)

    async def patch(self, endpoint: str, json: Any = None, **kwargs) -> HttpResponse:
        return await self.request("PATCH", endpoint, json, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> HttpResponse:
        return await self.request("DELETE", endpoint, **kwargs)
