"""
Base Channel Adapter
====================

Capability contract for channel platform adapters.

An adapter knows only what differs between platforms: base URL, auth
header scheme and payload shapes. It builds request descriptions and
parses responses; the shared PlatformIntegration performs the I/O,
rate-limit bookkeeping, status tracking and error handling.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..http_client import HttpError, RateLimitError, RequestTimeoutError
from ..models import AvailabilityRecord, RateRecord, RestrictionRecord


class ChannelType(str, Enum):
    """Supported channel types."""
    AIRBNB = "airbnb"
    BOOKING_COM = "booking_com"
    EXPEDIA = "expedia"


# =============================================================================
# INTEGRATION STATE
# =============================================================================

@dataclass
class Credentials:
    """Platform credentials. Opaque to the sync orchestrator."""
    api_key: str
    secret_key: Optional[str] = None
    partner_id: Optional[str] = None
    endpoint: Optional[str] = None  # Overrides the adapter's base URL


@dataclass
class RateLimitState:
    remaining: int = 1000
    reset_time: Optional[datetime] = None


@dataclass
class IntegrationStatus:
    connected: bool = False
    last_sync: Optional[datetime] = None
    error_count: int = 0
    sync_in_progress: bool = False
    rate_limit: RateLimitState = field(default_factory=RateLimitState)

    def snapshot(self) -> "IntegrationStatus":
        return replace(self, rate_limit=replace(self.rate_limit))


@dataclass
class SyncItems:
    availability: bool = True
    rates: bool = True
    restrictions: bool = True
    bookings: bool = True


@dataclass
class SyncOptions:
    """
    Auto-sync configuration of one integration.

    sync_interval is in minutes; retry_attempts becomes the retry budget of
    the integration's HTTP client.
    """
    auto_sync: bool = False
    sync_interval: int = 60
    retry_attempts: int = 3
    sync_items: SyncItems = field(default_factory=SyncItems)

    def __post_init__(self):
        if not 0 <= self.retry_attempts <= 10:
            raise ValueError(
                f"retry_attempts must be between 0 and 10, got {self.retry_attempts}"
            )


@dataclass
class SyncReport:
    """Per-domain outcome of one manual sync."""
    availability: bool = False
    rates: bool = False
    restrictions: bool = False
    bookings: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.availability and self.rates and self.restrictions and self.bookings


# =============================================================================
# REQUEST / RESPONSE SHAPES
# =============================================================================

@dataclass
class ApiCall:
    """Description of one outbound platform call."""
    method: str
    endpoint: str
    json: Any = None
    params: Optional[Dict[str, Any]] = None


@dataclass
class PlatformBooking:
    """Standardized booking pulled from any platform."""
    channel_booking_id: str
    property_id: str
    room_id: Optional[str]
    status: str
    check_in: date
    check_out: date
    guest_name: Optional[str] = None
    total_price: Optional[Decimal] = None
    currency: Optional[str] = None
    channel_data: Dict[str, Any] = field(default_factory=dict)


class PlatformAdapter(Protocol):
    """What a platform variant must provide."""

    channel_type: ChannelType
    display_name: str
    default_base_url: str

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]: ...

    def authentication_request(self, credentials: Credentials) -> ApiCall: ...

    def availability_request(
        self,
        property_id: str,
        records: List[AvailabilityRecord]
    ) -> ApiCall: ...

    def rates_request(self, property_id: str, records: List[RateRecord]) -> ApiCall: ...

    def restrictions_request(
        self,
        property_id: str,
        records: List[RestrictionRecord]
    ) -> ApiCall: ...

    def bookings_request(
        self,
        property_id: str,
        from_date: Optional[date],
        to_date: Optional[date]
    ) -> ApiCall: ...

    def parse_bookings(self, data: Any, property_id: str) -> List[PlatformBooking]: ...


def format_day(value: date) -> str:
    return value.isoformat()


def parse_day(value: Any) -> date:
    """Parse 'YYYY-MM-DD' or an ISO timestamp into a date."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    return datetime.fromisoformat(str(value)[:10]).date()


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


# =============================================================================
# ERRORS
# =============================================================================

class ChannelAdapterError(Exception):
    """Base exception for channel adapter errors."""
    kind = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Any = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(ChannelAdapterError):
    """Raised on 401. Forces the integration into the disconnected state."""
    kind = "authentication"


class AuthorizationError(ChannelAdapterError):
    """Raised on 403."""
    kind = "authorization"


class ResourceNotFoundError(ChannelAdapterError):
    """Raised when resource is not found (404)."""
    kind = "not_found"


class ValidationError(ChannelAdapterError):
    """Raised when request validation fails (400 and other 4xx)."""
    kind = "validation"


class ServerError(ChannelAdapterError):
    kind = "server"


class ChannelTimeoutError(ChannelAdapterError):
    kind = "timeout"


class ChannelRateLimitError(ChannelAdapterError):
    """Raised when rate limit is exceeded (429)."""
    kind = "rate_limit"

    def __init__(self, message: str, reset_time: Optional[datetime] = None, response_body: Any = None):
        super().__init__(message, 429, response_body)
        self.reset_time = reset_time


def classify_http_error(error: HttpError) -> ChannelAdapterError:
    """Map an HTTP layer error onto the adapter error taxonomy."""
    if isinstance(error, RateLimitError):
        return ChannelRateLimitError(
            "Rate limit exceeded",
            reset_time=error.reset_time,
            response_body=error.data
        )
    if isinstance(error, RequestTimeoutError):
        return ChannelTimeoutError(error.message)

    status = error.status
    if status == 401:
        return AuthenticationError(
            "Authentication failed - credentials may be invalid or expired",
            status_code=401,
            response_body=error.data
        )
    if status == 403:
        return AuthorizationError(
            "Access forbidden - insufficient permissions",
            status_code=403,
            response_body=error.data
        )
    if status == 404:
        return ResourceNotFoundError(
            "Resource not found",
            status_code=404,
            response_body=error.data
        )
    if status >= 500:
        return ServerError(
            f"Server error: {status}",
            status_code=status,
            response_body=error.data
        )
    if 400 <= status < 500:
        return ValidationError(
            f"Validation error: {status}",
            status_code=status,
            response_body=error.data
        )
    return ChannelAdapterError(error.message, status_code=status or None, response_body=error.data)


_USER_MESSAGES: Dict[str, Tuple[str, str]] = {
    "authentication": (
        "Authentication Failed",
        "{platform} rejected the credentials. Please reconnect the channel."
    ),
    "authorization": (
        "Access Denied",
        "{platform} denied access. Check the account permissions for this property."
    ),
    "not_found": (
        "Resource Not Found",
        "{platform} could not find the requested property or room. Check the mapping."
    ),
    "validation": (
        "Invalid Request",
        "{platform} rejected the data sent. Review the property settings and try again."
    ),
    "server": (
        "Platform Unavailable",
        "{platform} is experiencing problems. The sync will be retried later."
    ),
    "timeout": (
        "Request Timed Out",
        "{platform} did not respond in time. The sync will be retried later."
    ),
    "rate_limit": (
        "Rate Limit Reached",
        "Too many requests to {platform}. Syncing pauses until the limit resets."
    ),
    "unknown": (
        "Sync Error",
        "An unexpected error occurred while talking to {platform}."
    ),
}


def user_message(error: ChannelAdapterError, platform: str) -> Tuple[str, str]:
    """Actionable (title, message) for an error kind."""
    title, template = _USER_MESSAGES.get(error.kind, _USER_MESSAGES["unknown"])
    return title, template.format(platform=platform)
