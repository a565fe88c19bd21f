"""
Webhook Handlers
================

FastAPI endpoints receiving push notifications from third-party
integrations (channel connectors, automation platforms).

The router is built from an endpoint table, a shared secret and a handler
set supplied at startup. Per request:

1. Bearer token check (401 missing_auth / 403 invalid_token)
2. JSON parsing and payload validation (400 with field errors)
3. Duplicate delivery check (same syncId inside the TTL window)
4. Domain handler -> WebhookResult
5. 200 on success, 409 when a booking conflict needs resolution, else 400

Endpoints (default table):
- POST   /api/webhooks/availability
- POST   /api/webhooks/rates
- POST   /api/webhooks/bookings   (create)
- PUT    /api/webhooks/bookings   (modify)
- DELETE /api/webhooks/bookings   (cancel)
- GET    /api/webhooks/health
"""

import hmac
import json
import time
from dataclasses import dataclass
from datetime import date as date_type, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram
from pydantic import ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import settings
from .conflicts import ConflictResolver, detect_conflicts
from .models import (
    AvailabilityRecord,
    Booking,
    BookingStatus,
    CamelModel,
    ICalEvent,
    RateRecord,
    utcnow,
)
from .notifications import LoggingNotificationSink, Notification, NotificationLevel, NotificationSink
from .stores import BookingStore, InventoryStore

logger = structlog.get_logger(__name__)

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

WEBHOOK_RECEIVED = Counter(
    "channel_webhook_received_total",
    "Total webhooks received",
    ["platform", "endpoint"]
)

WEBHOOK_PROCESSED = Counter(
    "channel_webhook_processed_total",
    "Total webhooks processed",
    ["platform", "status"]  # status: success, duplicate, conflict, rejected, invalid, unauthorized, error
)

WEBHOOK_LATENCY = Histogram(
    "channel_webhook_processing_seconds",
    "Webhook processing latency",
    ["platform"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)


# =============================================================================
# ENDPOINT TABLE
# =============================================================================

class WebhookDomain(str, Enum):
    AVAILABILITY = "availability"
    RATES = "rates"
    BOOKINGS = "bookings"


class WebhookEndpoint(CamelModel):
    id: str
    path: str
    method: str = "POST"
    platform: str
    domain: WebhookDomain
    name: Optional[str] = None
    description: Optional[str] = None

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()


DEFAULT_WEBHOOK_ENDPOINTS: List[WebhookEndpoint] = [
    WebhookEndpoint(
        id="availability",
        name="Availability Update",
        path="/api/webhooks/availability",
        method="POST",
        platform="airbnb",
        domain=WebhookDomain.AVAILABILITY,
        description="Receive availability updates",
    ),
    WebhookEndpoint(
        id="rates",
        name="Rate Update",
        path="/api/webhooks/rates",
        method="POST",
        platform="booking.com",
        domain=WebhookDomain.RATES,
        description="Receive rate updates",
    ),
    WebhookEndpoint(
        id="booking",
        name="New Booking",
        path="/api/webhooks/bookings",
        method="POST",
        platform="vrbo",
        domain=WebhookDomain.BOOKINGS,
        description="Receive new booking notifications",
    ),
    WebhookEndpoint(
        id="modification",
        name="Booking Modification",
        path="/api/webhooks/bookings",
        method="PUT",
        platform="expedia",
        domain=WebhookDomain.BOOKINGS,
        description="Receive booking date changes",
    ),
    WebhookEndpoint(
        id="cancellation",
        name="Booking Cancellation",
        path="/api/webhooks/bookings",
        method="DELETE",
        platform="airbnb",
        domain=WebhookDomain.BOOKINGS,
        description="Receive booking cancellations",
    ),
]


# =============================================================================
# PAYLOADS
# =============================================================================

StayDate = Union[datetime, date_type]


def _to_datetime(value: StayDate) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class WebhookPayload(CamelModel):
    model_config = ConfigDict(extra="ignore")

    property_id: str = Field(min_length=1)
    sync_id: Optional[str] = None


class AvailabilityDate(CamelModel):
    date: date_type
    available: bool
    channel: Optional[str] = None


class AvailabilityPayload(WebhookPayload):
    room_id: Optional[str] = None
    dates: List[AvailabilityDate] = Field(min_length=1)


class RateEntry(CamelModel):
    date: date_type
    amount: Decimal = Field(ge=0)
    currency: str = "EUR"
    channel: Optional[str] = None


class RatePayload(WebhookPayload):
    room_id: Optional[str] = None
    rates: List[RateEntry] = Field(min_length=1)


class GuestInfo(CamelModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class PriceInfo(CamelModel):
    amount: Decimal = Field(ge=0)
    currency: str = "EUR"


class StayPayload(WebhookPayload):
    booking_id: str = Field(min_length=1)
    check_in: StayDate
    check_out: StayDate

    @model_validator(mode="after")
    def check_dates(self):
        if _to_datetime(self.check_out) <= _to_datetime(self.check_in):
            raise ValueError("checkOut must be after checkIn")
        return self


class BookingCreatePayload(StayPayload):
    room_id: Optional[str] = None
    guest: Optional[GuestInfo] = None
    price: Optional[PriceInfo] = None

    @field_validator("price", mode="before")
    @classmethod
    def wrap_plain_price(cls, v: Any) -> Any:
        if isinstance(v, (int, float, str, Decimal)):
            return {"amount": v}
        return v


class BookingModifyPayload(StayPayload):
    pass


class BookingCancelPayload(WebhookPayload):
    booking_id: str = Field(min_length=1)
    cancellation_reason: Optional[str] = None


BOOKING_PAYLOADS = {
    "POST": BookingCreatePayload,
    "PUT": BookingModifyPayload,
    "DELETE": BookingCancelPayload,
}

OPERATION_NAMES = {"POST": "create", "PUT": "modify", "DELETE": "cancel"}


# =============================================================================
# RESULTS & ERRORS
# =============================================================================

@dataclass
class WebhookResult:
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None

    @property
    def requires_resolution(self) -> bool:
        return bool(self.data and self.data.get("requiresResolution"))

    @property
    def status_code(self) -> int:
        if self.success:
            return 200
        return 409 if self.requires_resolution else 400

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


class WebhookAuthError(Exception):
    """Raised when the bearer token is missing or wrong."""

    def __init__(self, status: int, code: str, message: str):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(message)


def error_response(status: int, message: str, code: str, details: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": message, "code": code}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status, content=body)


def verify_bearer_token(authorization: Optional[str], secret: str) -> None:
    """
    Check an Authorization header against the shared secret.

    Raises:
        WebhookAuthError: 401 missing_auth or 403 invalid_token
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise WebhookAuthError(401, "missing_auth", "Unauthorized")
    token = authorization[len("Bearer "):].strip()
    if not secret or not hmac.compare_digest(token.encode(), secret.encode()):
        raise WebhookAuthError(403, "invalid_token", "Invalid webhook token")


# =============================================================================
# DUPLICATE DETECTION
# =============================================================================

class WebhookDeduplicator:
    """
    Remembers processed deliveries for a TTL window (single process,
    best effort).
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.WEBHOOK_DEDUP_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._seen: Dict[str, float] = {}

    @staticmethod
    def key_for(endpoint: WebhookEndpoint, payload: WebhookPayload) -> Optional[str]:
        if payload.sync_id:
            return f"{endpoint.domain.value}:sync:{payload.sync_id}"
        booking_id = getattr(payload, "booking_id", None)
        if booking_id:
            return f"bookings:{booking_id}:{OPERATION_NAMES.get(endpoint.method, endpoint.method)}"
        return None

    def _purge(self, now: float) -> None:
        expired = [key for key, expires in self._seen.items() if expires <= now]
        for key in expired:
            del self._seen[key]

    def is_duplicate(self, key: Optional[str]) -> bool:
        if key is None:
            return False
        self._purge(self._clock())
        return key in self._seen

    def mark_processed(self, key: Optional[str]) -> None:
        if key is not None:
            self._seen[key] = self._clock() + self.ttl_seconds


# =============================================================================
# DOMAIN HANDLERS
# =============================================================================

class WebhookHandlers:
    """Applies validated webhook payloads to the stores."""

    def __init__(
        self,
        booking_store: BookingStore,
        inventory_store: InventoryStore,
        resolver: ConflictResolver,
        notifications: Optional[NotificationSink] = None
    ):
        self.booking_store = booking_store
        self.inventory_store = inventory_store
        self.resolver = resolver
        self.notifications = notifications or LoggingNotificationSink()

    async def handle_availability(self, payload: AvailabilityPayload, platform: str) -> WebhookResult:
        records = [
            AvailabilityRecord(
                room_id=payload.room_id,
                date=entry.date,
                available=entry.available,
                channel=entry.channel or platform,
            )
            for entry in payload.dates
        ]
        await self.inventory_store.apply_availability(payload.property_id, records)
        return WebhookResult(
            True,
            f"Processed availability update for {len(records)} dates",
            {"propertyId": payload.property_id, "roomId": payload.room_id, "updated": len(records)}
        )

    async def handle_rates(self, payload: RatePayload, platform: str) -> WebhookResult:
        records = [
            RateRecord(
                room_id=payload.room_id,
                date=entry.date,
                amount=entry.amount,
                currency=entry.currency,
                channel=entry.channel or platform,
            )
            for entry in payload.rates
        ]
        await self.inventory_store.apply_rates(payload.property_id, records)
        return WebhookResult(
            True,
            f"Processed rate update for {len(records)} dates",
            {"propertyId": payload.property_id, "roomId": payload.room_id, "updated": len(records)}
        )

    async def handle_booking(self, payload: WebhookPayload, method: str, platform: str) -> WebhookResult:
        if method == "POST":
            return await self.create_booking(payload, platform)
        if method == "PUT":
            return await self.modify_booking(payload, platform)
        return await self.cancel_booking(payload, platform)

    def _conflict_result(self, message: str, conflicts, booking_id: str) -> WebhookResult:
        for conflict in conflicts:
            self.resolver.register(conflict)
        self.notifications.notify(Notification(
            title="Booking Conflict",
            message=f"Booking {booking_id} overlaps an existing booking. Review required.",
            level=NotificationLevel.WARNING
        ))
        return WebhookResult(False, message, {
            "requiresResolution": True,
            "bookingId": booking_id,
            "conflict": conflicts[0].to_json_dict(),
            "conflicts": [c.to_json_dict() for c in conflicts],
        })

    async def create_booking(self, payload: BookingCreatePayload, platform: str) -> WebhookResult:
        current = await self.booking_store.get_booking(payload.booking_id)
        if current is not None and current.status != BookingStatus.CANCELLED:
            return WebhookResult(False, "Booking already exists", {"bookingId": payload.booking_id})

        guest_name = payload.guest.name if payload.guest else None
        incoming = ICalEvent(
            uid=payload.booking_id,
            summary=guest_name or "Reserved",
            start_date=_to_datetime(payload.check_in),
            end_date=_to_datetime(payload.check_out),
        )
        source = f"webhook:{platform}"
        existing = await self.booking_store.list_bookings(payload.property_id, payload.room_id)
        conflicts = detect_conflicts(
            incoming,
            existing,
            payload.property_id,
            payload.room_id,
            source=source
        )
        if conflicts:
            return self._conflict_result(
                "Booking creation failed due to date conflict",
                conflicts,
                payload.booking_id
            )

        await self.booking_store.save_booking(Booking(
            id=payload.booking_id,
            property_id=payload.property_id,
            room_id=payload.room_id,
            start_date=incoming.start_date,
            end_date=incoming.end_date,
            summary=incoming.summary,
            source=source,
            guest_name=guest_name,
            total_amount=payload.price.amount if payload.price else None,
            currency=payload.price.currency if payload.price else None,
        ))
        logger.info("Booking created from webhook", booking_id=payload.booking_id, platform=platform)
        return WebhookResult(True, "Booking created successfully", {
            "bookingId": payload.booking_id,
            "propertyId": payload.property_id,
            "status": BookingStatus.CONFIRMED.value,
        })

    async def modify_booking(self, payload: BookingModifyPayload, platform: str) -> WebhookResult:
        booking = await self.booking_store.get_booking(payload.booking_id)
        if booking is None or booking.property_id != payload.property_id:
            return WebhookResult(False, "Booking not found", {"bookingId": payload.booking_id})
        if booking.status == BookingStatus.CANCELLED:
            return WebhookResult(False, "Booking is cancelled", {"bookingId": payload.booking_id})

        incoming = ICalEvent(
            uid=booking.id,
            summary=booking.summary,
            start_date=_to_datetime(payload.check_in),
            end_date=_to_datetime(payload.check_out),
        )
        existing = await self.booking_store.list_bookings(payload.property_id, booking.room_id)
        conflicts = detect_conflicts(
            incoming,
            existing,
            payload.property_id,
            booking.room_id,
            source=f"webhook:{platform}"
        )
        if conflicts:
            return self._conflict_result(
                "Booking modification failed due to date conflict",
                conflicts,
                booking.id
            )

        await self.booking_store.save_booking(booking.model_copy(update={
            "start_date": incoming.start_date,
            "end_date": incoming.end_date,
        }))
        logger.info("Booking modified from webhook", booking_id=booking.id, platform=platform)
        return WebhookResult(True, "Booking modification processed successfully", {
            "bookingId": booking.id,
            "propertyId": booking.property_id,
            "status": "modified",
        })

    async def cancel_booking(self, payload: BookingCancelPayload, platform: str) -> WebhookResult:
        booking = await self.booking_store.get_booking(payload.booking_id)
        if booking is None or booking.property_id != payload.property_id:
            return WebhookResult(False, "Booking not found", {"bookingId": payload.booking_id})

        await self.booking_store.cancel_booking(booking.id)
        logger.info(
            "Booking cancelled from webhook",
            booking_id=booking.id,
            platform=platform,
            reason=payload.cancellation_reason
        )
        return WebhookResult(True, "Booking cancellation processed successfully", {
            "bookingId": booking.id,
            "propertyId": booking.property_id,
            "status": BookingStatus.CANCELLED.value,
            "cancellationReason": payload.cancellation_reason,
        })


# =============================================================================
# REQUEST PROCESSING
# =============================================================================

class WebhookProcessor:
    """Runs one delivery through auth, validation, dedupe and the handler."""

    def __init__(
        self,
        secret: str,
        handlers: WebhookHandlers,
        deduplicator: Optional[WebhookDeduplicator] = None
    ):
        self.secret = secret
        self.handlers = handlers
        self.deduplicator = deduplicator or WebhookDeduplicator()

    @staticmethod
    def payload_model(endpoint: WebhookEndpoint):
        if endpoint.domain == WebhookDomain.AVAILABILITY:
            return AvailabilityPayload
        if endpoint.domain == WebhookDomain.RATES:
            return RatePayload
        return BOOKING_PAYLOADS[endpoint.method]

    async def _dispatch(self, endpoint: WebhookEndpoint, payload: WebhookPayload) -> WebhookResult:
        if endpoint.domain == WebhookDomain.AVAILABILITY:
            return await self.handlers.handle_availability(payload, endpoint.platform)
        if endpoint.domain == WebhookDomain.RATES:
            return await self.handlers.handle_rates(payload, endpoint.platform)
        return await self.handlers.handle_booking(payload, endpoint.method, endpoint.platform)

    @staticmethod
    def _invalid(message: str, errors: Any) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": message, "data": {"errors": errors}}
        )

    async def process(self, endpoint: WebhookEndpoint, request: Request) -> JSONResponse:
        started = time.perf_counter()
        platform = endpoint.platform
        WEBHOOK_RECEIVED.labels(platform=platform, endpoint=endpoint.id).inc()

        try:
            verify_bearer_token(request.headers.get("Authorization"), self.secret)
        except WebhookAuthError as e:
            logger.warning("Rejected webhook", endpoint=endpoint.id, code=e.code)
            WEBHOOK_PROCESSED.labels(platform=platform, status="unauthorized").inc()
            return error_response(e.status, e.message, e.code)

        try:
            try:
                data = json.loads(await request.body() or b"null")
            except ValueError as e:
                WEBHOOK_PROCESSED.labels(platform=platform, status="invalid").inc()
                return self._invalid("Invalid JSON payload", [{"msg": str(e)}])

            try:
                payload = self.payload_model(endpoint).model_validate(data)
            except ValidationError as e:
                WEBHOOK_PROCESSED.labels(platform=platform, status="invalid").inc()
                return self._invalid("Invalid webhook payload", json.loads(e.json(include_url=False)))

            dedupe_key = self.deduplicator.key_for(endpoint, payload)
            if self.deduplicator.is_duplicate(dedupe_key):
                WEBHOOK_PROCESSED.labels(platform=platform, status="duplicate").inc()
                logger.info("Duplicate webhook ignored", endpoint=endpoint.id, key=dedupe_key)
                return JSONResponse(status_code=200, content={
                    "success": True,
                    "message": "Duplicate delivery ignored",
                    "data": {"duplicate": True, "syncId": payload.sync_id},
                })

            logger.info(
                "Received webhook",
                endpoint=endpoint.id,
                platform=platform,
                property_id=payload.property_id,
                sync_id=payload.sync_id
            )
            result = await self._dispatch(endpoint, payload)

            if result.success:
                self.deduplicator.mark_processed(dedupe_key)
                status = "success"
            else:
                status = "conflict" if result.requires_resolution else "rejected"
            WEBHOOK_PROCESSED.labels(platform=platform, status=status).inc()
            WEBHOOK_LATENCY.labels(platform=platform).observe(time.perf_counter() - started)

            return JSONResponse(status_code=result.status_code, content=result.to_dict())

        except Exception as e:
            logger.exception("Error processing webhook", endpoint=endpoint.id, platform=platform)
            WEBHOOK_PROCESSED.labels(platform=platform, status="error").inc()
            return error_response(
                500,
                f"Internal server error processing {endpoint.domain.value} update",
                "server_error",
                str(e)
            )


# =============================================================================
# ROUTER SETUP
# =============================================================================

def create_webhook_router(
    endpoints: List[WebhookEndpoint],
    secret: str,
    handlers: WebhookHandlers,
    deduplicator: Optional[WebhookDeduplicator] = None,
    health_path: str = "/api/webhooks/health"
) -> APIRouter:
    """
    Build the webhook router for an endpoint table.

    Raises:
        ValueError: For a bookings endpoint with an unsupported method
    """
    processor = WebhookProcessor(secret, handlers, deduplicator)
    router = APIRouter(tags=["Webhooks"])

    def make_route(endpoint: WebhookEndpoint):
        async def receive_webhook(request: Request) -> JSONResponse:
            return await processor.process(endpoint, request)

        return receive_webhook

    for endpoint in endpoints:
        if endpoint.domain == WebhookDomain.BOOKINGS and endpoint.method not in BOOKING_PAYLOADS:
            raise ValueError(f"Unsupported method for booking webhooks: {endpoint.method}")
        router.add_api_route(
            endpoint.path,
            make_route(endpoint),
            methods=[endpoint.method],
            name=f"webhook_{endpoint.id}",
        )

    @router.get(health_path)
    async def webhook_health_check():
        """Health check endpoint for webhook handlers."""
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "endpoints": [
                {"id": e.id, "method": e.method, "path": e.path, "platform": e.platform}
                for e in endpoints
            ],
        }

    return router
