"""
Platform Integration
====================

Shared behaviour of every channel integration, composed with a
PlatformAdapter that supplies the platform specifics.

Per-domain sync call:
1. Refuse (False, no I/O) when not connected or the rate limit is exhausted
2. Build the request with the adapter and send it through the resilient
   HTTP client
3. Refresh the rate-limit state from the response headers
4. On failure: classify the error, bump error_count, notify the user;
   a 401 drops the connection

State machine: Disconnected --authenticate ok--> Connected --401--> Disconnected
"""

from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import httpx
import structlog
from prometheus_client import Counter

from .conflicts import ConflictResolver, detect_conflicts
from .http_client import HttpError, HttpResponse, ResilientHttpClient
from .models import Booking, BookingStatus, ConflictResolution, ICalEvent, utcnow
from .notifications import LoggingNotificationSink, Notification, NotificationLevel, NotificationSink
from .platform_adapters.base_adapter import (
    ApiCall,
    AuthenticationError,
    ChannelAdapterError,
    ChannelRateLimitError,
    Credentials,
    IntegrationStatus,
    PlatformAdapter,
    PlatformBooking,
    SyncOptions,
    SyncReport,
    classify_http_error,
    user_message,
)
from .rate_limiter import ChannelRateLimiter
from .stores import BookingStore, InventorySource

if TYPE_CHECKING:
    from .sync_engine import SyncScheduler

logger = structlog.get_logger(__name__)

SYNC_OPERATIONS = Counter(
    "channel_sync_operations_total",
    "Channel sync operations by domain and outcome",
    ["channel_type", "domain", "result"]  # result: success, failure, skipped, conflict
)


def _day_start(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class PlatformIntegration:
    """
    One connection to one distribution channel.

    Usage:
        integration = PlatformIntegration(BookingComAdapter(), inventory, bookings, resolver)
        if await integration.authenticate(Credentials(api_key="...", secret_key="...")):
            await integration.manual_sync("property-1")
    """

    def __init__(
        self,
        adapter: PlatformAdapter,
        inventory: InventorySource,
        booking_store: BookingStore,
        resolver: ConflictResolver,
        notifications: Optional[NotificationSink] = None,
        scheduler: Optional["SyncScheduler"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.adapter = adapter
        self.inventory = inventory
        self.booking_store = booking_store
        self.resolver = resolver
        self.notifications = notifications or LoggingNotificationSink()
        self.scheduler = scheduler
        self._transport = transport
        self._sleep = sleep

        self.status = IntegrationStatus()
        self.rate_limiter = ChannelRateLimiter(adapter.channel_type.value, self.status.rate_limit)
        self.credentials: Optional[Credentials] = None
        self.last_report: Optional[SyncReport] = None
        self._retries: Optional[int] = None
        self._client: Optional[ResilientHttpClient] = None

    @property
    def name(self) -> str:
        return self.adapter.display_name

    @property
    def schedule_key(self) -> str:
        return f"channel:{self.adapter.channel_type.value}:{id(self)}"

    # =========================================================================
    # HTTP CLIENT
    # =========================================================================

    def _build_client(self, credentials: Credentials) -> ResilientHttpClient:
        kwargs: Dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return ResilientHttpClient(
            base_url=credentials.endpoint or self.adapter.default_base_url,
            default_headers={
                "Accept": "application/json",
                **self.adapter.auth_headers(credentials)
            },
            retries=self._retries,
            transport=self._transport,
            **kwargs
        )

    async def _replace_client(self, client: Optional[ResilientHttpClient]) -> None:
        old, self._client = self._client, client
        if old is not None and old is not client:
            await old.close()

    async def close(self) -> None:
        if self.scheduler is not None:
            self.stop_auto_sync()
        await self._replace_client(None)

    async def _send(self, call: ApiCall) -> HttpResponse:
        """Perform one platform call, keeping the rate-limit state current."""
        try:
            response = await self._client.request(
                call.method,
                call.endpoint,
                call.json,
                params=call.params
            )
        except HttpError as e:
            # 429s carry their own reset time; other failures may still report quota
            if e.status != 429:
                self.rate_limiter.update_from_headers(e.headers)
            raise
        self.rate_limiter.update_from_headers(response.headers)
        return response

    # =========================================================================
    # ERROR HANDLING
    # =========================================================================

    def _handle_error(self, operation: str, error: Exception) -> ChannelAdapterError:
        """Classify, count, notify. A 401 forces the disconnected state."""
        if isinstance(error, HttpError):
            classified = classify_http_error(error)
        elif isinstance(error, ChannelAdapterError):
            classified = error
        else:
            classified = ChannelAdapterError(str(error))

        self.status.error_count += 1

        if isinstance(classified, AuthenticationError):
            self.status.connected = False
        if isinstance(classified, ChannelRateLimitError) and classified.reset_time is not None:
            self.rate_limiter.mark_exhausted(classified.reset_time)

        logger.error(
            "Channel operation failed",
            channel=self.adapter.channel_type.value,
            operation=operation,
            error_kind=classified.kind,
            status_code=classified.status_code,
            error=classified.message,
            error_count=self.status.error_count
        )

        title, message = user_message(classified, self.name)
        self.notifications.notify(Notification(
            title=f"{self.name}: {title}",
            message=f"Failed to {operation}. {message}",
            level=NotificationLevel.ERROR
        ))
        return classified

    def _can_call(self, operation: str) -> bool:
        if not self.status.connected or self._client is None:
            logger.warning(
                "Channel not connected",
                channel=self.adapter.channel_type.value,
                operation=operation
            )
            return False
        return self.rate_limiter.acquire()

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    async def authenticate(self, credentials: Credentials) -> bool:
        """Verify credentials with the platform. Success connects the integration."""
        if not self.rate_limiter.acquire():
            return False

        client = self._build_client(credentials)
        previous = self._client
        self._client = client
        try:
            await self._send(self.adapter.authentication_request(credentials))
        except (HttpError, ChannelAdapterError) as e:
            self._client = previous
            await client.close()
            self._handle_error("authenticate", e)
            self.status.connected = False
            return False

        if previous is not None:
            await previous.close()
        self.credentials = credentials
        self.status.connected = True
        logger.info("Channel authenticated", channel=self.adapter.channel_type.value)
        self.notifications.notify(Notification(
            title=f"{self.name} Connected",
            message=f"Successfully connected to {self.name}."
        ))
        return True

    # =========================================================================
    # DOMAIN SYNC
    # =========================================================================

    async def _push(self, domain: str, operation: str, build: Callable[[], Awaitable[ApiCall]]) -> bool:
        channel = self.adapter.channel_type.value
        if not self._can_call(operation):
            SYNC_OPERATIONS.labels(channel_type=channel, domain=domain, result="skipped").inc()
            return False
        try:
            await self._send(await build())
        except Exception as e:
            self._handle_error(operation, e)
            SYNC_OPERATIONS.labels(channel_type=channel, domain=domain, result="failure").inc()
            return False
        SYNC_OPERATIONS.labels(channel_type=channel, domain=domain, result="success").inc()
        logger.info("Channel sync completed", channel=channel, domain=domain)
        return True

    async def sync_availability(self, property_id: str, room_ids: Optional[List[str]] = None) -> bool:
        async def build() -> ApiCall:
            records = await self.inventory.get_availability(property_id, room_ids)
            return self.adapter.availability_request(property_id, records)

        return await self._push("availability", "sync availability", build)

    async def sync_rates(self, property_id: str, room_ids: Optional[List[str]] = None) -> bool:
        async def build() -> ApiCall:
            records = await self.inventory.get_rates(property_id, room_ids)
            return self.adapter.rates_request(property_id, records)

        return await self._push("rates", "sync rates", build)

    async def sync_restrictions(self, property_id: str, room_ids: Optional[List[str]] = None) -> bool:
        async def build() -> ApiCall:
            records = await self.inventory.get_restrictions(property_id, room_ids)
            return self.adapter.restrictions_request(property_id, records)

        return await self._push("restrictions", "sync restrictions", build)

    async def sync_bookings(
        self,
        property_id: str,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None
    ) -> bool:
        """
        Pull bookings and reconcile them with the booking store.

        Returns False when the pull failed or produced conflicts.
        """
        channel = self.adapter.channel_type.value
        if not self._can_call("sync bookings"):
            SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result="skipped").inc()
            return False

        try:
            response = await self._send(
                self.adapter.bookings_request(property_id, from_date, to_date)
            )
            pulled = self.adapter.parse_bookings(response.data, property_id)
        except (HttpError, ChannelAdapterError) as e:
            self._handle_error("sync bookings", e)
            SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result="failure").inc()
            return False
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            self._handle_error("sync bookings", ChannelAdapterError(f"Malformed booking payload: {e}"))
            SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result="failure").inc()
            return False
        except Exception as e:
            self._handle_error("sync bookings", e)
            SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result="failure").inc()
            return False

        conflicts = 0
        try:
            for platform_booking in pulled:
                conflicts += await self._reconcile(platform_booking)
        except Exception as e:
            self._handle_error("sync bookings", e)
            SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result="failure").inc()
            return False

        result = "conflict" if conflicts else "success"
        SYNC_OPERATIONS.labels(channel_type=channel, domain="bookings", result=result).inc()
        logger.info(
            "Channel bookings pulled",
            channel=channel,
            property_id=property_id,
            bookings=len(pulled),
            conflicts=conflicts
        )
        if conflicts:
            self.notifications.notify(Notification(
                title=f"{self.name}: Booking Conflicts",
                message=f"{conflicts} booking conflict(s) need to be resolved.",
                level=NotificationLevel.WARNING
            ))
        return conflicts == 0

    async def _reconcile(self, pulled: PlatformBooking) -> int:
        """Upsert one pulled booking; returns the number of conflicts registered."""
        booking_id = f"{self.adapter.channel_type.value}-{pulled.channel_booking_id}"
        source = f"channel:{self.adapter.channel_type.value}"

        if pulled.status == "cancelled":
            if await self.booking_store.get_booking(booking_id) is not None:
                await self.booking_store.cancel_booking(booking_id)
            return 0

        incoming = ICalEvent(
            uid=booking_id,
            summary=pulled.guest_name or f"{self.name} reservation",
            start_date=_day_start(pulled.check_in),
            end_date=_day_start(pulled.check_out),
            status="CONFIRMED" if pulled.status == "confirmed" else "TENTATIVE",
        )
        existing = await self.booking_store.list_bookings(pulled.property_id, pulled.room_id)
        conflicts = detect_conflicts(
            incoming,
            existing,
            pulled.property_id,
            pulled.room_id,
            source=source,
            suggested=ConflictResolution.MANUAL
        )
        if conflicts:
            for conflict in conflicts:
                self.resolver.register(conflict)
            return len(conflicts)

        current = await self.booking_store.get_booking(booking_id)
        status = BookingStatus.CONFIRMED if pulled.status == "confirmed" else BookingStatus.PENDING
        fields = {
            "property_id": pulled.property_id,
            "room_id": pulled.room_id,
            "start_date": incoming.start_date,
            "end_date": incoming.end_date,
            "summary": incoming.summary,
            "status": status,
            "guest_name": pulled.guest_name,
            "total_amount": pulled.total_price,
            "currency": pulled.currency,
        }
        if current is None:
            booking = Booking(id=booking_id, source=source, **fields)
        else:
            booking = current.model_copy(update=fields)
        await self.booking_store.save_booking(booking)
        return 0

    # =========================================================================
    # ORCHESTRATION
    # =========================================================================

    def get_status(self) -> IntegrationStatus:
        """Snapshot of the current status; mutating it has no effect."""
        return self.status.snapshot()

    async def manual_sync_report(self, property_id: str) -> SyncReport:
        """
        Run all four domain syncs in order and report each result.

        A second call while one is running returns an all-False report
        without any I/O.
        """
        if self.status.sync_in_progress:
            logger.warning("Sync already in progress", channel=self.adapter.channel_type.value)
            return SyncReport()

        self.status.sync_in_progress = True
        report = SyncReport(started_at=utcnow())
        try:
            logger.info(
                "Starting manual sync",
                channel=self.adapter.channel_type.value,
                property_id=property_id
            )
            report.availability = await self.sync_availability(property_id)
            report.rates = await self.sync_rates(property_id)
            report.restrictions = await self.sync_restrictions(property_id)
            report.bookings = await self.sync_bookings(property_id)
        except Exception as e:
            self._handle_error("run manual sync", e)
        finally:
            self.status.last_sync = utcnow()
            self.status.sync_in_progress = False
            report.finished_at = self.status.last_sync

        self.last_report = report
        logger.info(
            "Manual sync completed",
            channel=self.adapter.channel_type.value,
            property_id=property_id,
            success=report.success
        )
        return report

    async def manual_sync(self, property_id: str) -> bool:
        if self.status.sync_in_progress:
            logger.warning("Sync already in progress", channel=self.adapter.channel_type.value)
            return False
        report = await self.manual_sync_report(property_id)
        return report.success

    def start_auto_sync(self, options: SyncOptions, property_id: str) -> None:
        """
        Schedule manual_sync(property_id) every max(5, sync_interval) minutes.

        Any existing schedule of this integration is cancelled first.
        """
        if self.scheduler is None:
            raise RuntimeError("Auto-sync requires a scheduler")

        self.stop_auto_sync()
        if not options.auto_sync:
            return

        self._retries = options.retry_attempts
        if self._client is not None:
            self._client.retries = options.retry_attempts

        interval = self.scheduler.schedule(
            self.schedule_key,
            options.sync_interval,
            lambda: self.manual_sync(property_id)
        )
        logger.info(
            "Auto sync started",
            channel=self.adapter.channel_type.value,
            property_id=property_id,
            interval_seconds=interval
        )

    def stop_auto_sync(self) -> None:
        if self.scheduler is not None and self.scheduler.cancel(self.schedule_key):
            logger.info("Auto sync stopped", channel=self.adapter.channel_type.value)
