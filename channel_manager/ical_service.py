"""
iCal Feed Service
=================

Import and export of iCalendar feeds for properties and rooms.

Import pipeline (import_feed):
1. Look up the feed; export-only feeds are refused
2. Mark it pending and download the feed URL
3. Parse the calendar (invalid events are dropped by the parser)
4. Diff the events against the bookings of the feed's property/room:
   cancelled events cancel, known events update, new events create,
   bookings this feed created that vanished from it are cancelled
5. Overlaps with other confirmed bookings become conflicts for the
   resolver and leave the feed in the error state
"""

import hashlib
import hmac
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from prometheus_client import Counter

from .config import settings
from .conflicts import ConflictResolver, booking_id_from_uid, detect_conflicts
from .http_client import HttpError, ResilientHttpClient
from .ical_parser import generate_ical, parse_ical
from .models import (
    Booking,
    ConflictResolution,
    FeedDirection,
    FeedStatus,
    ICalConflict,
    ICalEvent,
    ICalFeed,
    ICalSyncResult,
    utcnow,
)
from .notifications import LoggingNotificationSink, Notification, NotificationLevel, NotificationSink
from .stores import BookingStore, FeedStore

logger = structlog.get_logger(__name__)

FEED_IMPORTS = Counter(
    "ical_feed_imports_total",
    "iCal feed imports by outcome",
    ["result"]  # result: success, conflict, error, refused
)

CONFLICT_MESSAGE = "Conflicts detected during sync"
EXPORT_TOKEN_LENGTH = 32


class FeedNotFoundError(LookupError):
    """Raised when a feed id is unknown."""

    def __init__(self, feed_id: str):
        self.feed_id = feed_id
        super().__init__(f"iCal feed not found: {feed_id}")


# =============================================================================
# EXPORT TOKENS
# =============================================================================

def export_token(property_id: str, room_id: Optional[str] = None, key: Optional[str] = None) -> str:
    """Deterministic access token for an export URL."""
    secret = (key or settings.EXPORT_SIGNING_KEY).encode()
    message = f"{property_id}:{room_id or ''}".encode()
    return hmac.new(secret, message, hashlib.sha256).hexdigest()[:EXPORT_TOKEN_LENGTH]


def verify_export_token(
    token: Optional[str],
    property_id: str,
    room_id: Optional[str] = None,
    key: Optional[str] = None
) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token, export_token(property_id, room_id, key))


def export_path(property_id: str, room_id: Optional[str] = None) -> str:
    if room_id:
        return f"/api/ical/export/property/{property_id}/room/{room_id}.ics"
    return f"/api/ical/export/property/{property_id}.ics"


# =============================================================================
# SERVICE
# =============================================================================

class ICalService:
    """Feed management, import pipeline and export for iCal calendars."""

    def __init__(
        self,
        feed_store: FeedStore,
        booking_store: BookingStore,
        resolver: ConflictResolver,
        notifications: Optional[NotificationSink] = None,
        scheduler=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.feed_store = feed_store
        self.booking_store = booking_store
        self.resolver = resolver
        self.notifications = notifications or LoggingNotificationSink()
        self.scheduler = scheduler

        kwargs: Dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self.http = ResilientHttpClient(
            default_headers={"Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5"},
            transport=transport,
            **kwargs
        )

    async def close(self) -> None:
        await self.http.close()

    # =========================================================================
    # FEED MANAGEMENT
    # =========================================================================

    async def get_feeds(self, property_id: Optional[str] = None) -> List[ICalFeed]:
        return await self.feed_store.list_feeds(property_id)

    async def get_feed(self, feed_id: str) -> Optional[ICalFeed]:
        return await self.feed_store.get_feed(feed_id)

    async def create_feed(
        self,
        name: str,
        url: str,
        property_id: str,
        room_id: Optional[str] = None,
        auto_sync: bool = False,
        sync_interval: int = 60,
        direction: FeedDirection = FeedDirection.IMPORT,
        priority: int = 0
    ) -> ICalFeed:
        feed = ICalFeed(
            id=str(uuid.uuid4()),
            name=name,
            url=url,
            property_id=property_id,
            room_id=room_id,
            auto_sync=auto_sync,
            sync_interval=sync_interval,
            direction=direction,
            priority=priority,
        )
        created = await self.feed_store.create_feed(feed)
        logger.info("iCal feed created", feed_id=created.id, property_id=property_id)
        return created

    async def update_feed(self, feed_id: str, **changes: Any) -> Optional[ICalFeed]:
        updated = await self.feed_store.update_feed(feed_id, **changes)
        if updated is not None and changes.get("auto_sync") is False:
            self._cancel_schedule(feed_id)
        return updated

    async def delete_feed(self, feed_id: str) -> bool:
        self._cancel_schedule(feed_id)
        deleted = await self.feed_store.delete_feed(feed_id)
        if deleted:
            logger.info("iCal feed deleted", feed_id=feed_id)
        return deleted

    # =========================================================================
    # IMPORT
    # =========================================================================

    async def _fetch(self, url: str) -> str:
        response = await self.http.get(url)
        data = response.data
        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        if data is None:
            return ""
        return str(data)

    async def _suggest(self, feed: ICalFeed, conflict: ICalConflict) -> ConflictResolution:
        """
        Resolution hint from feed priority. Bookings that did not come from
        a feed always win.
        """
        existing = await self.booking_store.get_booking(
            booking_id_from_uid(conflict.existing_event.uid)
        )
        if existing is None or not existing.source.startswith("ical:"):
            return ConflictResolution.KEEP_EXISTING

        other = await self.feed_store.get_feed(existing.source[len("ical:"):])
        if other is None or feed.priority > other.priority:
            return ConflictResolution.USE_INCOMING
        if feed.priority == other.priority:
            return ConflictResolution.MANUAL
        return ConflictResolution.KEEP_EXISTING

    @staticmethod
    def _changed(booking: Booking, event: ICalEvent) -> bool:
        return (
            booking.start_date != event.start_date
            or booking.end_date != event.end_date
            or booking.summary != event.summary
        )

    async def _fail(self, feed: ICalFeed, message: str) -> ICalSyncResult:
        await self.feed_store.update_feed(feed.id, status=FeedStatus.ERROR, error=message)
        FEED_IMPORTS.labels(result="error").inc()
        logger.error("iCal import failed", feed_id=feed.id, error=message)
        self.notifications.notify(Notification(
            title="iCal Sync Failed",
            message=f"{feed.name}: {message}",
            level=NotificationLevel.ERROR
        ))
        return ICalSyncResult(success=False, error=message)

    async def import_feed(self, feed_id: str) -> ICalSyncResult:
        """
        Import one feed into the booking store.

        Raises:
            FeedNotFoundError: If the feed does not exist
        """
        feed = await self.feed_store.get_feed(feed_id)
        if feed is None:
            raise FeedNotFoundError(feed_id)

        if feed.direction == FeedDirection.EXPORT:
            FEED_IMPORTS.labels(result="refused").inc()
            logger.warning("Import refused for export-only feed", feed_id=feed_id)
            return ICalSyncResult(success=False, error="Feed is export-only")

        await self.feed_store.update_feed(feed_id, status=FeedStatus.PENDING, error=None)

        try:
            text = await self._fetch(feed.url)
        except HttpError as e:
            return await self._fail(feed, e.message)

        try:
            result = await self._apply(feed, parse_ical(text))
        except Exception as e:
            logger.exception("iCal import aborted", feed_id=feed_id)
            return await self._fail(feed, str(e) or type(e).__name__)

        logger.info(
            "iCal import finished",
            feed_id=feed_id,
            processed=result.events_processed,
            created=result.events_created,
            updated=result.events_updated,
            removed=result.events_removed,
            conflicts=len(result.conflicts)
        )
        return result

    async def _apply(self, feed: ICalFeed, events: List[ICalEvent]) -> ICalSyncResult:
        """Diff parsed events against the feed's bookings and record the outcome."""
        self.resolver.discard_source(feed.source_tag)

        bookings = {
            b.id: b
            for b in await self.booking_store.list_bookings(feed.property_id, feed.room_id)
        }
        result = ICalSyncResult(success=True)
        seen = set()

        for event in events:
            result.events_processed += 1
            booking_id = booking_id_from_uid(event.uid)
            seen.add(booking_id)
            existing = bookings.get(booking_id)

            if event.is_cancelled:
                # Only bookings this feed created may be cancelled by it
                if existing is not None and existing.source == feed.source_tag:
                    await self.booking_store.cancel_booking(booking_id)
                    del bookings[booking_id]
                    result.events_removed += 1
                continue

            conflicts = detect_conflicts(
                event,
                bookings.values(),
                feed.property_id,
                feed.room_id,
                source=feed.source_tag
            )
            if conflicts:
                for conflict in conflicts:
                    suggested = await self._suggest(feed, conflict)
                    conflict = conflict.model_copy(update={"resolution": suggested})
                    self.resolver.register(conflict)
                    result.conflicts.append(conflict)
                continue

            if existing is None:
                booking = await self.booking_store.save_booking(Booking(
                    id=booking_id,
                    property_id=feed.property_id,
                    room_id=feed.room_id,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    summary=event.summary,
                    source=feed.source_tag,
                ))
                bookings[booking_id] = booking
                result.events_created += 1
            elif existing.source == feed.source_tag and self._changed(existing, event):
                bookings[booking_id] = await self.booking_store.save_booking(existing.model_copy(update={
                    "start_date": event.start_date,
                    "end_date": event.end_date,
                    "summary": event.summary,
                }))
                result.events_updated += 1

        for booking in list(bookings.values()):
            if booking.source == feed.source_tag and booking.id not in seen:
                await self.booking_store.cancel_booking(booking.id)
                result.events_removed += 1

        if result.conflicts:
            result.success = False
            result.error = CONFLICT_MESSAGE
            await self.feed_store.update_feed(
                feed.id,
                status=FeedStatus.ERROR,
                error=CONFLICT_MESSAGE,
                last_sync=utcnow()
            )
            FEED_IMPORTS.labels(result="conflict").inc()
            self.notifications.notify(Notification(
                title="iCal Sync Warning",
                message=f"Completed with {len(result.conflicts)} conflicts. Review required.",
                level=NotificationLevel.WARNING
            ))
        else:
            await self.feed_store.update_feed(
                feed.id,
                status=FeedStatus.ACTIVE,
                error=None,
                last_sync=utcnow()
            )
            FEED_IMPORTS.labels(result="success").inc()
            self.notifications.notify(Notification(
                title="iCal Sync Completed",
                message=(
                    f"Processed {result.events_processed} events, created "
                    f"{result.events_created}, updated {result.events_updated}"
                )
            ))
        return result

    # =========================================================================
    # EXPORT
    # =========================================================================

    async def export_feed(
        self,
        property_id: str,
        room_id: Optional[str] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None
    ) -> str:
        """Render the bookings of a property (or room) as an ICS document."""
        period_start = period_start or utcnow().date()
        period_end = period_end or period_start + timedelta(days=settings.ICAL_EXPORT_DAYS)

        bookings = await self.booking_store.list_bookings(property_id, room_id)
        name = f"{property_id} / {room_id}" if room_id else property_id
        return generate_ical(
            bookings,
            window_start=datetime.combine(period_start, time.min, tzinfo=timezone.utc),
            window_end=datetime.combine(period_end, time.min, tzinfo=timezone.utc),
            calendar_name=name
        )

    def generate_export_url(self, property_id: str, room_id: Optional[str] = None) -> str:
        base = settings.PUBLIC_BASE_URL.rstrip("/")
        token = export_token(property_id, room_id)
        return f"{base}{export_path(property_id, room_id)}?token={token}"

    # =========================================================================
    # AUTO-SYNC
    # =========================================================================

    @staticmethod
    def schedule_key(feed_id: str) -> str:
        return f"ical:{feed_id}"

    def _cancel_schedule(self, feed_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(self.schedule_key(feed_id))

    async def start_auto_sync(self, feed_id: str) -> bool:
        """Schedule periodic imports for a feed with auto_sync enabled."""
        feed = await self.feed_store.get_feed(feed_id)
        if feed is None or not feed.auto_sync or self.scheduler is None:
            return False
        self.scheduler.schedule(
            self.schedule_key(feed_id),
            feed.sync_interval,
            lambda: self.import_feed(feed_id)
        )
        return True

    async def stop_auto_sync(self, feed_id: str) -> bool:
        feed = await self.feed_store.get_feed(feed_id)
        if feed is None:
            return False
        self._cancel_schedule(feed_id)
        await self.feed_store.update_feed(feed_id, auto_sync=False)
        return True
