"""
Collaborator Stores
===================

Async interfaces for the records the sync engine reads and writes but does
not own, plus in-memory implementations used for tests and local runs.

- FeedStore: iCal feed configuration CRUD
- BookingStore: existing bookings (conflict diffing, imports)
- InventorySource: availability / rates / restrictions to push to channels
- InventoryStore: availability / rate updates received from webhooks
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol

from .models import (
    AvailabilityRecord,
    Booking,
    BookingStatus,
    ICalFeed,
    RateRecord,
    RestrictionRecord,
    utcnow,
)



# =============================================================================
# INTERFACES
# =============================================================================

class FeedStore(Protocol):
    async def list_feeds(self, property_id: Optional[str] = None) -> List[ICalFeed]: ...

    async def get_feed(self, feed_id: str) -> Optional[ICalFeed]: ...

    async def create_feed(self, feed: ICalFeed) -> ICalFeed: ...

    async def update_feed(self, feed_id: str, **changes: Any) -> Optional[ICalFeed]: ...

    async def delete_feed(self, feed_id: str) -> bool: ...


class BookingStore(Protocol):
    async def list_bookings(
        self,
        property_id: str,
        room_id: Optional[str] = None,
        include_cancelled: bool = False
    ) -> List[Booking]: ...

    async def get_booking(self, booking_id: str) -> Optional[Booking]: ...

    async def save_booking(self, booking: Booking) -> Booking: ...

    async def cancel_booking(self, booking_id: str) -> Optional[Booking]: ...

    async def delete_booking(self, booking_id: str) -> bool: ...


class InventorySource(Protocol):
    async def get_availability(
        self,
        property_id: str,
        room_ids: Optional[List[str]] = None
    ) -> List[AvailabilityRecord]: ...

    async def get_rates(
        self,
        property_id: str,
        room_ids: Optional[List[str]] = None
    ) -> List[RateRecord]: ...

    async def get_restrictions(
        self,
        property_id: str,
        room_ids: Optional[List[str]] = None
    ) -> List[RestrictionRecord]: ...


class InventoryStore(Protocol):
    async def apply_availability(
        self,
        property_id: str,
        records: List[AvailabilityRecord]
    ) -> None: ...

    async def apply_rates(self, property_id: str, records: List[RateRecord]) -> None: ...


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

def _room_matches(room_id: Optional[str], wanted: Optional[str]) -> bool:
    """A property-level query (wanted=None) matches every room."""
    return wanted is None or room_id is None or room_id == wanted


class InMemoryFeedStore:
    """Dictionary-backed FeedStore."""

    def __init__(self, feeds: Optional[List[ICalFeed]] = None):
        self._feeds: Dict[str, ICalFeed] = {f.id: f for f in feeds or []}

    async def list_feeds(self, property_id: Optional[str] = None) -> List[ICalFeed]:
        feeds = [
            f for f in self._feeds.values()
            if property_id is None or f.property_id == property_id
        ]
        return sorted(feeds, key=lambda f: f.created_at, reverse=True)

    async def get_feed(self, feed_id: str) -> Optional[ICalFeed]:
        return self._feeds.get(feed_id)

    async def create_feed(self, feed: ICalFeed) -> ICalFeed:
        if not feed.id:
            feed = feed.model_copy(update={"id": str(uuid.uuid4())})
        self._feeds[feed.id] = feed
        return feed

    async def update_feed(self, feed_id: str, **changes: Any) -> Optional[ICalFeed]:
        feed = self._feeds.get(feed_id)
        if feed is None:
            return None
        changes["updated_at"] = utcnow()
        updated = feed.model_copy(update=changes)
        self._feeds[feed_id] = updated
        return updated

    async def delete_feed(self, feed_id: str) -> bool:
        return self._feeds.pop(feed_id, None) is not None


class InMemoryBookingStore:
    """Dictionary-backed BookingStore."""

    def __init__(self, bookings: Optional[List[Booking]] = None):
        self._bookings: Dict[str, Booking] = {b.id: b for b in bookings or []}

    async def list_bookings(
        self,
        property_id: str,
        room_id: Optional[str] = None,
        include_cancelled: bool = False
    ) -> List[Booking]:
        bookings = [
            b for b in self._bookings.values()
            if b.property_id == property_id
            and _room_matches(b.room_id, room_id)
            and (include_cancelled or b.status != BookingStatus.CANCELLED)
        ]
        return sorted(bookings, key=lambda b: b.start_date)

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return self._bookings.get(booking_id)

    async def save_booking(self, booking: Booking) -> Booking:
        booking = booking.model_copy(update={"updated_at": utcnow()})
        self._bookings[booking.id] = booking
        return booking

    async def cancel_booking(self, booking_id: str) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        if booking is None:
            return None
        cancelled = booking.model_copy(
            update={"status": BookingStatus.CANCELLED, "updated_at": utcnow()}
        )
        self._bookings[booking_id] = cancelled
        return cancelled

    async def delete_booking(self, booking_id: str) -> bool:
        return self._bookings.pop(booking_id, None) is not None


class InMemoryInventory:
    """
    Inventory held in dictionaries keyed by (property, room, date).

    Serves both as InventorySource for outbound pushes and as
    InventoryStore for webhook updates.
    """

    def __init__(self):
        self.availability: Dict[tuple, AvailabilityRecord] = {}
        self.rates: Dict[tuple, RateRecord] = {}
        self.restrictions: Dict[tuple, RestrictionRecord] = {}

    @staticmethod
    def _select(records: Dict[tuple, Any], property_id: str, room_ids: Optional[List[str]]) -> List[Any]:
        selected = [
            record for (pid, room_id, _), record in records.items()
            if pid == property_id and (not room_ids or room_id in room_ids)
        ]
        return sorted(selected, key=lambda r: (r.room_id or "", r.date))

    async def get_availability(self, property_id: str, room_ids: Optional[List[str]] = None) -> List[AvailabilityRecord]:
        return self._select(self.availability, property_id, room_ids)

    async def get_rates(self, property_id: str, room_ids: Optional[List[str]] = None) -> List[RateRecord]:
        return self._select(self.rates, property_id, room_ids)

    async def get_restrictions(self, property_id: str, room_ids: Optional[List[str]] = None) -> List[RestrictionRecord]:
        return self._select(self.restrictions, property_id, room_ids)

    async def apply_availability(self, property_id: str, records: List[AvailabilityRecord]) -> None:
        for record in records:
            self.availability[(property_id, record.room_id, record.date)] = record

    async def apply_rates(self, property_id: str, records: List[RateRecord]) -> None:
        for record in records:
            self.rates[(property_id, record.room_id, record.date)] = record

    def set_restriction(self, property_id: str, record: RestrictionRecord) -> None:
        self.restrictions[(property_id, record.room_id, record.date)] = record

    def get_availability_for(self, property_id: str, room_id: Optional[str], day: date) -> Optional[AvailabilityRecord]:
        return self.availability.get((property_id, room_id, day))
