"""
Booking Conflict Detection & Resolution
=======================================

One conflict model shared by every inbound path: feed imports, booking
pulls from channel APIs and booking webhooks.

A conflict exists when an incoming booking (as an ICalEvent) overlaps an
existing confirmed booking on the same property and room. Intervals are
half-open: [start, end). A conflict is a result, never an exception.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

import structlog

from .config import settings
from .models import (
    Booking,
    BookingStatus,
    ConflictResolution,
    ICalConflict,
    ICalEvent,
)
from .stores import BookingStore

logger = structlog.get_logger(__name__)

RESOLVED_HISTORY_SIZE = 1000

_EVENT_STATUS = {
    BookingStatus.CONFIRMED: "CONFIRMED",
    BookingStatus.PENDING: "TENTATIVE",
    BookingStatus.CANCELLED: "CANCELLED",
}


def intervals_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime
) -> bool:
    """Half-open interval overlap: touching intervals do not overlap."""
    return start_a < end_b and start_b < end_a


def event_uid(booking_id: str) -> str:
    return f"{booking_id}@{settings.ICAL_UID_DOMAIN}"


def booking_id_from_uid(uid: str) -> str:
    """Invert event_uid(); foreign UIDs are used as booking ids unchanged."""
    suffix = f"@{settings.ICAL_UID_DOMAIN}"
    if uid.endswith(suffix):
        return uid[: -len(suffix)]
    return uid


def booking_to_event(booking: Booking) -> ICalEvent:
    return ICalEvent(
        uid=event_uid(booking.id),
        summary=booking.summary,
        start_date=booking.start_date,
        end_date=booking.end_date,
        created_at=booking.created_at,
        last_modified=booking.updated_at,
        status=_EVENT_STATUS.get(booking.status, "CONFIRMED"),
    )


def _same_scope(booking: Booking, property_id: str, room_id: Optional[str]) -> bool:
    if booking.property_id != property_id:
        return False
    # A property-level booking or query blocks every room
    return room_id is None or booking.room_id is None or booking.room_id == room_id


def detect_conflicts(
    incoming: ICalEvent,
    existing: Iterable[Booking],
    property_id: str,
    room_id: Optional[str] = None,
    source: Optional[str] = None,
    suggested: ConflictResolution = ConflictResolution.KEEP_EXISTING
) -> List[ICalConflict]:
    """
    Find existing confirmed bookings the incoming event collides with.

    The booking the incoming event itself represents (same uid) is
    excluded, so re-importing an unchanged event never conflicts.
    """
    incoming_id = booking_id_from_uid(incoming.uid)
    conflicts = []

    for booking in existing:
        if not booking.is_confirmed or booking.id == incoming_id:
            continue
        if not _same_scope(booking, property_id, room_id):
            continue
        if intervals_overlap(
            incoming.start_date,
            incoming.end_date,
            booking.start_date,
            booking.end_date
        ):
            conflicts.append(ICalConflict(
                existing_event=booking_to_event(booking),
                incoming_event=incoming,
                resolution=suggested,
                property_id=property_id,
                room_id=room_id if room_id is not None else booking.room_id,
                source=source,
            ))

    return conflicts


# =============================================================================
# RESOLUTION
# =============================================================================

class ConflictResolver:
    """
    Registry of unresolved conflicts and the single place resolutions are
    applied, whatever the origin of the conflict.
    """

    def __init__(self, booking_store: BookingStore, history_size: int = RESOLVED_HISTORY_SIZE):
        self.booking_store = booking_store
        self.history_size = history_size
        self._pending: Dict[str, ICalConflict] = {}
        # Most recent resolutions only; oldest entries are evicted first
        self._resolved: "OrderedDict[str, ConflictResolution]" = OrderedDict()

    def register(self, conflict: ICalConflict) -> str:
        key = conflict.key
        self._resolved.pop(key, None)
        self._pending[key] = conflict
        logger.info(
            "Booking conflict registered",
            key=key,
            property_id=conflict.property_id,
            room_id=conflict.room_id,
            source=conflict.source
        )
        return key

    def get(self, key: str) -> Optional[ICalConflict]:
        return self._pending.get(key)

    def pending(self, property_id: Optional[str] = None) -> List[ICalConflict]:
        return [
            c for c in self._pending.values()
            if property_id is None or c.property_id == property_id
        ]

    def is_resolved(self, key: str) -> bool:
        return key in self._resolved

    def discard_source(self, source: str) -> None:
        """Drop unresolved conflicts of one origin (before it is re-imported)."""
        for key in [k for k, c in self._pending.items() if c.source == source]:
            del self._pending[key]

    async def resolve(
        self,
        conflict: Union[ICalConflict, str],
        resolution: ConflictResolution
    ) -> bool:
        """
        Apply a resolution.

        keep_existing discards the incoming event, use_incoming replaces the
        existing booking with the incoming one, manual records that the
        operator settled it out of band. Resolving an already resolved
        conflict is a no-op returning True.

        Returns:
            False only when a key is given that was never registered
        """
        key = conflict if isinstance(conflict, str) else conflict.key
        resolution = ConflictResolution(resolution)

        if key in self._resolved and key not in self._pending:
            logger.debug("Conflict already resolved", key=key)
            return True

        target = self._pending.get(key)
        if target is None:
            if isinstance(conflict, str):
                return False
            target = conflict

        if resolution == ConflictResolution.USE_INCOMING:
            await self._use_incoming(target)

        self._pending.pop(key, None)
        self._resolved[key] = resolution
        self._resolved.move_to_end(key)
        while len(self._resolved) > self.history_size:
            self._resolved.popitem(last=False)
        logger.info("Booking conflict resolved", key=key, resolution=resolution.value)
        return True

    async def _use_incoming(self, conflict: ICalConflict) -> None:
        existing_id = booking_id_from_uid(conflict.existing_event.uid)
        await self.booking_store.cancel_booking(existing_id)

        incoming = conflict.incoming_event
        incoming_id = booking_id_from_uid(incoming.uid)
        current = await self.booking_store.get_booking(incoming_id)
        if current is not None:
            replacement = current.model_copy(update={
                "start_date": incoming.start_date,
                "end_date": incoming.end_date,
                "summary": incoming.summary,
                "status": BookingStatus.CONFIRMED,
            })
        else:
            replacement = Booking(
                id=incoming_id,
                property_id=conflict.property_id,
                room_id=conflict.room_id,
                start_date=incoming.start_date,
                end_date=incoming.end_date,
                summary=incoming.summary,
                source=conflict.source or "conflict",
            )
        await self.booking_store.save_booking(replacement)
