"""
Shared test doubles and fixtures.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx
import pytest

from channel_manager.conflicts import ConflictResolver
from channel_manager.models import Booking, BookingStatus
from channel_manager.notifications import RecordingNotificationSink
from channel_manager.stores import InMemoryBookingStore, InMemoryFeedStore, InMemoryInventory


# ── Test Doubles ─────────────────────────────────────────────

PROPERTY_ID = "prop-1"
ROOM_ID = "room-1"


def day(year: int, month: int, dom: int, hour: int = 0) -> datetime:
    return datetime(year, month, dom, hour, tzinfo=timezone.utc)


def make_booking(
    booking_id: str,
    start: datetime,
    end: datetime,
    property_id: str = PROPERTY_ID,
    room_id: Optional[str] = ROOM_ID,
    status: BookingStatus = BookingStatus.CONFIRMED,
    source: str = "direct",
    summary: str = "Reserved"
) -> Booking:
    return Booking(
        id=booking_id,
        property_id=property_id,
        room_id=room_id,
        start_date=start,
        end_date=end,
        status=status,
        source=source,
        summary=summary,
    )


class SleepRecorder:
    """Stands in for asyncio.sleep in backoff paths; records the delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def recording_handler(request: httpx.Request):
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)

    @property
    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


def json_ok(payload=None, headers=None) -> httpx.Response:
    return httpx.Response(200, json=payload if payload is not None else {}, headers=headers)


# ── Fixtures ─────────────────────────────────────────────────

@pytest.fixture
def booking_store():
    return InMemoryBookingStore()


@pytest.fixture
def feed_store():
    return InMemoryFeedStore()


@pytest.fixture
def inventory():
    return InMemoryInventory()


@pytest.fixture
def resolver(booking_store):
    return ConflictResolver(booking_store)


@pytest.fixture
def notifications():
    return RecordingNotificationSink()


@pytest.fixture
def sleeper():
    return SleepRecorder()
