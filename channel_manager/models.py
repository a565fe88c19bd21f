"""
Shared records exchanged between the sync engine, the iCal engine,
the webhook layer and the external stores.

JSON representations use camelCase field names; Python code uses
snake_case attributes.
"""

from datetime import date as date_type, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serializing to camelCase and accepting both spellings."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# ENUMS
# =============================================================================

class FeedStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"


class FeedDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    BOTH = "both"


class ConflictResolution(str, Enum):
    KEEP_EXISTING = "keep_existing"
    USE_INCOMING = "use_incoming"
    MANUAL = "manual"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELLED = "cancelled"


# =============================================================================
# ICAL
# =============================================================================

class ICalEvent(CamelModel):
    """One VEVENT of a calendar feed."""
    uid: str
    summary: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_date: datetime
    end_date: datetime
    created_at: datetime = Field(default_factory=utcnow)
    last_modified: datetime = Field(default_factory=utcnow)
    status: str = "CONFIRMED"
    organizer: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status.upper() == "CANCELLED"


class ICalConflict(CamelModel):
    """
    An incoming event overlapping an existing confirmed booking.

    Lives only while unresolved. ``resolution`` carries the suggested
    resolution until the conflict is resolved.
    """
    existing_event: ICalEvent
    incoming_event: ICalEvent
    resolution: ConflictResolution = ConflictResolution.KEEP_EXISTING
    property_id: str
    room_id: Optional[str] = None
    source: Optional[str] = None

    @property
    def key(self) -> str:
        """Stable identity of this conflict."""
        return ":".join([
            self.property_id,
            self.room_id or "*",
            self.existing_event.uid,
            self.incoming_event.uid,
        ])

    def to_json_dict(self) -> Dict[str, Any]:
        data = super().to_json_dict()
        data["key"] = self.key
        return data


class ICalFeed(CamelModel):
    """Configuration and sync state of one third-party calendar feed."""
    id: str
    name: str
    url: str
    property_id: str
    room_id: Optional[str] = None
    last_sync: Optional[datetime] = None
    auto_sync: bool = False
    sync_interval: int = 60  # minutes
    status: FeedStatus = FeedStatus.PENDING
    error: Optional[str] = None
    direction: FeedDirection = FeedDirection.IMPORT
    priority: int = 0  # Higher wins as a resolution hint
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def source_tag(self) -> str:
        return f"ical:{self.id}"


class ICalSyncResult(CamelModel):
    success: bool
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_removed: int = 0
    conflicts: List[ICalConflict] = Field(default_factory=list)
    error: Optional[str] = None


# =============================================================================
# BOOKINGS & INVENTORY
# =============================================================================

class Booking(CamelModel):
    """An existing booking as held by the booking store."""
    id: str
    property_id: str
    room_id: Optional[str] = None
    start_date: datetime
    end_date: datetime
    summary: str = "Reserved"
    status: BookingStatus = BookingStatus.CONFIRMED
    source: str = "direct"
    guest_name: Optional[str] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED


class AvailabilityRecord(CamelModel):
    room_id: Optional[str] = None
    date: date_type
    available: bool
    channel: Optional[str] = None


class RateRecord(CamelModel):
    room_id: Optional[str] = None
    date: date_type
    amount: Decimal = Field(ge=0)
    currency: str = "EUR"
    channel: Optional[str] = None


class RestrictionRecord(CamelModel):
    room_id: Optional[str] = None
    date: date_type
    min_stay: Optional[int] = Field(default=None, ge=1)
    max_stay: Optional[int] = Field(default=None, ge=1)
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
