"""
Booking.com Channel Adapter
===========================

Platform adapter for the Booking.com supply JSON API.

Auth: Basic Auth (api key : secret key)
Data Format: JSON

Endpoints:
- POST /getHotels - Credential check
- POST /setAvailability - Push room availability
- POST /setRates - Push daily rates
- POST /setRestrictions - Push stay restrictions
- POST /getBookings - Pull reservations
"""

import base64
from datetime import date
from typing import Any, Dict, List, Optional

import structlog

from ..models import AvailabilityRecord, RateRecord, RestrictionRecord
from .base_adapter import (
    ApiCall,
    ChannelType,
    Credentials,
    PlatformBooking,
    format_day,
    parse_day,
    to_decimal,
)

logger = structlog.get_logger(__name__)


class BookingComAdapter:
    """Adapter for the Booking.com API."""

    channel_type = ChannelType.BOOKING_COM
    display_name = "Booking.com"
    default_base_url = "https://supply-xml.booking.com/json"

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        token = base64.b64encode(
            f"{credentials.api_key}:{credentials.secret_key or ''}".encode()
        ).decode()
        return {"Authorization": f"Basic {token}"}

    def authentication_request(self, credentials: Credentials) -> ApiCall:
        return ApiCall("POST", "/getHotels", json={})

    # =========================================================================
    # INVENTORY PUSH
    # =========================================================================

    def availability_request(self, property_id: str, records: List[AvailabilityRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/setAvailability",
            json={
                "hotel_id": property_id,
                "availability": [
                    {
                        "room_id": r.room_id,
                        "date": format_day(r.date),
                        # rooms_to_sell, as in OTA BookingLimit
                        "rooms_to_sell": 1 if r.available else 0
                    }
                    for r in records
                ]
            }
        )

    def rates_request(self, property_id: str, records: List[RateRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/setRates",
            json={
                "hotel_id": property_id,
                "rates": [
                    {
                        "room_id": r.room_id,
                        "date": format_day(r.date),
                        "price": str(r.amount),
                        "currency_code": r.currency
                    }
                    for r in records
                ]
            }
        )

    def restrictions_request(self, property_id: str, records: List[RestrictionRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/setRestrictions",
            json={
                "hotel_id": property_id,
                "restrictions": [
                    {
                        "room_id": r.room_id,
                        "date": format_day(r.date),
                        "min_stay_arrival": r.min_stay,
                        "max_stay": r.max_stay,
                        "closed_on_arrival": r.closed_to_arrival,
                        "closed_on_departure": r.closed_to_departure
                    }
                    for r in records
                ]
            }
        )

    # =========================================================================
    # BOOKING RETRIEVAL
    # =========================================================================

    def bookings_request(
        self,
        property_id: str,
        from_date: Optional[date],
        to_date: Optional[date]
    ) -> ApiCall:
        body: Dict[str, Any] = {"hotel_id": property_id}
        if from_date:
            body["arrival_date_from"] = format_day(from_date)
        if to_date:
            body["arrival_date_to"] = format_day(to_date)
        return ApiCall("POST", "/getBookings", json=body)

    def parse_bookings(self, data: Any, property_id: str) -> List[PlatformBooking]:
        reservations = (data or {}).get("reservations", []) if isinstance(data, dict) else data or []
        return [self._map_reservation_to_booking(r, property_id) for r in reservations]

    def _map_reservation_to_booking(self, reservation: Dict[str, Any], property_id: str) -> PlatformBooking:
        """Map Booking.com reservation to PlatformBooking."""
        guest = reservation.get("guest", {})
        room = reservation.get("room", {})
        guest_name = " ".join(
            part for part in (guest.get("first_name"), guest.get("last_name")) if part
        ) or None

        return PlatformBooking(
            channel_booking_id=str(reservation.get("reservation_id", "")),
            property_id=str(reservation.get("hotel_id") or property_id),
            room_id=str(room["room_id"]) if room.get("room_id") is not None else None,
            status=self._map_status(reservation.get("status", "new")),
            check_in=parse_day(reservation["arrival_date"]),
            check_out=parse_day(reservation["departure_date"]),
            guest_name=guest_name,
            total_price=to_decimal(reservation.get("total_price")),
            currency=reservation.get("currency_code", "EUR"),
            channel_data=reservation
        )

    def _map_status(self, booking_com_status: str) -> str:
        """Map Booking.com status to standardized status."""
        status_map = {
            "new": "confirmed",
            "ok": "confirmed",
            "modified": "confirmed",
            "cancelled": "cancelled",
        }
        status = status_map.get(booking_com_status.lower())
        if status is None:
            logger.warning("Unknown Booking.com reservation status", status=booking_com_status)
            return "pending"
        return status
