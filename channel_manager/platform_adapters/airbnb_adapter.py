"""
Airbnb Channel Adapter
======================

Platform adapter for Airbnb API integration.

Auth: Bearer token
"""

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


class AirbnbAdapter:
    """
    Adapter for Airbnb API.

    Endpoints:
    - POST /authenticate
    - POST /calendar_operations - Availability
    - POST /set_pricing - Nightly prices
    - POST /set_rules - Stay rules
    - GET /reservations
    """

    channel_type = ChannelType.AIRBNB
    display_name = "Airbnb"
    default_base_url = "https://api.airbnb.com/v2"

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credentials.api_key}"}

    def authentication_request(self, credentials: Credentials) -> ApiCall:
        return ApiCall("POST", "/authenticate", json={})

    def availability_request(self, property_id: str, records: List[AvailabilityRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/calendar_operations",
            json={
                "listing_id": property_id,
                "operations": [
                    {
                        "dates": [format_day(r.date)],
                        "availability": "available" if r.available else "unavailable",
                        "room_id": r.room_id
                    }
                    for r in records
                ]
            }
        )

    def rates_request(self, property_id: str, records: List[RateRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/set_pricing",
            json={
                "listing_id": property_id,
                "daily_prices": [
                    {
                        "date": format_day(r.date),
                        # Airbnb expects whole currency units
                        "price": int(r.amount),
                        "currency": r.currency,
                        "room_id": r.room_id
                    }
                    for r in records
                ]
            }
        )

    def restrictions_request(self, property_id: str, records: List[RestrictionRecord]) -> ApiCall:
        return ApiCall(
            "POST",
            "/set_rules",
            json={
                "listing_id": property_id,
                "rules": [
                    {
                        "date": format_day(r.date),
                        "min_nights": r.min_stay,
                        "max_nights": r.max_stay,
                        "closed_to_arrival": r.closed_to_arrival,
                        "closed_to_departure": r.closed_to_departure,
                        "room_id": r.room_id
                    }
                    for r in records
                ]
            }
        )

    def bookings_request(
        self,
        property_id: str,
        from_date: Optional[date],
        to_date: Optional[date]
    ) -> ApiCall:
        params: Dict[str, Any] = {"listing_id": property_id, "_limit": 50}
        if from_date:
            params["start_date"] = format_day(from_date)
        if to_date:
            params["end_date"] = format_day(to_date)
        return ApiCall("GET", "/reservations", params=params)

    def parse_bookings(self, data: Any, property_id: str) -> List[PlatformBooking]:
        reservations = data.get("reservations", []) if isinstance(data, dict) else data or []
        return [self._map_reservation_to_booking(r, property_id) for r in reservations]

    def _map_reservation_to_booking(self, reservation: Dict[str, Any], property_id: str) -> PlatformBooking:
        """
        Map Airbnb reservation data to PlatformBooking.
        """
        guest = reservation.get("guest", {})
        total = reservation.get("pricing_quote", {}).get("total", {})

        return PlatformBooking(
            channel_booking_id=str(reservation["confirmation_code"]),
            property_id=str(reservation.get("listing_id") or property_id),
            room_id=reservation.get("room_id"),
            status=self._map_status(reservation.get("status", "pending")),
            check_in=parse_day(reservation["start_date"]),
            check_out=parse_day(reservation["end_date"]),
            guest_name=" ".join(
                part for part in (guest.get("first_name"), guest.get("last_name")) if part
            ) or None,
            total_price=to_decimal(total.get("amount")),
            currency=total.get("currency", "EUR"),
            channel_data=reservation
        )

    def _map_status(self, airbnb_status: str) -> str:
        """Map Airbnb status (pending, accepted, denied, cancelled) to standardized status."""
        status_map = {
            "accepted": "confirmed",
            "confirmed": "confirmed",
            "pending": "pending",
            "denied": "cancelled",
            "cancelled": "cancelled",
        }
        status = status_map.get(airbnb_status.lower())
        if status is None:
            logger.warning("Unknown Airbnb reservation status", status=airbnb_status)
            return "pending"
        return status
