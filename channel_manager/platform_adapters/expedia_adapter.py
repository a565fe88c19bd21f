"""
Expedia Channel Adapter
=======================

Platform adapter for Expedia Partner Central.

Auth: API key header (X-API-Key), partner id header when provided
Data Format: REST + JSON
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


class ExpediaAdapter:
    """
    Adapter for Expedia Partner Central API.

    Key Endpoints:
    - POST /v1/properties/auth - Credential check
    - PUT /v1/properties/{propertyId}/rooms/availability
    - PUT /v1/properties/{propertyId}/rooms/rates
    - PUT /v1/properties/{propertyId}/rooms/restrictions
    - GET /v1/properties/{propertyId}/bookings
    """

    channel_type = ChannelType.EXPEDIA
    display_name = "Expedia"
    default_base_url = "https://services.expediapartnercentral.com"

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        headers = {"X-API-Key": credentials.api_key}
        if credentials.partner_id:
            headers["X-Partner-Id"] = credentials.partner_id
        return headers

    def authentication_request(self, credentials: Credentials) -> ApiCall:
        return ApiCall(
            "POST",
            "/v1/properties/auth",
            json={"partnerId": credentials.partner_id}
        )

    def availability_request(self, property_id: str, records: List[AvailabilityRecord]) -> ApiCall:
        return ApiCall(
            "PUT",
            f"/v1/properties/{property_id}/rooms/availability",
            json={
                "roomTypes": [
                    {
                        "roomTypeId": r.room_id,
                        "date": format_day(r.date),
                        "status": "open" if r.available else "closed"
                    }
                    for r in records
                ]
            }
        )

    def rates_request(self, property_id: str, records: List[RateRecord]) -> ApiCall:
        return ApiCall(
            "PUT",
            f"/v1/properties/{property_id}/rooms/rates",
            json={
                "rates": [
                    {
                        "roomTypeId": r.room_id,
                        "date": format_day(r.date),
                        "amount": {"value": str(r.amount), "currency": r.currency}
                    }
                    for r in records
                ]
            }
        )

    def restrictions_request(self, property_id: str, records: List[RestrictionRecord]) -> ApiCall:
        return ApiCall(
            "PUT",
            f"/v1/properties/{property_id}/rooms/restrictions",
            json={
                "restrictions": [
                    {
                        "roomTypeId": r.room_id,
                        "date": format_day(r.date),
                        "minLOS": r.min_stay,
                        "maxLOS": r.max_stay,
                        "closedToArrival": r.closed_to_arrival,
                        "closedToDeparture": r.closed_to_departure
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
        params: Dict[str, Any] = {}
        if from_date:
            params["checkInFrom"] = format_day(from_date)
        if to_date:
            params["checkInTo"] = format_day(to_date)
        return ApiCall("GET", f"/v1/properties/{property_id}/bookings", params=params)

    def parse_bookings(self, data: Any, property_id: str) -> List[PlatformBooking]:
        entries = data.get("entity", data.get("bookings", [])) if isinstance(data, dict) else data or []
        return [self._map_booking(b, property_id) for b in entries]

    def _map_booking(self, booking: Dict[str, Any], property_id: str) -> PlatformBooking:
        """Map Expedia booking to PlatformBooking."""
        guest = booking.get("primaryGuest", {})
        total = booking.get("totalAmount", {})
        room_id = booking.get("roomTypeId")

        return PlatformBooking(
            channel_booking_id=str(booking.get("id", booking.get("confirmationId", ""))),
            property_id=str(booking.get("propertyId") or property_id),
            room_id=str(room_id) if room_id is not None else None,
            status=self._map_status(booking.get("status", "BOOKED")),
            check_in=parse_day(booking["checkInDate"]),
            check_out=parse_day(booking["checkOutDate"]),
            guest_name=" ".join(
                part for part in (guest.get("firstName"), guest.get("lastName")) if part
            ) or None,
            total_price=to_decimal(total.get("value")),
            currency=total.get("currency", "EUR"),
            channel_data=booking
        )

    def _map_status(self, expedia_status: str) -> str:
        status_map = {
            "booked": "confirmed",
            "confirmed": "confirmed",
            "modified": "confirmed",
            "cancelled": "cancelled",
            "pending": "pending",
        }
        status = status_map.get(expedia_status.lower())
        if status is None:
            logger.warning("Unknown Expedia booking status", status=expedia_status)
            return "pending"
        return status
