"""
Tests — Channel Integrations
============================
Platform adapters, authentication, the rate-limit gate, error handling,
manual sync and booking pulls.
"""

import asyncio
import base64
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import structlog.testing

from channel_manager.models import (
    AvailabilityRecord,
    BookingStatus,
    ConflictResolution,
    RateRecord,
    RestrictionRecord,
)
from channel_manager.notifications import NotificationLevel
from channel_manager.integration import PlatformIntegration
from channel_manager.platform_adapters import AirbnbAdapter, BookingComAdapter, ExpediaAdapter
from channel_manager.platform_adapters.base_adapter import (
    AuthenticationError,
    ChannelRateLimitError,
    ChannelType,
    Credentials,
    ServerError,
    SyncOptions,
    ValidationError,
    classify_http_error,
)
from channel_manager.http_client import HttpError, RateLimitError
from channel_manager.sync_engine import (
    AdapterFactory,
    create_platform_integration,
    get_supported_platforms,
)

from conftest import PROPERTY_ID, ROOM_ID, RecordingTransport, day, make_booking

CREDS = Credentials(api_key="key-123", secret_key="s3cret", partner_id="partner-9")


def stock_inventory(inventory):
    inventory.availability[(PROPERTY_ID, ROOM_ID, date(2025, 7, 1))] = AvailabilityRecord(
        room_id=ROOM_ID, date=date(2025, 7, 1), available=True
    )
    inventory.rates[(PROPERTY_ID, ROOM_ID, date(2025, 7, 1))] = RateRecord(
        room_id=ROOM_ID, date=date(2025, 7, 1), amount=Decimal("120.50")
    )
    inventory.set_restriction(PROPERTY_ID, RestrictionRecord(
        room_id=ROOM_ID, date=date(2025, 7, 1), min_stay=2
    ))
    return inventory


def channel_api(reservations=None, headers=None, failures=None):
    """Fake platform: 200 everywhere, bookings from `reservations`, `failures` maps path suffix -> status."""
    failures = failures or {}

    def handler(request: httpx.Request) -> httpx.Response:
        for suffix, status in failures.items():
            if request.url.path.endswith(suffix):
                return httpx.Response(status, json={"error": "failed"}, headers=headers)
        if request.url.path.endswith("/getBookings"):
            return httpx.Response(200, json={"reservations": reservations or []}, headers=headers)
        return httpx.Response(200, json={"ok": True}, headers=headers)

    return handler


def reservation(reservation_id="R1", arrival="2025-07-03", departure="2025-07-06", status="new"):
    return {
        "reservation_id": reservation_id,
        "hotel_id": PROPERTY_ID,
        "room": {"room_id": ROOM_ID},
        "arrival_date": arrival,
        "departure_date": departure,
        "status": status,
        "guest": {"first_name": "Ann", "last_name": "Lee"},
        "total_price": "300.00",
        "currency_code": "EUR",
    }


@pytest.fixture
def build(inventory, booking_store, resolver, notifications, sleeper):
    def _build(handler, adapter=None):
        transport = RecordingTransport(handler)
        integration = PlatformIntegration(
            adapter or BookingComAdapter(),
            stock_inventory(inventory),
            booking_store,
            resolver,
            notifications=notifications,
            transport=transport,
            sleep=sleeper,
        )
        return integration, transport

    return _build


# ══════════════════════════════════════════════════════════════
# ADAPTERS
# ══════════════════════════════════════════════════════════════


class TestAdapters:
    def test_booking_com_uses_basic_auth(self):
        headers = BookingComAdapter().auth_headers(CREDS)
        expected = base64.b64encode(b"key-123:s3cret").decode()
        assert headers == {"Authorization": f"Basic {expected}"}

    def test_expedia_uses_api_key_and_partner_headers(self):
        assert ExpediaAdapter().auth_headers(CREDS) == {
            "X-API-Key": "key-123",
            "X-Partner-Id": "partner-9",
        }

    def test_airbnb_uses_bearer_token(self):
        assert AirbnbAdapter().auth_headers(CREDS) == {"Authorization": "Bearer key-123"}

    def test_booking_com_availability_payload(self):
        call = BookingComAdapter().availability_request(PROPERTY_ID, [
            AvailabilityRecord(room_id=ROOM_ID, date=date(2025, 7, 1), available=True),
            AvailabilityRecord(room_id=ROOM_ID, date=date(2025, 7, 2), available=False),
        ])
        assert (call.method, call.endpoint) == ("POST", "/setAvailability")
        assert call.json["hotel_id"] == PROPERTY_ID
        assert [a["rooms_to_sell"] for a in call.json["availability"]] == [1, 0]
        assert call.json["availability"][0]["date"] == "2025-07-01"

    def test_expedia_bookings_request_filters_by_check_in(self):
        call = ExpediaAdapter().bookings_request(PROPERTY_ID, date(2025, 7, 1), date(2025, 7, 31))
        assert call.method == "GET"
        assert call.endpoint == f"/v1/properties/{PROPERTY_ID}/bookings"
        assert call.params == {"checkInFrom": "2025-07-01", "checkInTo": "2025-07-31"}

    def test_booking_com_parses_reservations(self):
        bookings = BookingComAdapter().parse_bookings(
            {"reservations": [reservation(), reservation("R2", status="cancelled")]},
            PROPERTY_ID
        )
        first, second = bookings
        assert first.channel_booking_id == "R1"
        assert first.room_id == ROOM_ID
        assert first.status == "confirmed"
        assert first.check_in == date(2025, 7, 3)
        assert first.check_out == date(2025, 7, 6)
        assert first.guest_name == "Ann Lee"
        assert first.total_price == Decimal("300.00")
        assert second.status == "cancelled"

    def test_expedia_parses_entity_list(self):
        bookings = ExpediaAdapter().parse_bookings({"entity": [{
            "id": 991,
            "roomTypeId": 7,
            "status": "BOOKED",
            "checkInDate": "2025-08-01",
            "checkOutDate": "2025-08-03",
            "primaryGuest": {"firstName": "Bo", "lastName": "Ek"},
            "totalAmount": {"value": "210.00", "currency": "USD"},
        }]}, PROPERTY_ID)
        assert bookings[0].channel_booking_id == "991"
        assert bookings[0].room_id == "7"
        assert bookings[0].status == "confirmed"
        assert bookings[0].currency == "USD"

    @pytest.mark.parametrize("raw, expected", [
        ("accepted", "confirmed"),
        ("denied", "cancelled"),
        ("cancelled", "cancelled"),
        ("pending", "pending"),
    ])
    def test_airbnb_status_mapping(self, raw, expected):
        bookings = AirbnbAdapter().parse_bookings({"reservations": [{
            "confirmation_code": "HM42",
            "status": raw,
            "start_date": "2025-07-03",
            "end_date": "2025-07-06",
        }]}, PROPERTY_ID)
        assert bookings[0].status == expected

    @pytest.mark.parametrize("adapter", [BookingComAdapter(), ExpediaAdapter(), AirbnbAdapter()])
    def test_unknown_status_is_logged_as_pending(self, adapter):
        with structlog.testing.capture_logs() as logs:
            assert adapter._map_status("on_hold") == "pending"
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["status"] == "on_hold"

    def test_airbnb_prices_are_whole_units(self):
        call = AirbnbAdapter().rates_request(PROPERTY_ID, [
            RateRecord(room_id=ROOM_ID, date=date(2025, 7, 1), amount=Decimal("99.90"))
        ])
        assert call.json["daily_prices"][0]["price"] == 99


class TestErrorClassification:
    def test_status_codes_map_to_error_kinds(self):
        assert isinstance(classify_http_error(HttpError("x", 401)), AuthenticationError)
        assert isinstance(classify_http_error(HttpError("x", 422)), ValidationError)
        assert isinstance(classify_http_error(HttpError("x", 503)), ServerError)

    def test_rate_limit_keeps_reset_time(self):
        reset = datetime(2025, 6, 1, tzinfo=timezone.utc)
        error = classify_http_error(RateLimitError("x", 429, reset_time=reset))
        assert isinstance(error, ChannelRateLimitError)
        assert error.reset_time == reset


# ══════════════════════════════════════════════════════════════
# AUTHENTICATION
# ══════════════════════════════════════════════════════════════


class TestAuthenticate:
    def test_success_connects(self, build, notifications):
        integration, transport = build(channel_api())

        assert asyncio.run(integration.authenticate(CREDS)) is True

        assert integration.status.connected is True
        assert integration.credentials == CREDS
        assert transport.paths == ["/json/getHotels"]
        assert transport.requests[0].headers["Authorization"].startswith("Basic ")
        assert notifications.titles == ["Booking.com Connected"]

    def test_rejected_credentials_stay_disconnected(self, build, notifications):
        integration, transport = build(channel_api(failures={"/getHotels": 401}))

        assert asyncio.run(integration.authenticate(CREDS)) is False

        assert integration.status.connected is False
        assert integration.status.error_count == 1
        assert notifications.titles == ["Booking.com: Authentication Failed"]
        assert notifications.notifications[0].level == NotificationLevel.ERROR
        assert notifications.notifications[0].message.startswith("Failed to authenticate.")

    def test_endpoint_override(self, build):
        integration, transport = build(channel_api())
        creds = Credentials(api_key="k", secret_key="s", endpoint="https://sandbox.channel.test/api")

        asyncio.run(integration.authenticate(creds))

        assert transport.requests[0].url.host == "sandbox.channel.test"
        assert transport.paths == ["/api/getHotels"]

    def test_blocked_by_exhausted_rate_limit(self, build):
        integration, transport = build(channel_api())
        integration.status.rate_limit.remaining = 0
        integration.status.rate_limit.reset_time = datetime.now(timezone.utc) + timedelta(hours=1)

        assert asyncio.run(integration.authenticate(CREDS)) is False
        assert transport.requests == []


# ══════════════════════════════════════════════════════════════
# RATE LIMIT GATE
# ══════════════════════════════════════════════════════════════


class TestRateLimitGate:
    def test_exhausted_quota_blocks_all_io(self, build):
        integration, transport = build(channel_api())

        async def scenario():
            await integration.authenticate(CREDS)
            integration.status.rate_limit.remaining = 0
            integration.status.rate_limit.reset_time = datetime.now(timezone.utc) + timedelta(hours=1)
            return await integration.manual_sync(PROPERTY_ID)

        assert asyncio.run(scenario()) is False
        assert transport.paths == ["/json/getHotels"]

    def test_past_reset_time_allows_calls(self, build):
        integration, transport = build(channel_api())

        async def scenario():
            await integration.authenticate(CREDS)
            integration.status.rate_limit.remaining = 0
            integration.status.rate_limit.reset_time = datetime.now(timezone.utc) - timedelta(seconds=1)
            return await integration.sync_availability(PROPERTY_ID)

        assert asyncio.run(scenario()) is True
        assert len(transport.requests) == 2

    def test_headers_refresh_the_state(self, build):
        integration, _ = build(channel_api(headers={
            "X-RateLimit-Remaining": "7",
            "X-RateLimit-Reset": "120",
        }))
        before = datetime.now(timezone.utc)

        async def scenario():
            await integration.authenticate(CREDS)
            await integration.sync_rates(PROPERTY_ID)

        asyncio.run(scenario())

        state = integration.get_status().rate_limit
        assert state.remaining == 7
        assert before + timedelta(seconds=119) <= state.reset_time

    def test_429_pauses_the_integration(self, build, notifications):
        integration, transport = build(channel_api(
            headers={"Retry-After": "3600"},
            failures={"/setAvailability": 429}
        ))

        async def scenario():
            await integration.authenticate(CREDS)
            first = await integration.sync_availability(PROPERTY_ID)
            second = await integration.sync_rates(PROPERTY_ID)
            return first, second

        assert asyncio.run(scenario()) == (False, False)
        assert transport.paths == ["/json/getHotels", "/json/setAvailability"]
        assert integration.status.rate_limit.remaining == 0
        assert "Booking.com: Rate Limit Reached" in notifications.titles


# ══════════════════════════════════════════════════════════════
# ERROR HANDLING
# ══════════════════════════════════════════════════════════════


class TestErrorHandling:
    def test_server_error_is_retried_then_counted(self, build, sleeper, notifications):
        integration, transport = build(channel_api(failures={"/setAvailability": 500}))

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.sync_availability(PROPERTY_ID)

        assert asyncio.run(scenario()) is False
        assert transport.paths.count("/json/setAvailability") == 4
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert integration.status.error_count == 1
        assert integration.status.connected is True
        assert notifications.titles[-1] == "Booking.com: Platform Unavailable"

    def test_401_during_sync_disconnects(self, build):
        integration, transport = build(channel_api(failures={"/setAvailability": 401}))

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.manual_sync(PROPERTY_ID)

        assert asyncio.run(scenario()) is False
        assert integration.status.connected is False
        assert integration.status.error_count == 1
        # Nothing is sent once disconnected
        assert transport.paths == ["/json/getHotels", "/json/setAvailability"]

    def test_unexpected_exception_is_reported(self, build, notifications, inventory):
        integration, transport = build(channel_api())

        async def broken(property_id, room_ids=None):
            raise RuntimeError("inventory offline")

        inventory.get_availability = broken

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.manual_sync_report(PROPERTY_ID)

        report = asyncio.run(scenario())

        assert report.success is False
        assert report.availability is False
        assert (report.rates, report.restrictions, report.bookings) == (True, True, True)
        assert integration.status.sync_in_progress is False
        assert integration.status.error_count == 1
        assert "Booking.com: Sync Error" in notifications.titles
        assert transport.paths == [
            "/json/getHotels",
            "/json/setRates",
            "/json/setRestrictions",
            "/json/getBookings",
        ]

    def test_failing_booking_store_does_not_abort_sync(self, build, booking_store):
        integration, transport = build(channel_api(reservations=[reservation()]))

        async def broken(booking):
            raise RuntimeError("db down")

        booking_store.save_booking = broken

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.manual_sync_report(PROPERTY_ID)

        report = asyncio.run(scenario())

        assert report.bookings is False
        assert report.availability is True
        assert integration.status.error_count == 1


# ══════════════════════════════════════════════════════════════
# MANUAL SYNC
# ══════════════════════════════════════════════════════════════


class TestManualSync:
    def test_runs_all_domains_in_order(self, build):
        integration, transport = build(channel_api())

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.manual_sync_report(PROPERTY_ID)

        report = asyncio.run(scenario())

        assert report.success is True
        assert transport.paths == [
            "/json/getHotels",
            "/json/setAvailability",
            "/json/setRates",
            "/json/setRestrictions",
            "/json/getBookings",
        ]
        status = integration.get_status()
        assert status.last_sync is not None
        assert status.sync_in_progress is False
        assert integration.last_report is report

    def test_not_connected_returns_false_without_io(self, build):
        integration, transport = build(channel_api())

        assert asyncio.run(integration.manual_sync(PROPERTY_ID)) is False
        assert transport.requests == []

    def test_concurrent_sync_is_single_flight(self, inventory, booking_store, resolver):
        async def slow_handler(request):
            await asyncio.sleep(0)
            return channel_api()(request)

        transport = RecordingTransport(slow_handler)
        integration = PlatformIntegration(
            BookingComAdapter(),
            stock_inventory(inventory),
            booking_store,
            resolver,
            transport=transport,
        )

        async def scenario():
            await integration.authenticate(CREDS)
            return await asyncio.gather(
                integration.manual_sync(PROPERTY_ID),
                integration.manual_sync(PROPERTY_ID),
            )

        assert asyncio.run(scenario()) == [True, False]
        assert len(transport.requests) == 5

    def test_status_is_a_snapshot(self, build):
        integration, _ = build(channel_api())
        snapshot = integration.get_status()
        snapshot.connected = True
        snapshot.rate_limit.remaining = 0

        assert integration.status.connected is False
        assert integration.status.rate_limit.remaining > 0


class TestBookingPull:
    def test_new_reservation_is_saved(self, build, booking_store):
        integration, _ = build(channel_api(reservations=[reservation()]))

        async def scenario():
            await integration.authenticate(CREDS)
            ok = await integration.sync_bookings(PROPERTY_ID)
            return ok, await booking_store.get_booking("booking_com-R1")

        ok, booking = asyncio.run(scenario())

        assert ok is True
        assert booking.source == "channel:booking_com"
        assert booking.start_date == day(2025, 7, 3)
        assert booking.end_date == day(2025, 7, 6)
        assert booking.guest_name == "Ann Lee"
        assert booking.status == BookingStatus.CONFIRMED

    def test_cancelled_reservation_cancels_booking(self, build, booking_store):
        integration, _ = build(channel_api(reservations=[reservation(status="cancelled")]))

        async def scenario():
            await booking_store.save_booking(make_booking(
                "booking_com-R1", day(2025, 7, 3), day(2025, 7, 6), source="channel:booking_com"
            ))
            await integration.authenticate(CREDS)
            await integration.sync_bookings(PROPERTY_ID)
            return await booking_store.get_booking("booking_com-R1")

        assert asyncio.run(scenario()).status == BookingStatus.CANCELLED

    def test_overlap_registers_conflict(self, build, booking_store, resolver, notifications):
        integration, _ = build(channel_api(reservations=[reservation()]))

        async def scenario():
            await booking_store.save_booking(make_booking("direct-1", day(2025, 7, 1), day(2025, 7, 5)))
            await integration.authenticate(CREDS)
            return await integration.manual_sync_report(PROPERTY_ID)

        report = asyncio.run(scenario())

        assert report.bookings is False
        assert report.availability and report.rates and report.restrictions
        pending = resolver.pending(PROPERTY_ID)
        assert len(pending) == 1
        assert pending[0].resolution == ConflictResolution.MANUAL
        assert pending[0].source == "channel:booking_com"
        assert pending[0].existing_event.uid.startswith("direct-1@")
        assert "Booking.com: Booking Conflicts" in notifications.titles
        assert asyncio.run(booking_store.get_booking("booking_com-R1")) is None

    def test_malformed_payload_is_an_error(self, build, notifications):
        integration, _ = build(channel_api(reservations=[{"reservation_id": "R9"}]))

        async def scenario():
            await integration.authenticate(CREDS)
            return await integration.sync_bookings(PROPERTY_ID)

        assert asyncio.run(scenario()) is False
        assert integration.status.error_count == 1


# ══════════════════════════════════════════════════════════════
# FACTORY & OPTIONS
# ══════════════════════════════════════════════════════════════


class TestFactory:
    @pytest.mark.parametrize("name, expected", [
        ("Booking.com", ChannelType.BOOKING_COM),
        ("booking_com", ChannelType.BOOKING_COM),
        ("EXPEDIA", ChannelType.EXPEDIA),
        ("airbnb", ChannelType.AIRBNB),
        (ChannelType.AIRBNB, ChannelType.AIRBNB),
    ])
    def test_resolves_platform_names(self, name, expected):
        assert AdapterFactory.resolve(name) == expected

    def test_unknown_platform_is_rejected(self, inventory, booking_store, resolver):
        with pytest.raises(ValueError):
            create_platform_integration("vrbo", inventory, booking_store, resolver)

    def test_creates_matching_adapter(self, inventory, booking_store, resolver):
        integration = create_platform_integration("expedia", inventory, booking_store, resolver)
        assert isinstance(integration.adapter, ExpediaAdapter)
        assert integration.name == "Expedia"

    def test_supported_platforms(self):
        assert get_supported_platforms() == ["Booking.com", "Expedia", "Airbnb"]


class TestSyncOptions:
    @pytest.mark.parametrize("attempts", [0, 3, 10])
    def test_accepts_valid_retry_attempts(self, attempts):
        assert SyncOptions(retry_attempts=attempts).retry_attempts == attempts

    @pytest.mark.parametrize("attempts", [-1, 11])
    def test_rejects_out_of_range_retry_attempts(self, attempts):
        with pytest.raises(ValueError):
            SyncOptions(retry_attempts=attempts)
