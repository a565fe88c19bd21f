"""
Application wiring: stores, conflict resolver, scheduler, channel
manager, iCal service and the HTTP routers.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
import structlog
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from .config import settings
from .conflicts import ConflictResolver
from .ical_routes import router as ical_router
from .ical_service import ICalService
from .logging_config import configure_logging
from .notifications import NotificationSink
from .stores import (
    BookingStore,
    FeedStore,
    InMemoryBookingStore,
    InMemoryFeedStore,
    InMemoryInventory,
)
from .sync_engine import ChannelManager, SyncScheduler
from .webhook_handlers import (
    DEFAULT_WEBHOOK_ENDPOINTS,
    WebhookDeduplicator,
    WebhookEndpoint,
    WebhookHandlers,
    create_webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(
    feed_store: Optional[FeedStore] = None,
    booking_store: Optional[BookingStore] = None,
    inventory: Optional[InMemoryInventory] = None,
    notifications: Optional[NotificationSink] = None,
    webhook_endpoints: Optional[List[WebhookEndpoint]] = None,
    webhook_secret: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    setup_logging: bool = True
) -> FastAPI:
    """
    Build the channel manager application.

    Collaborators default to in-memory implementations. ``inventory`` must
    serve both as InventorySource and InventoryStore.
    """
    if setup_logging:
        configure_logging()

    booking_store = booking_store or InMemoryBookingStore()
    feed_store = feed_store or InMemoryFeedStore()
    inventory = inventory or InMemoryInventory()

    scheduler = SyncScheduler()
    resolver = ConflictResolver(booking_store)
    ical_service = ICalService(
        feed_store,
        booking_store,
        resolver,
        notifications=notifications,
        scheduler=scheduler,
        transport=transport,
    )
    channel_manager = ChannelManager(
        inventory,
        booking_store,
        resolver,
        notifications=notifications,
        scheduler=scheduler,
        transport=transport,
    )
    handlers = WebhookHandlers(booking_store, inventory, resolver, notifications)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Channel manager starting")
        yield
        await channel_manager.close()
        await ical_service.close()
        await scheduler.shutdown()
        logger.info("Channel manager stopped")

    app = FastAPI(title="Channel Manager", lifespan=lifespan)
    app.state.booking_store = booking_store
    app.state.feed_store = feed_store
    app.state.inventory = inventory
    app.state.scheduler = scheduler
    app.state.conflict_resolver = resolver
    app.state.ical_service = ical_service
    app.state.channel_manager = channel_manager

    app.include_router(create_webhook_router(
        webhook_endpoints if webhook_endpoints is not None else DEFAULT_WEBHOOK_ENDPOINTS,
        settings.WEBHOOK_SECRET if webhook_secret is None else webhook_secret,
        handlers,
        WebhookDeduplicator(),
    ))
    app.include_router(ical_router)
    app.mount("/metrics", make_asgi_app())
    return app
