"""
Channel Manager Sync Engine
===========================

Orchestration of the outbound sync.

- SyncScheduler: one cancellable asyncio task per key running a sync job
  at a fixed interval (minimum 5 minutes)
- AdapterFactory / create_platform_integration: platform name -> integration
- ChannelManager: the set of connected channels of one deployment
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from .config import settings
from .conflicts import ConflictResolver
from .integration import PlatformIntegration
from .notifications import NotificationSink
from .platform_adapters import AirbnbAdapter, BookingComAdapter, ExpediaAdapter
from .platform_adapters.base_adapter import (
    ChannelType,
    Credentials,
    IntegrationStatus,
    PlatformAdapter,
    SyncOptions,
    SyncReport,
)
from .stores import BookingStore, InventorySource

logger = structlog.get_logger(__name__)

SyncJob = Callable[[], Awaitable[object]]


# =============================================================================
# SCHEDULER
# =============================================================================

class SyncScheduler:
    """
    Periodic sync jobs keyed by integration or feed.

    Registering a key that already has a job cancels the old job first.
    Jobs run sequentially per key; a failing run is logged and the
    schedule continues.
    """

    def __init__(self, min_interval_minutes: Optional[int] = None):
        self.min_interval_minutes = (
            settings.MIN_SYNC_INTERVAL_MINUTES
            if min_interval_minutes is None
            else min_interval_minutes
        )
        self._tasks: Dict[str, asyncio.Task] = {}
        self._intervals: Dict[str, float] = {}

    def effective_interval(self, interval_minutes: float) -> float:
        """Interval in seconds, floored at the minimum."""
        return max(self.min_interval_minutes, interval_minutes) * 60

    def schedule(self, key: str, interval_minutes: float, job: SyncJob) -> float:
        """
        Run job every max(5, interval_minutes) minutes.

        Must be called from a running event loop.

        Returns:
            The effective interval in seconds
        """
        self.cancel(key)
        seconds = self.effective_interval(interval_minutes)
        self._intervals[key] = seconds
        self._tasks[key] = asyncio.get_running_loop().create_task(
            self._run(key, seconds, job),
            name=f"sync:{key}"
        )
        logger.info("Sync scheduled", key=key, interval_seconds=seconds)
        return seconds

    async def _run(self, key: str, seconds: float, job: SyncJob) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduled sync failed", key=key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        self._intervals.pop(key, None)
        if task is None:
            return False
        task.cancel()
        logger.info("Sync schedule cancelled", key=key)
        return True

    def get_task(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def interval(self, key: str) -> Optional[float]:
        return self._intervals.get(key)

    def keys(self) -> List[str]:
        return list(self._tasks)

    async def shutdown(self) -> None:
        """Cancel every job and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        for key in list(self._tasks):
            self.cancel(key)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# =============================================================================
# ADAPTER FACTORY
# =============================================================================

_PLATFORM_ALIASES: Dict[str, ChannelType] = {
    "booking.com": ChannelType.BOOKING_COM,
    "booking_com": ChannelType.BOOKING_COM,
    "bookingcom": ChannelType.BOOKING_COM,
    "expedia": ChannelType.EXPEDIA,
    "airbnb": ChannelType.AIRBNB,
}


class AdapterFactory:
    """Factory for creating platform-specific adapters."""

    adapters = {
        ChannelType.BOOKING_COM: BookingComAdapter,
        ChannelType.EXPEDIA: ExpediaAdapter,
        ChannelType.AIRBNB: AirbnbAdapter,
    }

    @classmethod
    def resolve(cls, platform) -> ChannelType:
        if isinstance(platform, ChannelType):
            return platform
        channel_type = _PLATFORM_ALIASES.get(str(platform).strip().lower())
        if channel_type is None:
            raise ValueError(f"Unknown channel type: {platform}")
        return channel_type

    @classmethod
    def create_adapter(cls, platform) -> PlatformAdapter:
        """Create an adapter instance for a platform name or ChannelType."""
        return cls.adapters[cls.resolve(platform)]()


def get_supported_platforms() -> List[str]:
    return [adapter().display_name for adapter in AdapterFactory.adapters.values()]


def create_platform_integration(
    platform,
    inventory: InventorySource,
    booking_store: BookingStore,
    resolver: ConflictResolver,
    notifications: Optional[NotificationSink] = None,
    scheduler: Optional[SyncScheduler] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None
) -> PlatformIntegration:
    """
    Build an integration for a platform name ("Booking.com", "expedia", ...).

    Raises:
        ValueError: For an unknown platform
    """
    return PlatformIntegration(
        AdapterFactory.create_adapter(platform),
        inventory,
        booking_store,
        resolver,
        notifications=notifications,
        scheduler=scheduler,
        transport=transport,
        sleep=sleep,
    )


# =============================================================================
# CHANNEL MANAGER
# =============================================================================

class ChannelManager:
    """
    Connected channels of one deployment, at most one integration per
    platform.
    """

    def __init__(
        self,
        inventory: InventorySource,
        booking_store: BookingStore,
        resolver: ConflictResolver,
        notifications: Optional[NotificationSink] = None,
        scheduler: Optional[SyncScheduler] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None
    ):
        self.inventory = inventory
        self.booking_store = booking_store
        self.resolver = resolver
        self.notifications = notifications
        self.scheduler = scheduler or SyncScheduler()
        self._transport = transport
        self._sleep = sleep
        self.integrations: Dict[ChannelType, PlatformIntegration] = {}

    def get(self, platform) -> Optional[PlatformIntegration]:
        return self.integrations.get(AdapterFactory.resolve(platform))

    def _require(self, platform) -> PlatformIntegration:
        integration = self.get(platform)
        if integration is None:
            raise KeyError(f"Channel not connected: {platform}")
        return integration

    async def connect(self, platform, credentials: Credentials) -> bool:
        """Authenticate a platform, creating its integration on first use."""
        channel_type = AdapterFactory.resolve(platform)
        integration = self.integrations.get(channel_type)
        if integration is None:
            integration = create_platform_integration(
                channel_type,
                self.inventory,
                self.booking_store,
                self.resolver,
                notifications=self.notifications,
                scheduler=self.scheduler,
                transport=self._transport,
                sleep=self._sleep,
            )
            self.integrations[channel_type] = integration
        return await integration.authenticate(credentials)

    async def disconnect(self, platform) -> bool:
        integration = self.integrations.pop(AdapterFactory.resolve(platform), None)
        if integration is None:
            return False
        await integration.close()
        logger.info("Channel disconnected", channel=integration.adapter.channel_type.value)
        return True

    def status(self, platform) -> IntegrationStatus:
        return self._require(platform).get_status()

    def statuses(self) -> Dict[str, IntegrationStatus]:
        return {
            channel_type.value: integration.get_status()
            for channel_type, integration in self.integrations.items()
        }

    async def sync(self, platform, property_id: str) -> SyncReport:
        return await self._require(platform).manual_sync_report(property_id)

    async def sync_all(self, property_id: str) -> Dict[str, SyncReport]:
        reports = {}
        for channel_type, integration in list(self.integrations.items()):
            reports[channel_type.value] = await integration.manual_sync_report(property_id)
        return reports

    def configure(self, platform, options: SyncOptions, property_id: str) -> None:
        self._require(platform).start_auto_sync(options, property_id)

    async def close(self) -> None:
        for integration in list(self.integrations.values()):
            await integration.close()
        self.integrations.clear()
        await self.scheduler.shutdown()
