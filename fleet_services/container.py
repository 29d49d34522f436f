"""
Service wiring.

Builds one independent set of components (stores, registry, pricing,
gateway, coordinator, dashboard) per deployment or test. Nothing here is
module-level state.
"""

import logging
from typing import Optional

from fleet_services.config import Settings
from fleet_services.dashboard import DashboardAggregator
from fleet_services.database import (
    DatabaseManager, MongoPaymentLedger, MongoPricingStore, MongoRideStore,
    MongoScooterStore, MongoUserDirectory
)
from fleet_services.device_gateway import (
    DeviceChannel, DeviceCommandGateway, HttpDeviceChannel, SimulatedDeviceChannel
)
from fleet_services.fleet_registry import FleetRegistry
from fleet_services.pricing import PricingResolver
from fleet_services.ride_coordinator import RideCoordinator
from fleet_services.stores import (
    InMemoryPaymentLedger, InMemoryPricingStore, InMemoryRideStore,
    InMemoryScooterStore, InMemoryUserDirectory, PaymentLedger, PricingStore,
    RideStore, ScooterStore, UserDirectory
)

logger = logging.getLogger(__name__)


class FleetServices:
    """All coordination components of one instance"""

    def __init__(
        self,
        settings: Settings,
        scooters: ScooterStore,
        rides: RideStore,
        pricing_rules: PricingStore,
        users: UserDirectory,
        payments: PaymentLedger,
        channel: DeviceChannel,
        db_manager: Optional[DatabaseManager] = None
    ):
        self.settings = settings
        self.users = users
        self.payments = payments
        self.channel = channel
        self.db_manager = db_manager

        self.registry = FleetRegistry(scooters)
        self.pricing = PricingResolver(pricing_rules)
        self.gateway = DeviceCommandGateway(
            self.registry,
            channel,
            ack_timeout=settings.command_timeout_seconds,
            max_attempts=settings.command_max_attempts,
            backoff_seconds=settings.command_backoff_seconds
        )
        self.coordinator = RideCoordinator(
            self.registry, self.pricing, self.gateway, rides, users
        )
        self.dashboard = DashboardAggregator(self.registry, self.coordinator, users, payments)

    async def health(self) -> dict:
        if self.db_manager is None:
            return {"status": "healthy"}
        return await self.db_manager.health_check()

    async def close(self):
        await self.coordinator.drain()
        await self.channel.aclose()
        if self.db_manager is not None:
            await self.db_manager.disconnect()


def build_channel(settings: Settings) -> DeviceChannel:
    if settings.device_channel == "simulated":
        return SimulatedDeviceChannel(
            latency_seconds=settings.simulated_latency_seconds,
            failure_rate=settings.simulated_failure_rate,
            drop_rate=settings.simulated_drop_rate
        )
    return HttpDeviceChannel(settings.device_gateway_url, token=settings.device_gateway_token)


def build_memory_services(
    settings: Optional[Settings] = None,
    channel: Optional[DeviceChannel] = None
) -> FleetServices:
    """In-memory instance for development and tests"""
    settings = settings or Settings(storage_backend="memory", device_channel="simulated")
    return FleetServices(
        settings,
        scooters=InMemoryScooterStore(),
        rides=InMemoryRideStore(),
        pricing_rules=InMemoryPricingStore(),
        users=InMemoryUserDirectory(),
        payments=InMemoryPaymentLedger(),
        channel=channel or build_channel(settings)
    )


async def build_services(settings: Settings) -> FleetServices:
    """Instance for the configured storage backend"""
    if settings.storage_backend == "memory":
        logger.info("Using in-memory storage")
        return build_memory_services(settings)

    db_manager = DatabaseManager(settings.mongo_uri, settings.mongo_db_name)
    await db_manager.connect()
    await db_manager.ensure_indexes()

    return FleetServices(
        settings,
        scooters=MongoScooterStore(db_manager),
        rides=MongoRideStore(db_manager),
        pricing_rules=MongoPricingStore(db_manager),
        users=MongoUserDirectory(db_manager),
        payments=MongoPaymentLedger(db_manager),
        channel=build_channel(settings),
        db_manager=db_manager
    )
