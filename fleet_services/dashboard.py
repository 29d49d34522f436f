"""
Dashboard Aggregator
====================

Read-only fleet utilization and revenue snapshot. "Today" starts at the
server's local midnight; revenue only counts completed payments.
"""

import asyncio
from datetime import datetime
from typing import Optional

from fleet_services.fleet_registry import FleetRegistry
from fleet_services.models import DashboardMetrics
from fleet_services.ride_coordinator import RideCoordinator
from fleet_services.stores import PaymentLedger, UserDirectory


def start_of_today(now: Optional[datetime] = None) -> datetime:
    """Local midnight as a timezone-aware datetime"""
    now = (now or datetime.now()).astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DashboardAggregator:

    def __init__(
        self,
        registry: FleetRegistry,
        coordinator: RideCoordinator,
        users: UserDirectory,
        payments: PaymentLedger
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.users = users
        self.payments = payments

    async def snapshot(self, now: Optional[datetime] = None) -> DashboardMetrics:
        today = start_of_today(now)

        (
            total_users,
            active_rides,
            total_scooters,
            available_scooters,
            total_revenue,
            rides_today,
            revenue_today,
        ) = await asyncio.gather(
            self.users.count(),
            self.coordinator.count_rides(status="active"),
            self.registry.count_scooters(),
            self.registry.count_scooters("available"),
            self.payments.sum_completed(),
            self.coordinator.count_rides(since=today),
            self.payments.sum_completed(since=today),
        )

        return DashboardMetrics(
            total_users=total_users,
            active_rides=active_rides,
            total_scooters=total_scooters,
            available_scooters=available_scooters,
            total_revenue=total_revenue,
            rides_today=rides_today,
            revenue_today=revenue_today
        )
