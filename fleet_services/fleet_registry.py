"""
Fleet Registry
==============

Owns every scooter's mutable state: status, lock state, location and
battery. Status transitions used by rides go through conditional writes:

    available --try_reserve--> reserving --commit_in_use--> in_use
        ^                          |                          |
        +--------- release --------+------------ release -----+
"""

import logging
from typing import List, Optional

from fleet_services.errors import (
    ConsistencyError, InvalidInput, ScooterNotAvailable, ScooterNotFound
)
from fleet_services.models import COORDINATE_PLACES, SERVICE_STATUSES, Scooter, quantize, utcnow
from fleet_services.stores import ScooterStore

logger = logging.getLogger(__name__)


class FleetRegistry:
    """Scooter identity and state"""

    def __init__(self, store: ScooterStore):
        self.store = store

    async def register_scooter(self, serial_number: str, latitude, longitude) -> Scooter:
        """Onboard a new scooter: available, locked, fully charged"""
        scooter = await self.store.insert(Scooter(
            serial_number=serial_number,
            latitude=latitude,
            longitude=longitude
        ))
        logger.info(f"Registered scooter {scooter.id} ({serial_number})")
        return scooter

    async def get_scooter(self, scooter_id: int) -> Scooter:
        scooter = await self.store.get(scooter_id)
        if scooter is None:
            raise ScooterNotFound(scooter_id)
        return scooter

    async def list_scooters(self, status: Optional[str] = None) -> List[Scooter]:
        return await self.store.list(status)

    async def available_scooters(self) -> List[Scooter]:
        return await self.store.list("available")

    async def count_scooters(self, status: Optional[str] = None) -> int:
        return await self.store.count(status)

    async def try_reserve(self, scooter_id: int) -> Scooter:
        """
        Atomically claim an available scooter for a ride start.

        Exactly one of several racing callers wins; the others get
        ScooterNotAvailable. The scooter stays locked until commit_in_use.
        """
        scooter = await self.store.update(
            scooter_id,
            {"status": "reserving", "updated_at": utcnow()},
            expected_status=("available",)
        )
        if scooter is not None:
            logger.info(f"Reserved scooter {scooter_id}")
            return scooter

        current = await self.get_scooter(scooter_id)
        raise ScooterNotAvailable(scooter_id, current.status)

    async def commit_in_use(self, scooter_id: int) -> Scooter:
        """Finalize a reservation: in_use and unlocked"""
        scooter = await self.store.update(
            scooter_id,
            {"status": "in_use", "is_locked": False, "updated_at": utcnow()},
            expected_status=("reserving",)
        )
        if scooter is None:
            current = await self.get_scooter(scooter_id)
            logger.error(f"Cannot commit scooter {scooter_id}: status is {current.status}, expected reserving")
            raise ConsistencyError(f"Scooter {scooter_id} was not reserved", scooter_id)
        return scooter

    async def release(self, scooter_id: int) -> Scooter:
        """Return a scooter to the available pool, locked"""
        scooter = await self.store.update(
            scooter_id,
            {"status": "available", "is_locked": True, "updated_at": utcnow()}
        )
        if scooter is None:
            raise ScooterNotFound(scooter_id)
        logger.info(f"Released scooter {scooter_id}")
        return scooter

    async def set_lock_state(self, scooter_id: int, locked: bool) -> Scooter:
        """Record an acknowledged lock/unlock"""
        scooter = await self.store.update(
            scooter_id,
            {"is_locked": locked, "updated_at": utcnow()}
        )
        if scooter is None:
            raise ScooterNotFound(scooter_id)
        return scooter

    async def set_service_status(self, scooter_id: int, status: str) -> Scooter:
        """Move an idle scooter between available, maintenance and charging"""
        if status not in SERVICE_STATUSES:
            raise InvalidInput(f"Status must be one of {', '.join(SERVICE_STATUSES)}")

        scooter = await self.store.update(
            scooter_id,
            {"status": status, "updated_at": utcnow()},
            expected_status=SERVICE_STATUSES
        )
        if scooter is None:
            current = await self.get_scooter(scooter_id)
            raise ScooterNotAvailable(scooter_id, current.status)
        logger.info(f"Scooter {scooter_id} moved to {status}")
        return scooter

    async def update_telemetry(self, scooter_id: int, latitude, longitude, battery_level: int) -> Scooter:
        """Apply a location/battery report; accepted in every status"""
        if isinstance(battery_level, bool) or not isinstance(battery_level, int):
            raise InvalidInput("Battery level must be an integer")
        if not 0 <= battery_level <= 100:
            raise InvalidInput(f"Battery level {battery_level} out of range (0 to 100)")

        now = utcnow()
        scooter = await self.store.update(
            scooter_id,
            {
                "latitude": quantize(latitude, COORDINATE_PLACES),
                "longitude": quantize(longitude, COORDINATE_PLACES),
                "battery_level": battery_level,
                "last_ping": now,
                "updated_at": now
            }
        )
        if scooter is None:
            raise ScooterNotFound(scooter_id)
        return scooter
