"""
Ride Coordinator
================

State machine for a ride's lifecycle:

    (no ride) --start_ride--> active --end_ride----> completed
                                     --cancel_ride-> cancelled

Guarantees:
- at most one active ride per user and per scooter
- scooter in_use <=> scooter unlocked <=> exactly one active ride on it
- a failure after the scooter was reserved rolls the reservation back

Each transition runs under per-entity locks (user, then scooter), held
across the device command. Once a transition has entered its locked
section it runs as a shielded task, so a disconnecting caller cannot
leave the scooter and ride records out of step with the hardware.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

from fleet_services.device_gateway import TARGET_LOCK_STATE, DeviceCommandGateway
from fleet_services.errors import (
    ConsistencyError, DuplicateActiveRide, FleetError, LockFailed, RideNotActive,
    RideNotFound, ScooterNotFound, UnlockFailed, UserAlreadyRiding, UserNotFound
)
from fleet_services.fleet_registry import FleetRegistry
from fleet_services.locks import KeyedLocks
from fleet_services.models import (
    COORDINATE_PLACES, DISTANCE_PLACES, CommandResult, Ride, quantize, utcnow
)
from fleet_services.pricing import PricingResolver
from fleet_services.stores import RideStore, UserDirectory

logger = logging.getLogger(__name__)


def _user_key(user_id: int):
    return ("user", user_id)


def _scooter_key(scooter_id: int):
    return ("scooter", scooter_id)


def _contradicts_status(scooter, command: str) -> bool:
    """Only an in_use scooter may be unlocked, and it may not be locked"""
    target = TARGET_LOCK_STATE[command]
    if scooter.is_locked == target:
        return False
    return target == (scooter.status == "in_use")


class RideCoordinator:

    def __init__(
        self,
        registry: FleetRegistry,
        pricing: PricingResolver,
        gateway: DeviceCommandGateway,
        rides: RideStore,
        users: UserDirectory,
        locks: Optional[KeyedLocks] = None
    ):
        self.registry = registry
        self.pricing = pricing
        self.gateway = gateway
        self.rides = rides
        self.users = users
        self.locks = locks or KeyedLocks()
        self._in_flight: Set[asyncio.Task] = set()

    # ============================================
    # QUERIES
    # ============================================

    async def get_ride(self, ride_id: int) -> Ride:
        ride = await self.rides.get(ride_id)
        if ride is None:
            raise RideNotFound(ride_id)
        return ride

    async def user_rides(self, user_id: int) -> List[Ride]:
        """Ride history of a user, newest first"""
        if not await self.users.exists(user_id):
            raise UserNotFound(user_id)
        return await self.rides.list_for_user(user_id)

    async def count_rides(self, status: Optional[str] = None, since: Optional[datetime] = None) -> int:
        return await self.rides.count(status=status, since=since)

    # ============================================
    # TRANSITIONS
    # ============================================

    async def start_ride(self, user_id: int, scooter_id: int, latitude, longitude) -> Ride:
        if not await self.users.exists(user_id):
            raise UserNotFound(user_id)
        await self.registry.get_scooter(scooter_id)

        return await self._run_to_completion(
            self._start_locked(user_id, scooter_id, latitude, longitude)
        )

    async def end_ride(self, ride_id: int, latitude, longitude, distance_km, duration_minutes: int) -> Ride:
        ride = await self.get_ride(ride_id)
        if ride.status != "active":
            raise RideNotActive(ride_id, ride.status)

        return await self._run_to_completion(
            self._end_locked(ride, latitude, longitude, distance_km, duration_minutes)
        )

    async def cancel_ride(self, ride_id: int) -> Ride:
        ride = await self.get_ride(ride_id)
        if ride.status != "active":
            raise RideNotActive(ride_id, ride.status)

        return await self._run_to_completion(self._cancel_locked(ride))

    async def send_scooter_command(self, scooter_id: int, command: str) -> CommandResult:
        """Operator lock/unlock, serialized with ride transitions on the scooter"""
        return await self._run_to_completion(self._command_locked(scooter_id, command))

    # ============================================
    # LOCKED SECTIONS
    # ============================================

    async def _start_locked(self, user_id, scooter_id, latitude, longitude) -> Ride:
        async with self.locks.hold_many(_user_key(user_id), _scooter_key(scooter_id)):
            if await self.rides.find_active(user_id=user_id) is not None:
                raise UserAlreadyRiding(user_id)

            await self.registry.try_reserve(scooter_id)
            unlocked = False
            try:
                if await self.rides.find_active(scooter_id=scooter_id) is not None:
                    logger.error(f"Scooter {scooter_id} was available while referenced by an active ride")
                    raise ConsistencyError(f"Scooter {scooter_id} already has an active ride", scooter_id)

                result = await self.gateway.send_command(scooter_id, "unlock")
                if not result.success:
                    raise UnlockFailed(scooter_id, result.message)
                unlocked = True

                await self.registry.commit_in_use(scooter_id)
                ride = await self.rides.insert(Ride(
                    user_id=user_id,
                    scooter_id=scooter_id,
                    status="active",
                    start_latitude=latitude,
                    start_longitude=longitude,
                    started_at=utcnow()
                ))

            except DuplicateActiveRide as e:
                # Another process won the race; the store's unique index caught it
                await self._roll_back_start(scooter_id, unlocked)
                if e.field == "user_id":
                    raise UserAlreadyRiding(user_id)
                logger.error(f"Duplicate active ride for scooter {scooter_id} after reservation")
                raise ConsistencyError(f"Scooter {scooter_id} already has an active ride", scooter_id)

            except Exception:
                await self._roll_back_start(scooter_id, unlocked)
                raise

        logger.info(f"Ride {ride.id} started: user {user_id} on scooter {scooter_id}")
        return ride

    async def _roll_back_start(self, scooter_id: int, unlocked: bool):
        if unlocked:
            result = await self.gateway.send_command(scooter_id, "lock")
            if not result.success:
                logger.error(f"Scooter {scooter_id} may be physically unlocked after rollback: {result.message}")
        await self.registry.release(scooter_id)
        logger.warning(f"Rolled back reservation of scooter {scooter_id}")

    async def _end_locked(self, ride: Ride, latitude, longitude, distance_km, duration_minutes) -> Ride:
        async with self.locks.hold_many(_user_key(ride.user_id), _scooter_key(ride.scooter_id)):
            ride = await self.get_ride(ride.id)
            if ride.status != "active":
                raise RideNotActive(ride.id, ride.status)

            _, cost = await self.pricing.fare_for(duration_minutes)

            # Lock before billing is final so a completed ride never has an unlocked scooter
            result = await self.gateway.send_command(ride.scooter_id, "lock")
            if not result.success:
                logger.warning(f"Ride {ride.id} stays active: {result.message}")
                raise LockFailed(ride.scooter_id, result.message)

            completed = await self.rides.update(
                ride.id,
                {
                    "status": "completed",
                    "end_latitude": quantize(latitude, COORDINATE_PLACES),
                    "end_longitude": quantize(longitude, COORDINATE_PLACES),
                    "distance_km": quantize(distance_km, DISTANCE_PLACES),
                    "duration_minutes": max(int(duration_minutes), 0),
                    "total_cost": cost,
                    "ended_at": utcnow()
                },
                expected_status=("active",)
            )
            if completed is None:
                logger.error(f"Ride {ride.id} left the active state while locked")
                raise ConsistencyError(f"Ride {ride.id} changed concurrently", ride.id)

            await self.registry.release(ride.scooter_id)

        logger.info(f"Ride {ride.id} completed: {completed.duration_minutes} min, cost {completed.total_cost}")
        return completed

    async def _cancel_locked(self, ride: Ride) -> Ride:
        async with self.locks.hold_many(_user_key(ride.user_id), _scooter_key(ride.scooter_id)):
            ride = await self.get_ride(ride.id)
            if ride.status != "active":
                raise RideNotActive(ride.id, ride.status)

            result = await self.gateway.send_command(ride.scooter_id, "lock")
            if not result.success:
                logger.error(f"Cancelling ride {ride.id} without lock confirmation: {result.message}")

            cancelled = await self.rides.update(
                ride.id,
                {"status": "cancelled", "ended_at": utcnow()},
                expected_status=("active",)
            )
            if cancelled is None:
                logger.error(f"Ride {ride.id} left the active state while locked")
                raise ConsistencyError(f"Ride {ride.id} changed concurrently", ride.id)

            await self.registry.release(ride.scooter_id)

        logger.info(f"Ride {ride.id} cancelled")
        return cancelled

    async def _command_locked(self, scooter_id: int, command: str) -> CommandResult:
        async with self.locks.hold(_scooter_key(scooter_id)):
            if command in TARGET_LOCK_STATE:
                try:
                    scooter = await self.registry.get_scooter(scooter_id)
                except ScooterNotFound:
                    scooter = None
                if scooter is not None and _contradicts_status(scooter, command):
                    message = (f"Cannot {command} scooter {scooter_id} while it is {scooter.status}; "
                               f"rides are locked and unlocked through end_ride or cancel_ride")
                    logger.warning(message)
                    return CommandResult(success=False, message=message)
            return await self.gateway.send_command(scooter_id, command)

    # ============================================
    # CANCELLATION HANDLING
    # ============================================

    async def _run_to_completion(self, coro):
        """Await coro in a task that keeps running if the caller is cancelled"""
        task = asyncio.ensure_future(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._transition_done)
        return await asyncio.shield(task)

    def _transition_done(self, task: asyncio.Task):
        self._in_flight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, FleetError):
            logger.error(f"Ride transition failed unexpectedly: {error!r}")

    async def drain(self):
        """Wait for transitions whose callers have gone away"""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
