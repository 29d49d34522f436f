"""
Rider Traffic Simulator
=======================

Simulates riders using the fleet API: each rider picks an available
scooter, starts a ride, reports telemetry while moving, then ends the
ride. Useful for exercising lock contention and device command retries
against a running service.

Features:
- Configurable number of concurrent riders
- Telemetry updates every few seconds while riding
- Counts rides started/ended, conflicts and hardware failures

Usage:
    python -m fleet_services.traffic_simulator --riders 20 --duration 120

    # Riders must exist in the user directory: pass their ids
    python -m fleet_services.traffic_simulator --riders 5 --first-user-id 100
"""

import argparse
import asyncio
import logging
import random
import sys
from typing import Dict, Optional, Tuple

import httpx

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

FLEET_API = "http://localhost:8000"

# Movement parameters
LAT_DEGREE_KM = 111.0  # 1 degree latitude ≈ 111 km
LON_DEGREE_KM = 85.0   # 1 degree longitude ≈ 85 km (at ~40°N)
SCOOTER_SPEED_KMH = (12.0, 25.0)


class SimulatedRider:
    """One rider moving a scooter in a straight line"""

    def __init__(self, user_id: int, rng: Optional[random.Random] = None):
        self.user_id = user_id
        self.rng = rng or random.Random()
        self.ride_id: Optional[int] = None
        self.scooter_id: Optional[int] = None
        self.lat = 0.0
        self.lon = 0.0
        self.heading = (0.0, 0.0)
        self.speed_kmh = self.rng.uniform(*SCOOTER_SPEED_KMH)
        self.distance_km = 0.0
        self.elapsed_seconds = 0.0
        self.battery = 100
        self.start_battery = 100

    def board(self, ride_id: int, scooter: dict):
        self.ride_id = ride_id
        self.scooter_id = scooter["id"]
        self.lat = float(scooter["latitude"])
        self.lon = float(scooter["longitude"])
        self.battery = int(scooter.get("battery_level", 100))
        self.start_battery = self.battery
        dlat, dlon = self.rng.uniform(-1, 1), self.rng.uniform(-1, 1)
        norm = (dlat ** 2 + dlon ** 2) ** 0.5 or 1.0
        self.heading = (dlat / norm, dlon / norm)
        self.distance_km = 0.0
        self.elapsed_seconds = 0.0

    def move(self, seconds: float) -> Tuple[float, float]:
        """Advance along the heading and return the new position"""
        step_km = (self.speed_kmh / 3600) * seconds
        self.lat += self.heading[0] * step_km / LAT_DEGREE_KM
        self.lon += self.heading[1] * step_km / LON_DEGREE_KM
        self.distance_km += step_km
        self.elapsed_seconds += seconds
        # Roughly 1% battery per kilometre
        self.battery = max(0, self.start_battery - int(self.distance_km))
        return self.lat, self.lon

    @property
    def duration_minutes(self) -> int:
        return int(round(self.elapsed_seconds / 60))


class TrafficSimulator:
    """Main simulator class"""

    def __init__(self, num_riders: int, first_user_id: int = 1, update_interval: float = 2.0,
                 ride_updates: int = 10, seed: Optional[int] = None):
        self.num_riders = num_riders
        self.first_user_id = first_user_id
        self.update_interval = update_interval
        self.ride_updates = ride_updates
        self.rng = random.Random(seed)
        self.http_client: Optional[httpx.AsyncClient] = None
        self.running = False
        self.stats: Dict[str, int] = {
            "rides_started": 0,
            "rides_ended": 0,
            "conflicts": 0,
            "hardware_failures": 0,
            "telemetry_updates": 0,
            "errors": 0
        }

    def record_failure(self, response: httpx.Response):
        """Classify a failed API response"""
        try:
            kind = response.json().get("error", "")
        except ValueError:
            kind = ""
        if response.status_code == 409:
            self.stats["conflicts"] += 1
        elif kind in ("UnlockFailed", "LockFailed"):
            self.stats["hardware_failures"] += 1
        else:
            self.stats["errors"] += 1
        return kind

    async def start_ride(self, rider: SimulatedRider) -> bool:
        response = await self.http_client.get(f"{FLEET_API}/scooters/available")
        scooters = response.json() if response.status_code == 200 else []
        if not scooters:
            return False

        scooter = self.rng.choice(scooters)
        response = await self.http_client.post(f"{FLEET_API}/rides", json={
            "user_id": rider.user_id,
            "scooter_id": scooter["id"],
            "start_latitude": scooter["latitude"],
            "start_longitude": scooter["longitude"]
        })
        if response.status_code != 201:
            kind = self.record_failure(response)
            logger.warning(f"Rider {rider.user_id} could not start on scooter {scooter['id']}: {kind}")
            return False

        rider.board(response.json()["id"], scooter)
        self.stats["rides_started"] += 1
        logger.info(f"✓ Rider {rider.user_id} started ride {rider.ride_id} on scooter {rider.scooter_id}")
        return True

    async def send_telemetry(self, rider: SimulatedRider):
        lat, lon = rider.move(self.update_interval)
        response = await self.http_client.put(
            f"{FLEET_API}/scooters/{rider.scooter_id}/telemetry",
            json={"latitude": round(lat, 7), "longitude": round(lon, 7), "battery_level": rider.battery}
        )
        if response.status_code == 200:
            self.stats["telemetry_updates"] += 1
        else:
            self.record_failure(response)

    async def end_ride(self, rider: SimulatedRider) -> bool:
        response = await self.http_client.post(f"{FLEET_API}/rides/{rider.ride_id}/end", json={
            "end_latitude": round(rider.lat, 7),
            "end_longitude": round(rider.lon, 7),
            "distance_km": round(rider.distance_km, 3),
            "duration_minutes": rider.duration_minutes
        })
        if response.status_code != 200:
            kind = self.record_failure(response)
            logger.warning(f"Ride {rider.ride_id} could not end: {kind}")
            return False

        self.stats["rides_ended"] += 1
        logger.info(f"✓ Ride {rider.ride_id} ended, cost {response.json()['total_cost']}")
        rider.ride_id = None
        return True

    async def simulate_rider(self, rider: SimulatedRider):
        """Loop: ride, report telemetry, end ride"""
        while self.running:
            try:
                if not await self.start_ride(rider):
                    await asyncio.sleep(self.update_interval)
                    continue

                for _ in range(self.ride_updates):
                    if not self.running:
                        break
                    await asyncio.sleep(self.update_interval)
                    await self.send_telemetry(rider)

                # Lock failures leave the ride active; keep trying
                while rider.ride_id is not None and not await self.end_ride(rider):
                    await asyncio.sleep(self.update_interval)

            except httpx.HTTPError as e:
                self.stats["errors"] += 1
                logger.error(f"Rider {rider.user_id} request failed: {e}")
                await asyncio.sleep(self.update_interval)

    def log_stats(self, title: str):
        logger.info("=" * 60)
        logger.info(title)
        logger.info("=" * 60)
        logger.info(f"Rides Started:      {self.stats['rides_started']}")
        logger.info(f"Rides Ended:        {self.stats['rides_ended']}")
        logger.info(f"Conflicts:          {self.stats['conflicts']}")
        logger.info(f"Hardware Failures:  {self.stats['hardware_failures']}")
        logger.info(f"Telemetry Updates:  {self.stats['telemetry_updates']}")
        logger.info(f"Errors:             {self.stats['errors']}")
        logger.info("=" * 60)

    async def print_stats(self):
        """Periodically print statistics"""
        while self.running:
            await asyncio.sleep(10)
            self.log_stats("SIMULATION STATISTICS")

    async def run(self, duration_seconds: Optional[int] = None):
        """Run the simulation"""
        self.http_client = httpx.AsyncClient(timeout=30.0)
        riders = [
            SimulatedRider(self.first_user_id + i, random.Random(self.rng.random()))
            for i in range(self.num_riders)
        ]

        self.running = True
        logger.info(f"Starting traffic simulation with {self.num_riders} riders")

        try:
            tasks = [self.simulate_rider(r) for r in riders] + [self.print_stats()]
            if duration_seconds:
                await asyncio.wait_for(asyncio.gather(*tasks), timeout=duration_seconds)
            else:
                await asyncio.gather(*tasks)

        except asyncio.TimeoutError:
            logger.info(f"Simulation duration ({duration_seconds}s) reached")
        finally:
            self.running = False
            await self.http_client.aclose()
            self.log_stats("FINAL STATISTICS")


async def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Scooter Rider Traffic Simulator")
    parser.add_argument("--riders", type=int, default=10, help="Number of riders (default: 10)")
    parser.add_argument("--first-user-id", type=int, default=1, help="User id of the first rider (default: 1)")
    parser.add_argument("--update-interval", type=float, default=2.0, help="Telemetry interval in seconds (default: 2)")
    parser.add_argument("--ride-updates", type=int, default=10, help="Telemetry updates per ride (default: 10)")
    parser.add_argument("--duration", type=int, default=None, help="Simulation duration in seconds (default: infinite)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")

    args = parser.parse_args()

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            health = await client.get(f"{FLEET_API}/health")
            if health.status_code != 200:
                logger.error("❌ Fleet API is not healthy!")
                sys.exit(1)
            logger.info("✓ Fleet API ready")

    except httpx.HTTPError as e:
        logger.error(f"❌ Cannot connect to Fleet API: {e}")
        sys.exit(1)

    simulator = TrafficSimulator(
        num_riders=args.riders,
        first_user_id=args.first_user_id,
        update_interval=args.update_interval,
        ride_updates=args.ride_updates,
        seed=args.seed
    )
    await simulator.run(duration_seconds=args.duration)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Simulator stopped by user")
