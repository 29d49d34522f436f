"""
Shared fixtures: an in-memory service instance per test, wired to a
scripted device channel whose replies each test can queue.
"""

import asyncio
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest

from fleet_services.config import Settings
from fleet_services.container import build_memory_services
from fleet_services.device_gateway import DeviceChannel, DeviceChannelError
from fleet_services.models import Acknowledgment, Scooter


class ScriptedChannel(DeviceChannel):
    """
    Device channel that replies from a queue.

    Replies: "success", "failure", "timeout" (never acknowledges),
    "error" (transport failure), "ambiguous" (ack for another command id).
    """

    name = "scripted"

    def __init__(self):
        self.replies: List[str] = []
        self.default = "success"
        self.issued: List[Tuple[int, str, str]] = []
        self.delivering = asyncio.Event()
        self.gate: Optional[asyncio.Event] = None

    def queue(self, *replies: str):
        self.replies.extend(replies)

    async def deliver(self, scooter: Scooter, command: str, command_id: str) -> Acknowledgment:
        self.issued.append((scooter.id, command, command_id))
        self.delivering.set()
        if self.gate is not None:
            await self.gate.wait()

        reply = self.replies.pop(0) if self.replies else self.default
        if reply == "timeout":
            await asyncio.Event().wait()
        if reply == "error":
            raise DeviceChannelError("connection reset by gateway")
        if reply == "ambiguous":
            return Acknowledgment(command_id="unrelated-command", status="success")
        return Acknowledgment(command_id=command_id, status=reply)

    def commands(self) -> List[str]:
        return [command for _, command, _ in self.issued]


TEST_SETTINGS = Settings(
    storage_backend="memory",
    device_channel="simulated",
    command_timeout_seconds=0.05,
    command_max_attempts=3,
    command_backoff_seconds=0
)


@pytest.fixture
def channel():
    return ScriptedChannel()


@pytest.fixture
def services(channel):
    return build_memory_services(TEST_SETTINGS, channel=channel)


@pytest.fixture
def registry(services):
    return services.registry


@pytest.fixture
def rider(services):
    return services.users.add("rider.one@example.com", "Rider One")


@pytest.fixture
def other_rider(services):
    return services.users.add("rider.two@example.com", "Rider Two")


@pytest.fixture
async def scooter(registry):
    """S1: available, battery 80, in lower Manhattan"""
    s = await registry.register_scooter("SC-0001", Decimal("40.7128"), Decimal("-74.0060"))
    return await registry.update_telemetry(s.id, Decimal("40.7128"), Decimal("-74.0060"), 80)


@pytest.fixture
async def second_scooter(registry):
    return await registry.register_scooter("SC-0002", Decimal("40.7306"), Decimal("-73.9352"))


@pytest.fixture
async def pricing_rule(services):
    return await services.pricing.create_rule(Decimal("2.50"), Decimal("0.25"))


@pytest.fixture
def coupling(services):
    """Checker for: in_use <=> unlocked <=> referenced by an active ride"""

    async def check():
        for s in await services.registry.list_scooters():
            active = await services.coordinator.rides.find_active(scooter_id=s.id)
            assert (s.status == "in_use") == (not s.is_locked) == (active is not None), s

    return check
