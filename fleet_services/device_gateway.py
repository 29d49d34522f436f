"""
Device Command Gateway
======================

Sends lock/unlock commands to scooter hardware and reconciles the
acknowledgment with the fleet registry.

Per command: Issued -> Acked(success) | Acked(failure) | TimedOut

- If the registry already shows the requested lock state, nothing is sent.
- Each attempt waits at most `ack_timeout` seconds for an acknowledgment.
  Timeouts and transport errors are retried with exponential backoff, reusing
  the same command id so the device can discard duplicates.
- A negative acknowledgment is final.
- Registry lock state only changes after a positive acknowledgment for the
  command id that was issued. Anything else counts as a failure.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import httpx

from fleet_services.errors import InvalidInput, ScooterNotFound
from fleet_services.fleet_registry import FleetRegistry
from fleet_services.models import Acknowledgment, CommandResult, Scooter

logger = logging.getLogger(__name__)

ACK_SUCCESS = "success"
ACK_FAILURE = "failure"

# Lock state the scooter ends up in after each command
TARGET_LOCK_STATE = {"lock": True, "unlock": False}


class DeviceChannelError(Exception):
    """Transport failure before any acknowledgment was received"""


# ============================================
# DEVICE CHANNELS
# ============================================

class DeviceChannel(ABC):
    """Transport that delivers one command to one scooter"""

    name = "abstract"

    @abstractmethod
    async def deliver(self, scooter: Scooter, command: str, command_id: str) -> Acknowledgment:
        """Issue the command and wait for the device's acknowledgment"""

    async def aclose(self):
        pass


class HttpDeviceChannel(DeviceChannel):
    """Delivers commands through the IoT gateway's HTTP API"""

    name = "http"

    def __init__(self, base_url: str, token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=10.0)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def deliver(self, scooter: Scooter, command: str, command_id: str) -> Acknowledgment:
        try:
            response = await self.client.post(
                f"{self.base_url}/devices/{scooter.serial_number}/commands",
                json={"command_id": command_id, "command": command},
                headers=self._headers()
            )
        except httpx.TimeoutException as e:
            raise DeviceChannelError(f"gateway request timed out: {e}")
        except httpx.HTTPError as e:
            raise DeviceChannelError(f"gateway request failed: {e}")

        if response.status_code >= 500:
            raise DeviceChannelError(f"gateway returned HTTP {response.status_code}")
        if response.status_code != 200:
            return Acknowledgment(
                command_id=command_id,
                status=ACK_FAILURE,
                detail=f"gateway returned HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError:
            return Acknowledgment(command_id=command_id, status="unparseable")
        if not isinstance(body, dict):
            return Acknowledgment(command_id=command_id, status="unparseable")

        detail = body.get("detail")
        return Acknowledgment(
            command_id=str(body.get("command_id", "")),
            status=str(body.get("status", "")),
            detail=None if detail is None else str(detail)
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


class SimulatedDeviceChannel(DeviceChannel):
    """
    In-process stand-in for scooter hardware.

    A dropped command never acknowledges, which the gateway observes as a
    timeout. A failed command is acknowledged negatively.
    """

    name = "simulated"

    def __init__(self, latency_seconds: float = 0.05, failure_rate: float = 0.0,
                 drop_rate: float = 0.0, seed: Optional[int] = None):
        self.latency_seconds = latency_seconds
        self.failure_rate = failure_rate
        self.drop_rate = drop_rate
        self.random = random.Random(seed)
        self.issued: List[Tuple[int, str, str]] = []

    async def deliver(self, scooter: Scooter, command: str, command_id: str) -> Acknowledgment:
        self.issued.append((scooter.id, command, command_id))

        if self.random.random() < self.drop_rate:
            await asyncio.Event().wait()

        await asyncio.sleep(self.latency_seconds)

        if self.random.random() < self.failure_rate:
            return Acknowledgment(command_id=command_id, status=ACK_FAILURE, detail="actuator jammed")
        return Acknowledgment(command_id=command_id, status=ACK_SUCCESS)


# ============================================
# GATEWAY
# ============================================

class DeviceCommandGateway:

    def __init__(
        self,
        registry: FleetRegistry,
        channel: DeviceChannel,
        ack_timeout: float = 7.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.registry = registry
        self.channel = channel
        self.ack_timeout = ack_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def send_command(self, scooter_id: int, command: str) -> CommandResult:
        """Send lock/unlock and report the outcome after retries"""
        if command not in TARGET_LOCK_STATE:
            raise InvalidInput(f"Unknown command {command!r}; expected lock or unlock")

        try:
            scooter = await self.registry.get_scooter(scooter_id)
        except ScooterNotFound:
            return CommandResult(success=False, message=f"Scooter with ID {scooter_id} not found")

        target = TARGET_LOCK_STATE[command]
        if scooter.is_locked == target:
            return CommandResult(success=True, message=f"Scooter {scooter_id} is already {command}ed")

        command_id = str(uuid.uuid4())
        reason = "no acknowledgment"

        for attempt in range(1, self.max_attempts + 1):
            try:
                ack = await asyncio.wait_for(
                    self.channel.deliver(scooter, command, command_id),
                    timeout=self.ack_timeout
                )
            except asyncio.TimeoutError:
                reason = f"no acknowledgment within {self.ack_timeout}s"
                logger.warning(f"[{command_id}] {command} scooter {scooter_id} attempt {attempt}: {reason}")
            except DeviceChannelError as e:
                reason = str(e)
                logger.warning(f"[{command_id}] {command} scooter {scooter_id} attempt {attempt}: {reason}")
            else:
                if ack.command_id != command_id or ack.status not in (ACK_SUCCESS, ACK_FAILURE):
                    reason = f"ambiguous acknowledgment (status={ack.status!r})"
                    logger.warning(f"[{command_id}] {command} scooter {scooter_id} attempt {attempt}: {reason}")
                elif ack.status == ACK_FAILURE:
                    detail = ack.detail or "device rejected command"
                    logger.error(f"[{command_id}] Scooter {scooter_id} rejected {command}: {detail}")
                    return CommandResult(
                        success=False,
                        message=f"Scooter {scooter_id} rejected {command} command: {detail}",
                        attempts=attempt
                    )
                else:
                    await self.registry.set_lock_state(scooter_id, target)
                    logger.info(f"[{command_id}] Scooter {scooter_id} acknowledged {command}")
                    return CommandResult(
                        success=True,
                        message=f"Scooter {scooter_id} {command} command sent successfully",
                        attempts=attempt
                    )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))

        logger.error(f"[{command_id}] {command} scooter {scooter_id} failed after {self.max_attempts} attempts")
        return CommandResult(
            success=False,
            message=f"Failed to send {command} command to scooter {scooter_id}: {reason}",
            attempts=self.max_attempts
        )
