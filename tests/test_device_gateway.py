"""
Unit Tests for the Device Command Gateway
==========================================

Acknowledgment handling, retries, timeouts and the HTTP channel.
"""

import json

import httpx
import pytest

from fleet_services.device_gateway import (
    DeviceChannelError, DeviceCommandGateway, HttpDeviceChannel, SimulatedDeviceChannel
)
from fleet_services.errors import InvalidInput


class TestSendCommand:
    """Test command outcomes against a scripted channel"""

    async def test_unlock_success(self, services, channel, scooter):
        """Test a positive ack updates the registry lock state"""
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is True
        assert result.attempts == 1
        assert result.message == f"Scooter {scooter.id} unlock command sent successfully"
        assert (await services.registry.get_scooter(scooter.id)).is_locked is False
        assert channel.commands() == ["unlock"]

    async def test_already_in_target_state(self, services, channel, scooter):
        """Test locking a locked scooter sends nothing"""
        result = await services.gateway.send_command(scooter.id, "lock")
        assert result.success is True
        assert result.attempts == 0
        assert "already locked" in result.message
        assert channel.issued == []

    async def test_repeated_command_idempotent(self, services, channel, scooter):
        """Test issuing the same command twice reaches the device once"""
        await services.gateway.send_command(scooter.id, "unlock")
        before = await services.registry.get_scooter(scooter.id)
        second = await services.gateway.send_command(scooter.id, "unlock")
        after = await services.registry.get_scooter(scooter.id)
        assert second.success is True
        assert len(channel.issued) == 1
        assert after.updated_at == before.updated_at

    async def test_timeout_then_success(self, services, channel, scooter):
        """Test a lost ack is retried"""
        channel.queue("timeout", "success")
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is True
        assert result.attempts == 2
        assert (await services.registry.get_scooter(scooter.id)).is_locked is False

    async def test_retries_reuse_command_id(self, services, channel, scooter):
        """Test every attempt carries the same command id"""
        channel.queue("timeout", "error", "success")
        await services.gateway.send_command(scooter.id, "unlock")
        command_ids = {command_id for _, _, command_id in channel.issued}
        assert len(channel.issued) == 3
        assert len(command_ids) == 1

    async def test_timeouts_exhaust_retries(self, services, channel, scooter):
        """Test no ack within the retry budget fails and leaves state alone"""
        channel.default = "timeout"
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is False
        assert result.attempts == 3
        assert "no acknowledgment" in result.message
        assert (await services.registry.get_scooter(scooter.id)).is_locked is True

    async def test_transport_errors_retried(self, services, channel, scooter):
        """Test transport errors count as attempts"""
        channel.queue("error", "error", "success")
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is True
        assert result.attempts == 3

    async def test_failure_ack_is_final(self, services, channel, scooter):
        """Test a negative ack is not retried"""
        channel.queue("failure")
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is False
        assert result.attempts == 1
        assert len(channel.issued) == 1
        assert (await services.registry.get_scooter(scooter.id)).is_locked is True

    async def test_ambiguous_ack_never_success(self, services, channel, scooter):
        """Test acks for another command id are not trusted"""
        channel.default = "ambiguous"
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is False
        assert "ambiguous" in result.message
        assert (await services.registry.get_scooter(scooter.id)).is_locked is True

    async def test_unknown_status_is_ambiguous(self, services, channel, scooter):
        """Test an ack with an unrecognized status is retried"""
        channel.queue("pending", "success")
        result = await services.gateway.send_command(scooter.id, "unlock")
        assert result.success is True
        assert result.attempts == 2

    async def test_unknown_scooter(self, services, channel):
        """Test commands to an unknown scooter"""
        result = await services.gateway.send_command(77, "unlock")
        assert result.success is False
        assert result.message == "Scooter with ID 77 not found"
        assert channel.issued == []

    async def test_unknown_command(self, services, scooter):
        """Test only lock and unlock are accepted"""
        with pytest.raises(InvalidInput):
            await services.gateway.send_command(scooter.id, "honk")

    def test_requires_an_attempt(self, services, channel):
        """Test max_attempts below one rejected"""
        with pytest.raises(ValueError):
            DeviceCommandGateway(services.registry, channel, max_attempts=0)


class TestSimulatedChannel:
    """Test the in-process hardware stand-in"""

    async def test_always_failing(self, registry, scooter):
        """Test failure_rate=1 produces negative acks"""
        channel = SimulatedDeviceChannel(latency_seconds=0, failure_rate=1.0, seed=7)
        gateway = DeviceCommandGateway(registry, channel, ack_timeout=0.1, backoff_seconds=0)
        result = await gateway.send_command(scooter.id, "unlock")
        assert result.success is False
        assert "actuator jammed" in result.message
        assert len(channel.issued) == 1

    async def test_always_dropping(self, registry, scooter):
        """Test drop_rate=1 is observed as timeouts"""
        channel = SimulatedDeviceChannel(latency_seconds=0, drop_rate=1.0, seed=7)
        gateway = DeviceCommandGateway(registry, channel, ack_timeout=0.02, max_attempts=2, backoff_seconds=0)
        result = await gateway.send_command(scooter.id, "unlock")
        assert result.success is False
        assert result.attempts == 2
        assert len(channel.issued) == 2

    async def test_healthy(self, registry, scooter):
        """Test a healthy simulated device acknowledges"""
        channel = SimulatedDeviceChannel(latency_seconds=0)
        gateway = DeviceCommandGateway(registry, channel, ack_timeout=0.5)
        assert (await gateway.send_command(scooter.id, "unlock")).success is True


class TestHttpDeviceChannel:
    """Test the IoT gateway HTTP channel with a mock transport"""

    @staticmethod
    def make_channel(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpDeviceChannel("http://gateway.test/", token="secret", client=client)

    async def test_posts_command(self, scooter):
        """Test request shape and ack parsing"""
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"command_id": seen["body"]["command_id"], "status": "success"})

        channel = self.make_channel(handler)
        ack = await channel.deliver(scooter, "unlock", "cmd-1")
        await channel.client.aclose()

        assert seen["url"] == "http://gateway.test/devices/SC-0001/commands"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"command_id": "cmd-1", "command": "unlock"}
        assert ack.command_id == "cmd-1"
        assert ack.status == "success"

    async def test_server_error_raises(self, scooter):
        """Test 5xx responses are transport errors"""
        channel = self.make_channel(lambda request: httpx.Response(503))
        with pytest.raises(DeviceChannelError):
            await channel.deliver(scooter, "lock", "cmd-2")

    async def test_client_error_is_failure_ack(self, scooter):
        """Test 4xx responses are negative acks"""
        channel = self.make_channel(lambda request: httpx.Response(409))
        ack = await channel.deliver(scooter, "lock", "cmd-3")
        assert ack.status == "failure"
        assert ack.command_id == "cmd-3"

    async def test_unparseable_body(self, scooter):
        """Test a non-JSON body is an ambiguous ack"""
        channel = self.make_channel(lambda request: httpx.Response(200, text="OK"))
        ack = await channel.deliver(scooter, "lock", "cmd-4")
        assert ack.status == "unparseable"

    async def test_non_object_body(self, scooter):
        """Test a JSON body that is not an object is an ambiguous ack"""
        channel = self.make_channel(lambda request: httpx.Response(200, json=[]))
        ack = await channel.deliver(scooter, "lock", "cmd-6")
        assert ack.status == "unparseable"
        assert ack.command_id == "cmd-6"

    async def test_structured_detail(self, scooter):
        """Test a structured detail is carried as text"""
        channel = self.make_channel(lambda request: httpx.Response(
            200, json={"command_id": "cmd-7", "status": "failure", "detail": {"code": 12}}
        ))
        ack = await channel.deliver(scooter, "lock", "cmd-7")
        assert ack.status == "failure"
        assert ack.detail == "{'code': 12}"

    async def test_gateway_retries_non_object_body(self, registry, scooter):
        """Test the gateway retries a non-object body and reports failure"""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content)["command_id"])
            return httpx.Response(200, json=[])

        channel = self.make_channel(handler)
        gateway = DeviceCommandGateway(registry, channel, ack_timeout=1.0, max_attempts=3, backoff_seconds=0)
        result = await gateway.send_command(scooter.id, "unlock")
        await channel.client.aclose()

        assert result.success is False
        assert result.attempts == 3
        assert len(requests) == 3
        assert len(set(requests)) == 1
        assert (await registry.get_scooter(scooter.id)).is_locked is True

    async def test_connection_error_raises(self, scooter):
        """Test network failures are transport errors"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        channel = self.make_channel(handler)
        with pytest.raises(DeviceChannelError):
            await channel.deliver(scooter, "unlock", "cmd-5")

    async def test_external_client_not_closed(self, scooter):
        """Test aclose leaves a caller-supplied client open"""
        channel = self.make_channel(lambda request: httpx.Response(200, json={}))
        await channel.aclose()
        assert channel.client.is_closed is False
        await channel.client.aclose()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
