"""Tests for tap endpoint allocation. The `ip` tool is patched."""

import io
from unittest.mock import AsyncMock, call, patch

import pytest

from ci_sandbox.exceptions import ExternalToolError, NetworkAllocationError
from ci_sandbox.network import Endpoint, TapAllocator, TapEndpoint
from ci_sandbox.settings import Settings


@pytest.fixture
def mock_ip():
    with patch("ci_sandbox.network.run_tool", new=AsyncMock(return_value="")) as mock:
        yield mock


class TestTapEndpoint:
    def test_satisfies_endpoint_protocol(self) -> None:
        assert isinstance(TapEndpoint("ci-tap0", "10.69.0.1", "10.69.0.2", "255.255.255.252"), Endpoint)

    def test_write_config(self) -> None:
        endpoint = TapEndpoint("ci-tap0", "10.69.0.1", "10.69.0.2", "255.255.255.252")
        stream = io.StringIO()
        endpoint.write_config(stream)

        config = stream.getvalue()
        assert "iface eth0 inet static" in config
        assert "address 10.69.0.2" in config
        assert "netmask 255.255.255.252" in config
        assert "gateway 10.69.0.1" in config

    async def test_release_is_idempotent(self, mock_ip: AsyncMock) -> None:
        endpoint = TapEndpoint("ci-tap0", "10.69.0.1", "10.69.0.2", "255.255.255.252", ip_bin="/sbin/ip")
        await endpoint.release()
        await endpoint.release()

        mock_ip.assert_awaited_once_with("/sbin/ip", "tuntap", "del", "dev", "ci-tap0", "mode", "tap")

    async def test_release_failure(self, mock_ip: AsyncMock) -> None:
        mock_ip.side_effect = ExternalToolError("ip exited with status 1", tool="ip", output="Cannot find device")
        endpoint = TapEndpoint("ci-tap0", "10.69.0.1", "10.69.0.2", "255.255.255.252")

        with pytest.raises(NetworkAllocationError, match="ci-tap0"):
            await endpoint.release()


class TestTapAllocator:
    async def test_allocations_get_distinct_subnets(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.69.0.0/16", tap_prefix="ci-tap"))

        first = await allocator.allocate(1000, 1000)
        second = await allocator.allocate(1000, 1000)

        assert (first.name, first.host_address, first.guest_address) == ("ci-tap0", "10.69.0.1", "10.69.0.2")
        assert (second.name, second.host_address, second.guest_address) == ("ci-tap1", "10.69.0.5", "10.69.0.6")
        assert first.netmask == "255.255.255.252"

    async def test_tap_owned_by_hypervisor_identity(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings())
        endpoint = await allocator.allocate(1000, 1001)

        assert mock_ip.await_args_list[0].args == (
            "ip", "tuntap", "add", "dev", endpoint.name, "mode", "tap", "user", "1000", "group", "1001",
        )  # fmt: skip
        assert mock_ip.await_args_list[1].args == ("ip", "addr", "add", "10.69.0.1/30", "dev", endpoint.name)
        assert mock_ip.await_args_list[2].args == ("ip", "link", "set", endpoint.name, "up")

    async def test_configure_failure_removes_tap(self, mock_ip: AsyncMock) -> None:
        mock_ip.side_effect = ["", ExternalToolError("ip exited with status 2", tool="ip"), ""]
        allocator = TapAllocator(Settings())

        with pytest.raises(NetworkAllocationError, match="failed to configure"):
            await allocator.allocate(0, 0)

        assert mock_ip.await_args_list[-1] == call("ip", "tuntap", "del", "dev", "ci-tap0", "mode", "tap")

    async def test_create_failure(self, mock_ip: AsyncMock) -> None:
        mock_ip.side_effect = ExternalToolError("ip exited with status 1", tool="ip", output="Operation not permitted")
        allocator = TapAllocator(Settings())

        with pytest.raises(NetworkAllocationError, match="failed to create"):
            await allocator.allocate(0, 0)
        assert mock_ip.await_count == 1

    async def test_pool_exhaustion(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.70.0.0/30"))
        await allocator.allocate(0, 0)

        with pytest.raises(NetworkAllocationError, match="exhausted"):
            await allocator.allocate(0, 0)

    def test_invalid_network(self) -> None:
        with pytest.raises(NetworkAllocationError, match="invalid tap network"):
            TapAllocator(Settings(tap_network="not-a-network"))

    async def test_released_slot_is_reused(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.70.0.0/30"))
        first = await allocator.allocate(0, 0)
        await first.release()

        second = await allocator.allocate(0, 0)

        assert (second.name, second.host_address) == (first.name, first.host_address)

    async def test_lowest_free_slot_first(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.69.0.0/16"))
        endpoints = [await allocator.allocate(0, 0) for _ in range(3)]
        await endpoints[2].release()
        await endpoints[0].release()

        assert (await allocator.allocate(0, 0)).name == "ci-tap0"
        assert (await allocator.allocate(0, 0)).name == "ci-tap2"
        assert (await allocator.allocate(0, 0)).name == "ci-tap3"

    async def test_undeleted_tap_keeps_its_slot(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.69.0.0/16"))
        first = await allocator.allocate(0, 0)
        mock_ip.side_effect = ExternalToolError("ip exited with status 1", tool="ip", output="Device busy")
        with pytest.raises(NetworkAllocationError):
            await first.release()
        mock_ip.side_effect = None

        assert (await allocator.allocate(0, 0)).name == "ci-tap1"

    async def test_create_failure_returns_slot(self, mock_ip: AsyncMock) -> None:
        allocator = TapAllocator(Settings(tap_network="10.70.0.0/30"))
        mock_ip.side_effect = [ExternalToolError("ip exited with status 1", tool="ip"), "", "", ""]

        with pytest.raises(NetworkAllocationError, match="failed to create"):
            await allocator.allocate(0, 0)
        endpoint = await allocator.allocate(0, 0)

        assert endpoint.name == "ci-tap0"
