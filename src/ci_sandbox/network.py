"""Network endpoint allocation for instances.

An instance borrows one Endpoint from a NetworkAllocator: a host-side tap
device name plus the guest's address. The instance writes the endpoint's
interface config into a scratch dir the guest can read, and releases the
endpoint during cleanup.

TapAllocator is the default allocator: one tap device per instance, each on
its own /30 carved from a configurable pool (host .1, guest .2).
"""

from __future__ import annotations

import functools
import heapq
import ipaddress
import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Protocol, runtime_checkable

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.exceptions import ExternalToolError, NetworkAllocationError
from ci_sandbox.settings import Settings
from ci_sandbox.subprocess_utils import run_tool

logger = get_logger(__name__)


@runtime_checkable
class Endpoint(Protocol):
    """A host network endpoint borrowed by one instance."""

    @property
    def name(self) -> str:
        """Host interface name (e.g. ci-tap0)."""
        ...

    @property
    def guest_address(self) -> str:
        """Address the guest is configured with."""
        ...

    def write_config(self, stream: IO[str]) -> None:
        """Write the guest-side interface configuration."""
        ...

    async def release(self) -> None:
        """Return the endpoint to the host. Idempotent."""
        ...


class NetworkAllocator(Protocol):
    """Issues endpoints whose host side is usable by uid/gid."""

    async def allocate(self, uid: int, gid: int) -> Endpoint: ...


@dataclass
class TapEndpoint:
    """Tap device with a point-to-point /30."""

    name: str
    host_address: str
    guest_address: str
    netmask: str
    ip_bin: str = "ip"
    on_release: Callable[[], None] | None = field(default=None, repr=False, compare=False)
    _released: bool = field(default=False, repr=False)

    def write_config(self, stream: IO[str]) -> None:
        """Debian interfaces(5) stanza for the guest's eth0."""
        stream.write(
            "auto eth0\n"
            "iface eth0 inet static\n"
            f"    address {self.guest_address}\n"
            f"    netmask {self.netmask}\n"
            f"    gateway {self.host_address}\n"
            f"    dns-nameservers {constants.GUEST_NAMESERVER}\n"
        )

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await run_tool(self.ip_bin, "tuntap", "del", "dev", self.name, "mode", "tap")
        except ExternalToolError as e:
            raise NetworkAllocationError(
                f"failed to delete tap {self.name}: {e.message}", {"tap": self.name, "output": e.output}
            ) from e
        logger.debug("Tap released", extra={"tap": self.name})
        if self.on_release is not None:
            self.on_release()


class TapAllocator:
    """Creates one tap device per allocation.

    Tap names and subnets come from counters guarded by a lock, so
    concurrent allocations never collide. A slot comes back to the pool once
    its device is deleted; a device that could not be deleted keeps its slot.
    """

    def __init__(self, settings: Settings) -> None:
        try:
            network = ipaddress.IPv4Network(settings.tap_network)
        except ValueError as e:
            raise NetworkAllocationError(f"invalid tap network {settings.tap_network!r}: {e}") from e
        self._subnets = network.subnets(new_prefix=constants.TAP_SUBNET_PREFIXLEN)
        self._indices = itertools.count()
        self._lock = threading.Lock()
        self._free: list[tuple[int, ipaddress.IPv4Network]] = []
        self._prefix = settings.tap_prefix
        self._ip_bin = settings.ip_bin

    def _next_slot(self) -> tuple[int, ipaddress.IPv4Network]:
        with self._lock:
            if self._free:
                return heapq.heappop(self._free)
            subnet = next(self._subnets, None)
            if subnet is None:
                raise NetworkAllocationError("tap address pool exhausted")
            return next(self._indices), subnet

    def _reclaim(self, index: int, subnet: ipaddress.IPv4Network) -> None:
        with self._lock:
            heapq.heappush(self._free, (index, subnet))

    async def allocate(self, uid: int, gid: int) -> TapEndpoint:
        """Create a tap device owned by uid/gid and address its host side.

        Raises:
            NetworkAllocationError: Pool exhausted or `ip` failed
        """
        index, subnet = self._next_slot()
        host, guest = itertools.islice(subnet.hosts(), 2)
        endpoint = TapEndpoint(
            name=f"{self._prefix}{index}",
            host_address=str(host),
            guest_address=str(guest),
            netmask=str(subnet.netmask),
            ip_bin=self._ip_bin,
            on_release=functools.partial(self._reclaim, index, subnet),
        )
        context = {"tap": endpoint.name, "uid": uid, "gid": gid}

        try:
            await run_tool(
                self._ip_bin, "tuntap", "add", "dev", endpoint.name, "mode", "tap",
                "user", str(uid), "group", str(gid),
                context=context,
            )  # fmt: skip
        except ExternalToolError as e:
            self._reclaim(index, subnet)
            raise NetworkAllocationError(f"failed to create tap {endpoint.name}: {e.message}", context) from e

        try:
            await run_tool(
                self._ip_bin, "addr", "add", f"{host}/{subnet.prefixlen}", "dev", endpoint.name, context=context
            )
            await run_tool(self._ip_bin, "link", "set", endpoint.name, "up", context=context)
        except ExternalToolError as e:
            try:
                await endpoint.release()
            except NetworkAllocationError as release_error:
                logger.error("Failed to remove half-configured tap", extra={**context, "error": release_error.message})
            raise NetworkAllocationError(f"failed to configure tap {endpoint.name}: {e.message}", context) from e

        logger.info("Tap allocated", extra={**context, "guest_address": endpoint.guest_address})
        return endpoint
