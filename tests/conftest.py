"""Shared pytest fixtures for ci-sandbox tests.

Nothing here needs root, QEMU or UML: the network allocator is an
in-memory fake and the hypervisor process is replaced by FakeHypervisor,
which exits when told to (or when killed).
"""

import asyncio
import io
from collections.abc import Iterator
from pathlib import Path
from typing import IO
from unittest.mock import AsyncMock, patch

import pytest

from ci_sandbox.exceptions import NetworkAllocationError
from ci_sandbox.settings import Settings
from ci_sandbox.vm_manager import InstanceManager

# ============================================================================
# Network fakes
# ============================================================================


class FakeEndpoint:
    """Endpoint that records releases instead of deleting a tap device."""

    def __init__(self, name: str, guest_address: str):
        self.name = name
        self.guest_address = guest_address
        self.release_count = 0

    @property
    def released(self) -> bool:
        return self.release_count > 0

    def write_config(self, stream: IO[str]) -> None:
        stream.write(f"iface eth0 inet static\n    address {self.guest_address}\n")

    async def release(self) -> None:
        self.release_count += 1


class FakeAllocator:
    """Hands out tap0, tap1, ... with guest addresses 10.0.0.2, 10.0.0.3, ..."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.endpoints: list[FakeEndpoint] = []
        self.calls: list[tuple[int, int]] = []

    async def allocate(self, uid: int, gid: int) -> FakeEndpoint:
        self.calls.append((uid, gid))
        if self.fail:
            raise NetworkAllocationError("no taps left")
        n = len(self.endpoints)
        endpoint = FakeEndpoint(f"tap{n}", f"10.0.0.{n + 2}")
        self.endpoints.append(endpoint)
        return endpoint


# ============================================================================
# Process fakes
# ============================================================================


class FakeHypervisor:
    """Stands in for both BridgedProcess and its ProcessWrapper.

    Stays "running" until exit() or kill() is called.
    """

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.returncode: int | None = None
        self.killed = False
        self.output_task: asyncio.Task[None] | None = None
        self._exited = asyncio.Event()

    @property
    def process(self) -> "FakeHypervisor":
        return self

    def exit(self, returncode: int) -> None:
        self.returncode = returncode
        self._exited.set()

    async def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


def touch_last_arg(*argv: str, **_kwargs: object) -> str:
    """run_tool side effect: create the file named by the last argument (qemu-img create)."""
    Path(argv[-1]).touch()
    return ""


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with temp and log dirs under tmp_path."""
    temp_dir = tmp_path / "tmp"
    log_dir = tmp_path / "logs"
    temp_dir.mkdir()
    log_dir.mkdir()
    return Settings(temp_dir=temp_dir, log_dir=log_dir, qemu_bin="qemu-system-x86_64", uml_bin="linux")


@pytest.fixture
def allocator() -> FakeAllocator:
    return FakeAllocator()


@pytest.fixture
def manager(settings: Settings, allocator: FakeAllocator) -> InstanceManager:
    return InstanceManager(settings, allocator)


@pytest.fixture
def out() -> io.BytesIO:
    return io.BytesIO()


@pytest.fixture
def hypervisors() -> list[FakeHypervisor]:
    """FakeHypervisors handed out by the patched spawn, in call order."""
    return []


@pytest.fixture
def mock_spawn(hypervisors: list[FakeHypervisor]) -> Iterator[AsyncMock]:
    """Patch the exec bridge so start() never launches a real process."""

    async def _spawn(req, out=None, *, context_id=""):
        hv = FakeHypervisor(pid=4242 + len(hypervisors))
        hypervisors.append(hv)
        return hv

    with patch("ci_sandbox.instance.spawn", new=AsyncMock(side_effect=_spawn)) as mock:
        yield mock


@pytest.fixture
def mock_qemu_img() -> Iterator[AsyncMock]:
    """Patch qemu-img so overlay creation just touches the overlay file."""
    with patch("ci_sandbox.disk_overlay.run_tool", new=AsyncMock(side_effect=touch_last_arg)) as mock:
        yield mock
