"""Hypervisor process handle.

The exec bridge replaces its own image with the hypervisor, so the PID of
the spawned bridge process stays the hypervisor's PID for its whole life.
psutil pins that PID to the process creation time, so a SIGKILL is never
delivered to a recycled PID.
"""

import asyncio
import contextlib

import psutil


class ProcessWrapper:
    """asyncio subprocess paired with a creation-time-pinned psutil handle."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._pinned: psutil.Process | None = None
        # Gone already, or hidden from us: fall back to asyncio's own handle
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self._pinned = psutil.Process(proc.pid)

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status, None while running."""
        return self._proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Merged stdout/stderr pipe (None when output is discarded)."""
        return self._proc.stdout

    async def is_running(self) -> bool:
        """True until the process exits; never fooled by PID reuse."""
        if self.returncode is not None:
            return False
        if self._pinned is None:
            return True
        try:
            return await asyncio.to_thread(self._pinned.is_running)
        except psutil.Error:
            return False

    async def wait(self) -> int:
        """Reap the process and return its exit status."""
        return await self._proc.wait()

    async def kill(self) -> None:
        """Send SIGKILL if the process is still the one we started.

        Raises:
            PermissionError: The hypervisor runs as a user we may not signal
        """
        if not await self.is_running():
            return
        if self._pinned is None:
            self._proc.kill()
            return
        try:
            await asyncio.to_thread(self._pinned.kill)
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied as e:
            raise PermissionError(f"not permitted to kill pid {self.pid}") from e
