"""Hypervisor instance lifecycle.

One Instance is one guest: a network endpoint borrowed from the allocator,
private overlays for its temp_cow drives, a scratch dir holding the guest's
interface config, and the hypervisor process started through the exec
bridge. Everything the instance acquires is released exactly once, on
start failure, after wait() returns, or on kill().

State machine (see models.VALID_STATE_TRANSITIONS):

    CONFIGURED --start--------> RUNNING
    CONFIGURED --start fails--> START_FAILED
    CONFIGURED --kill---------> KILLED
    RUNNING    --wait---------> WAITED
    RUNNING    --kill---------> KILLED

WAITED, KILLED and START_FAILED are terminal. kill() on a terminal instance
is a no-op; wait() returns the recorded status, except after START_FAILED
where there is no process to wait for.

Backend differences (UML vs QEMU) live in ci_sandbox.backends; an Instance
is composed with one backend and behaves the same way for both.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any

import asyncssh

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.disk_overlay import make_private_dir
from ci_sandbox.exceptions import (
    InstanceConfigError,
    InstanceError,
    InstanceExitError,
    InstanceStartError,
    InstanceStateError,
    NetworkAllocationError,
    SandboxError,
    SetupError,
)
from ci_sandbox.exec_bridge import BridgedProcess, ExecRequest, resolve_executable, spawn
from ci_sandbox.models import (
    TERMINAL_STATES,
    VALID_STATE_TRANSITIONS,
    InstanceConfig,
    InstanceState,
    ResolvedDrive,
)
from ci_sandbox.resource_cleanup import cleanup_paths, kill_process

if TYPE_CHECKING:
    from ci_sandbox.backends import HypervisorBackend
    from ci_sandbox.network import Endpoint
    from ci_sandbox.settings import Settings

logger = get_logger(__name__)


class Instance:
    """Handle to one hypervisor guest.

    Created by InstanceManager.new_instance(); not started until start().

    Context Manager Usage:
        ```python
        async with await manager.new_instance(config) as inst:
            await inst.start()
            conn = await inst.dial_ssh()
        # killed (or endpoint released if never started) on exit
        ```

    Attributes:
        config: Instance configuration (defaults already applied)
        endpoint: Network endpoint, released during cleanup
        backend: Hypervisor-specific argv/overlay provider
    """

    def __init__(
        self,
        instance_id: str,
        config: InstanceConfig,
        endpoint: Endpoint,
        backend: HypervisorBackend,
        settings: Settings,
        *,
        owns_output: bool = False,
    ):
        """Initialize instance handle.

        Args:
            instance_id: Unique id (also the UML umid)
            config: Instance configuration
            endpoint: Allocated network endpoint
            backend: Hypervisor backend
            settings: Runtime settings (temp dir, guest SSH credentials)
            owns_output: Close config.out during cleanup (manager-opened log file)
        """
        self._id = instance_id
        self.config = config
        self.endpoint = endpoint
        self.backend = backend
        self.settings = settings
        self._owns_output = owns_output

        self._state = InstanceState.CONFIGURED
        self._state_lock = asyncio.Lock()
        self._temp_paths: list[Path] = []
        self._argv: list[str] = []
        self._process: BridgedProcess | None = None
        self._returncode: int | None = None
        self._cleanup_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Instance:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        await self.kill()
        return False

    def __repr__(self) -> str:
        return f"<Instance {self._id} {self.backend.kind.value} {self._state.value}>"

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> InstanceState:
        """Current lifecycle state."""
        return self._state

    @property
    def argv(self) -> list[str]:
        """Hypervisor argv (empty until start() succeeds)."""
        return list(self._argv)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def ip(self) -> str:
        """Guest address assigned by the network endpoint."""
        return self.endpoint.guest_address

    def _transition_locked(self, new_state: InstanceState) -> None:
        # Caller holds _state_lock
        allowed = VALID_STATE_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise InstanceStateError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                context={
                    "instance_id": self._id,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in allowed),
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "Instance state transition",
            extra={"instance_id": self._id, "old_state": old_state.value, "new_state": new_state.value},
        )

    # -------------------------------------------------------------------------
    # start
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Prepare scratch files and overlays, then launch the hypervisor.

        On any failure everything acquired so far (including the endpoint)
        is released and the instance ends in START_FAILED.

        Raises:
            InstanceStateError: Not in CONFIGURED state
            InstanceStartError: Setup or launch failed (cause chained)
        """
        async with self._state_lock:
            if self._state is not InstanceState.CONFIGURED:
                raise InstanceStateError(
                    f"Cannot start instance in state {self._state.value}",
                    context={"instance_id": self._id, "current_state": self._state.value},
                )
            try:
                argv = await self._prepare_and_spawn()
            except (SandboxError, OSError) as e:
                self._transition_locked(InstanceState.START_FAILED)
                await self._cleanup()
                context = {"instance_id": self._id, "backend": self.backend.kind.value, "error_type": type(e).__name__}
                if isinstance(e, SandboxError):
                    context.update(e.context)
                message = e.message if isinstance(e, SandboxError) else str(e)
                raise InstanceStartError(f"instance {self._id} failed to start: {message}", context) from e
            except BaseException:
                # Cancelled mid-start: still release what was acquired
                self._transition_locked(InstanceState.START_FAILED)
                await self._cleanup()
                raise

            self._argv = argv
            self._transition_locked(InstanceState.RUNNING)

        logger.info(
            "Instance started",
            extra={"instance_id": self._id, "backend": self.backend.kind.value, "pid": self.pid, "ip": self.ip()},
        )

    async def _prepare_and_spawn(self) -> list[str]:
        hostfs = await self._write_interface_config()
        drives = await self._resolve_drives()
        argv = self.backend.build_argv(
            instance_id=self._id,
            config=self.config,
            drives=drives,
            tap_name=self.endpoint.name,
            hostfs=hostfs,
        )
        req = ExecRequest(
            uid=self.config.user,
            gid=self.config.group,
            path=resolve_executable(self.config.path),
            argv=argv,
            env=[f"HOME={os.environ.get('HOME', '/')}"],
        )
        self._process = await spawn(req, self.config.out, context_id=self._id)
        return argv

    async def _write_interface_config(self) -> Path:
        # Readable (not owned) by the hypervisor uid; it only reads the config
        scratch = await make_private_dir(
            None, temp_dir=self.settings.temp_dir, mode=constants.SCRATCH_DIR_MODE, error_cls=SetupError
        )
        self._temp_paths.append(scratch)
        config_path = scratch / constants.INTERFACE_CONFIG_FILENAME

        def _write() -> None:
            with open(config_path, "w") as f:
                self.endpoint.write_config(f)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise SetupError(f"failed to write interface config {config_path}: {e}", {"path": str(config_path)}) from e
        return scratch

    async def _resolve_drives(self) -> list[ResolvedDrive]:
        owner = (self.config.user, self.config.group)
        resolved = []
        for position, (key, drive) in enumerate(self.config.drive_items()):
            name = self.backend.drive_key(key, position)
            if drive.cow and drive.temp_cow:
                raise InstanceConfigError(f"drive {name}: cow and temp_cow are mutually exclusive", {"drive": name})
            cow = drive.cow
            if drive.temp_cow:
                try:
                    overlay = await self.backend.make_overlay(drive, owner)
                except SandboxError as e:
                    e.context.setdefault("drive", name)
                    raise
                self._temp_paths.append(overlay.scratch_dir)
                cow = str(overlay.path)
            resolved.append(ResolvedDrive(key=name, fs=drive.fs, cow=cow))
        return resolved

    # -------------------------------------------------------------------------
    # wait / kill
    # -------------------------------------------------------------------------

    async def wait(self) -> int:
        """Block until the hypervisor exits, then release resources.

        Returns:
            Exit status (0). A previously killed or waited instance returns
            its recorded status without blocking.

        Raises:
            InstanceStateError: Never started, or start failed
            InstanceExitError: Hypervisor exited non-zero
        """
        if self._state is InstanceState.CONFIGURED or self._state is InstanceState.START_FAILED:
            raise InstanceStateError(
                f"Cannot wait on instance in state {self._state.value}",
                context={"instance_id": self._id, "current_state": self._state.value},
            )
        if self._state in TERMINAL_STATES:
            return self._returncode if self._returncode is not None else -signal.SIGKILL

        assert self._process is not None
        try:
            returncode = await self._process.wait()
        finally:
            async with self._state_lock:
                if self._state is InstanceState.RUNNING:
                    self._transition_locked(InstanceState.WAITED)
            await self._cleanup()

        self._returncode = returncode
        logger.info("Instance exited", extra={"instance_id": self._id, "returncode": returncode})
        if returncode != 0 and self._state is InstanceState.WAITED:
            raise InstanceExitError(
                f"instance {self._id} exited with status {returncode}",
                returncode,
                {"instance_id": self._id, "backend": self.backend.kind.value},
            )
        return returncode

    async def kill(self) -> None:
        """Force-stop the instance and release its resources.

        Valid from CONFIGURED (releases the endpoint, no process exists) and
        RUNNING. A no-op for instances that already reached a terminal state.

        Raises:
            InstanceError: The hypervisor could not be signalled
        """
        async with self._state_lock:
            if self._state in TERMINAL_STATES:
                logger.debug(
                    "Instance already finished, skipping kill",
                    extra={"instance_id": self._id, "state": self._state.value},
                )
                return
            was_running = self._state is InstanceState.RUNNING
            self._transition_locked(InstanceState.KILLED)

        try:
            if was_running and self._process is not None:
                try:
                    self._returncode = await kill_process(
                        self._process.process, self.backend.kind.value, self._id
                    )
                except ProcessLookupError:
                    self._returncode = self._process.process.returncode
                except PermissionError as e:
                    raise InstanceError(
                        f"failed to kill instance {self._id}: {e}", {"instance_id": self._id, "pid": self.pid}
                    ) from e
        finally:
            await self._cleanup()

        logger.info("Instance killed", extra={"instance_id": self._id, "returncode": self._returncode})

    # -------------------------------------------------------------------------
    # guest access
    # -------------------------------------------------------------------------

    async def dial_ssh(self) -> asyncssh.SSHClientConnection:
        """Open one SSH connection to the guest agent (single attempt).

        Raises:
            OSError, asyncssh.Error: Connection failed (callers retry)
        """
        return await asyncssh.connect(
            self.ip(),
            port=self.settings.guest_ssh_port,
            username=self.settings.guest_ssh_user,
            password=self.settings.guest_ssh_password,
            known_hosts=None,
            connect_timeout=self.settings.guest_connect_timeout,
        )

    # -------------------------------------------------------------------------
    # cleanup
    # -------------------------------------------------------------------------

    async def _cleanup(self) -> None:
        # Runs once; concurrent callers (wait racing kill) await the same task
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._release_resources(), name=f"cleanup-{self._id}")
        await asyncio.shield(self._cleanup_task)

    async def _release_resources(self) -> None:
        if self._process is not None and self._process.output_task is not None:
            # Drain failures are logged by the task's done callback
            task = self._process.output_task
            _, pending = await asyncio.wait({task}, timeout=constants.KILL_REAP_TIMEOUT_SECONDS)
            for t in pending:
                t.cancel()

        if not await cleanup_paths(self._temp_paths, self._id):
            logger.warning("Some temp paths could not be removed", extra={"instance_id": self._id})
        self._temp_paths.clear()

        try:
            await self.endpoint.release()
        except (NetworkAllocationError, OSError) as e:
            logger.error(
                "Failed to release network endpoint",
                extra={"instance_id": self._id, "endpoint": self.endpoint.name, "error": str(e)},
            )

        if self._owns_output:
            self._close_output(self.config.out)

    def _close_output(self, out: Any) -> None:
        try:
            out.close()
        except OSError as e:
            logger.warning("Failed to close instance log", extra={"instance_id": self._id, "error": str(e)})
