"""Instance factory and registry.

InstanceManager hands out uniquely named instances (vm0, vm1, ...), fills
in per-backend defaults, gives each instance a console log and borrows a
network endpoint for it. It does not start instances; callers own their
lifecycle.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from pathlib import Path
from typing import Any

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.backends import make_backend
from ci_sandbox.exceptions import SetupError
from ci_sandbox.instance import Instance
from ci_sandbox.models import TERMINAL_STATES, Backend, InstanceConfig
from ci_sandbox.network import NetworkAllocator, TapAllocator
from ci_sandbox.settings import Settings

logger = get_logger(__name__)


class InstanceManager:
    """Creates instances and tracks the ones still alive.

    Finished instances drop out of the registry on the next new_instance()
    or kill_all().

    Usage:
        async with InstanceManager(settings) as manager:
            inst = await manager.new_instance(InstanceConfig(drives=[...]), backend="uml")
            await inst.start()
            await inst.wait()
    """

    def __init__(self, settings: Settings, allocator: NetworkAllocator | None = None):
        """Initialize manager.

        Args:
            settings: Runtime settings (binaries, log dir, temp dir)
            allocator: Network allocator (TapAllocator from settings by default)
        """
        self.settings = settings
        self.allocator = allocator if allocator is not None else TapAllocator(settings)
        # Ids are handed out from worker threads too (to_thread callers)
        self._ids = itertools.count()
        self._ids_lock = threading.Lock()
        self._instances: dict[str, Instance] = {}

    async def __aenter__(self) -> InstanceManager:
        return self

    async def __aexit__(
        self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object
    ) -> None:
        await self.kill_all()

    def _next_id(self) -> str:
        with self._ids_lock:
            return f"{constants.INSTANCE_ID_PREFIX}{next(self._ids)}"

    def get_active_instances(self) -> dict[str, Instance]:
        """Snapshot of instances not yet waited/killed (id -> Instance)."""
        return {k: v for k, v in self._instances.items() if v.state not in TERMINAL_STATES}

    def _forget_finished(self) -> None:
        # Finished instances have already released everything they held
        self._instances = self.get_active_instances()

    async def new_instance(self, config: InstanceConfig, backend: Backend | str | None = None) -> Instance:
        """Create an instance in CONFIGURED state.

        Unset config.path/kernel get the backend's defaults. Without
        config.out, console output goes to <log_dir>/<id>.log, which the
        instance closes during cleanup.

        Args:
            config: Instance configuration (mutated: defaults and out filled in)
            backend: "uml" or "qemu" (Settings.default_backend when None)

        Returns:
            Unstarted instance holding an allocated endpoint

        Raises:
            SetupError: Log file could not be opened
            NetworkAllocationError: Endpoint allocation failed
        """
        hypervisor = make_backend(backend or self.settings.default_backend, self.settings)
        hypervisor.apply_defaults(config)
        instance_id = self._next_id()

        owns_output = False
        if config.out is None:
            config.out = await self._open_log(instance_id)
            owns_output = True

        try:
            endpoint = await self.allocator.allocate(config.user, config.group)
        except BaseException:
            if owns_output:
                config.out.close()
            raise

        instance = Instance(instance_id, config, endpoint, hypervisor, self.settings, owns_output=owns_output)
        self._forget_finished()
        self._instances[instance_id] = instance
        logger.debug(
            "Instance created",
            extra={"instance_id": instance_id, "backend": hypervisor.kind.value, "endpoint": endpoint.name},
        )
        return instance

    async def _open_log(self, instance_id: str) -> Any:
        path = Path(self.settings.log_dir) / f"{instance_id}.log"
        try:
            return await asyncio.to_thread(open, path, "wb")
        except OSError as e:
            raise SetupError(f"failed to open instance log {path}: {e}", {"instance_id": instance_id}) from e

    async def kill_all(self) -> None:
        """Kill every instance that is still configured or running."""
        instances = list(self.get_active_instances().values())
        results = await asyncio.gather(*(inst.kill() for inst in instances), return_exceptions=True)
        for inst, result in zip(instances, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Failed to kill instance", extra={"instance_id": inst.id, "error": str(result)})
        self._forget_finished()
