"""ci-sandbox: throwaway VM fleets for CI.

Boots unprivileged hypervisor instances (User-Mode Linux or QEMU) on
copy-on-write overlays of a shared root filesystem, provisions a build
image over SSH, then starts a fleet of workers from the result.

Quick Start (full pipeline):
    ```python
    from ci_sandbox import InstanceManager, PipelineConfig, Settings, run_pipeline

    async with InstanceManager(Settings()) as manager:
        await run_pipeline(manager, PipelineConfig(backend="uml", uid=1000, gid=1000))
    ```

Single instance:
    ```python
    from ci_sandbox import DriveSpec, InstanceConfig, InstanceManager, Settings

    async with InstanceManager(Settings()) as manager:
        config = InstanceConfig(user=1000, group=1000, drives=[DriveSpec(fs="rootfs.img", temp_cow=True)])
        async with await manager.new_instance(config, backend="qemu") as inst:
            await inst.start()
            conn = await inst.dial_ssh()
    ```

Requirements:
    - Root on the host (tap devices, dropping to the hypervisor user)
    - qemu-system-x86_64 + qemu-img, or a User-Mode Linux kernel binary
    - mkfs.btrfs and iproute2
    - Python 3.12+
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

from ci_sandbox.exceptions import (
    BuildError,
    CommunicationError,
    DialError,
    ExecBridgeError,
    ExecRequestError,
    ExternalToolError,
    IdentityLookupError,
    InstanceConfigError,
    InstanceError,
    InstanceExitError,
    InstanceStartError,
    InstanceStateError,
    NetworkAllocationError,
    OverlayError,
    PrivilegeDropError,
    SandboxError,
    SetupError,
)
from ci_sandbox.models import Backend, DriveSpec, InstanceConfig, InstanceState

if TYPE_CHECKING:
    from ci_sandbox.config import DialPolicy, PipelineConfig
    from ci_sandbox.instance import Instance
    from ci_sandbox.network import Endpoint, NetworkAllocator, TapAllocator
    from ci_sandbox.orchestrator import dial_with_retry, run_build, run_pipeline, start_fleet, teardown_fleet
    from ci_sandbox.settings import Settings
    from ci_sandbox.vm_manager import InstanceManager

# Loaded on first access: the exec bridge (`python -m ci_sandbox`) imports
# this package and must reach execve without the SSH and retry stack.
_LAZY_ATTRS: dict[str, str] = {
    "DialPolicy": "ci_sandbox.config",
    "PipelineConfig": "ci_sandbox.config",
    "Instance": "ci_sandbox.instance",
    "Endpoint": "ci_sandbox.network",
    "NetworkAllocator": "ci_sandbox.network",
    "TapAllocator": "ci_sandbox.network",
    "dial_with_retry": "ci_sandbox.orchestrator",
    "run_build": "ci_sandbox.orchestrator",
    "run_pipeline": "ci_sandbox.orchestrator",
    "start_fleet": "ci_sandbox.orchestrator",
    "teardown_fleet": "ci_sandbox.orchestrator",
    "Settings": "ci_sandbox.settings",
    "InstanceManager": "ci_sandbox.vm_manager",
}


def __getattr__(name: str) -> Any:
    module = _LAZY_ATTRS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    value = getattr(importlib.import_module(module), name)
    globals()[name] = value
    return value


__all__ = [
    "Backend",
    "BuildError",
    "CommunicationError",
    "DialError",
    "DialPolicy",
    "DriveSpec",
    "Endpoint",
    "ExecBridgeError",
    "ExecRequestError",
    "ExternalToolError",
    "IdentityLookupError",
    "Instance",
    "InstanceConfig",
    "InstanceConfigError",
    "InstanceError",
    "InstanceExitError",
    "InstanceManager",
    "InstanceStartError",
    "InstanceState",
    "InstanceStateError",
    "NetworkAllocationError",
    "NetworkAllocator",
    "OverlayError",
    "PipelineConfig",
    "PrivilegeDropError",
    "SandboxError",
    "Settings",
    "SetupError",
    "TapAllocator",
    "dial_with_retry",
    "run_build",
    "run_pipeline",
    "start_fleet",
    "teardown_fleet",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ci-sandbox")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
