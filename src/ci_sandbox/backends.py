"""Hypervisor backends.

An Instance owns the lifecycle (scratch files, process, endpoint, cleanup);
the backend it is composed with supplies the parts that differ between
hypervisors: binary defaults, overlay flavor, drive naming and argv.

- UmlBackend:  User-Mode Linux, the guest kernel runs as a host process
- QemuBackend: full machine emulation with qcow2 overlays
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from ci_sandbox import constants
from ci_sandbox.disk_overlay import Owner, make_qcow2_overlay, make_uml_overlay
from ci_sandbox.exceptions import InstanceConfigError
from ci_sandbox.models import Backend, DriveSpec, InstanceConfig, Overlay, ResolvedDrive
from ci_sandbox.qemu_cmd import build_qemu_cmd
from ci_sandbox.settings import Settings
from ci_sandbox.uml_cmd import build_uml_cmd


class HypervisorBackend(Protocol):
    """What an Instance needs from a hypervisor."""

    kind: Backend

    def apply_defaults(self, config: InstanceConfig) -> None:
        """Fill unset binary/kernel paths in place."""
        ...

    def drive_key(self, key: int | str, position: int) -> str:
        """Name of the drive at `position` (as given by the config's `key`)."""
        ...

    async def make_overlay(self, drive: DriveSpec, owner: Owner) -> Overlay:
        """Create a private overlay of drive.fs owned by `owner`."""
        ...

    def build_argv(
        self,
        *,
        instance_id: str,
        config: InstanceConfig,
        drives: list[ResolvedDrive],
        tap_name: str,
        hostfs: Path,
    ) -> list[str]:
        """Full argv; argv[0] names the binary."""
        ...


class UmlBackend:
    """User-Mode Linux."""

    kind = Backend.UML

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def apply_defaults(self, config: InstanceConfig) -> None:
        # The UML kernel is the hypervisor binary itself
        if not config.path:
            config.path = config.kernel or self.settings.uml_bin

    def drive_key(self, key: int | str, position: int) -> str:
        # ubd devices are numbered by position, dict keys are ignored
        return str(position)

    async def make_overlay(self, drive: DriveSpec, owner: Owner) -> Overlay:
        return await make_uml_overlay(drive.fs, owner, temp_dir=self.settings.temp_dir)

    def build_argv(
        self,
        *,
        instance_id: str,
        config: InstanceConfig,
        drives: list[ResolvedDrive],
        tap_name: str,
        hostfs: Path,
    ) -> list[str]:
        return build_uml_cmd(
            instance_id=instance_id,
            drives=drives,
            tap_name=tap_name,
            hostfs=str(hostfs),
            memory=config.memory,
            extra_args=config.args,
        )


class QemuBackend:
    """QEMU with direct kernel boot."""

    kind = Backend.QEMU

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def apply_defaults(self, config: InstanceConfig) -> None:
        if not config.path:
            config.path = self.settings.qemu_bin
        if not config.kernel:
            config.kernel = self.settings.kernel_path

    def drive_key(self, key: int | str, position: int) -> str:
        if isinstance(key, str):
            return key
        if position >= len(constants.QEMU_DRIVE_KEYS):
            raise InstanceConfigError(
                f"too many positional drives for QEMU: {position + 1} (max {len(constants.QEMU_DRIVE_KEYS)})",
                {"drive": position},
            )
        return constants.QEMU_DRIVE_KEYS[position]

    async def make_overlay(self, drive: DriveSpec, owner: Owner) -> Overlay:
        return await make_qcow2_overlay(
            drive.fs,
            owner,
            temp_dir=self.settings.temp_dir,
            qemu_img=self.settings.qemu_img_bin,
            backing_format=drive.backing_format,
        )

    def build_argv(
        self,
        *,
        instance_id: str,
        config: InstanceConfig,
        drives: list[ResolvedDrive],
        tap_name: str,
        hostfs: Path,
    ) -> list[str]:
        return build_qemu_cmd(
            qemu_bin=config.path,
            kernel=config.kernel,
            drives=drives,
            tap_name=tap_name,
            hostfs=str(hostfs),
            memory=config.memory,
            extra_args=config.args,
        )


def make_backend(kind: Backend | str, settings: Settings) -> HypervisorBackend:
    """Backend instance for `kind`."""
    match Backend(kind):
        case Backend.UML:
            return UmlBackend(settings)
        case Backend.QEMU:
            return QemuBackend(settings)
