"""Data models for ci-sandbox."""

from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Backend(str, Enum):
    """Virtualization backends."""

    UML = "uml"
    QEMU = "qemu"


class InstanceState(str, Enum):
    """Instance lifecycle states."""

    CONFIGURED = "configured"
    RUNNING = "running"
    START_FAILED = "start_failed"
    WAITED = "waited"
    KILLED = "killed"


VALID_STATE_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    # kill() before start() releases the endpoint without a process
    InstanceState.CONFIGURED: {InstanceState.RUNNING, InstanceState.START_FAILED, InstanceState.KILLED},
    InstanceState.RUNNING: {InstanceState.WAITED, InstanceState.KILLED},
    InstanceState.START_FAILED: set(),
    InstanceState.WAITED: set(),
    InstanceState.KILLED: set(),
}

TERMINAL_STATES: frozenset[InstanceState] = frozenset(
    state for state, targets in VALID_STATE_TRANSITIONS.items() if not targets
)


class DriveSpec(BaseModel):
    """A guest block device backed by a host filesystem image."""

    model_config = ConfigDict(frozen=True)

    fs: str = Field(description="Base filesystem image path")
    cow: str | None = Field(default=None, description="Explicit copy-on-write overlay path")
    temp_cow: bool = Field(default=False, description="Create an ephemeral instance-scoped overlay")
    backing_format: str = Field(default="raw", description="Format of fs, recorded in qcow2 overlays")

    @model_validator(mode="after")
    def _check_overlay_choice(self) -> "DriveSpec":
        if self.cow and self.temp_cow:
            raise ValueError("cow and temp_cow are mutually exclusive")
        return self


class InstanceConfig(BaseModel):
    """Backend-agnostic instance configuration.

    Mutable so the manager can fill in defaults (path, kernel, out) before
    the instance is constructed.
    """

    model_config = ConfigDict(validate_assignment=True)

    path: str = Field(default="", description="Hypervisor binary (UML kernel or QEMU system binary)")
    kernel: str = Field(default="", description="QEMU -kernel image; for UML, the binary when path is unset")
    user: int = Field(default=0, ge=0, description="uid the hypervisor runs as")
    group: int = Field(default=0, ge=0, description="gid the hypervisor runs as")
    memory: str = Field(default="", description="Memory size, e.g. '512MB'")
    drives: list[DriveSpec] | dict[str, DriveSpec] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list, description="Extra backend arguments")
    # Binary file-like object
    out: Any = Field(default=None, exclude=True, description="Console/log output sink")

    def drive_items(self) -> list[tuple[Any, DriveSpec]]:
        """Drives as (key, spec) pairs: list index or dict key."""
        if isinstance(self.drives, dict):
            return list(self.drives.items())
        return list(enumerate(self.drives))


class Overlay(BaseModel):
    """A private copy-on-write overlay and the scratch dir that holds it."""

    model_config = ConfigDict(frozen=True)

    path: Path
    scratch_dir: Path


class ResolvedDrive(NamedTuple):
    """A drive after overlay resolution, ready for argv assembly.

    key is the ubd index for UML and the drive flag (hda, hdb, ...) for QEMU.
    """

    key: str
    fs: str
    cow: str | None
