"""Exception hierarchy for ci-sandbox.

All exceptions inherit from SandboxError base class.

Hierarchy:
    SandboxError (base)
    ├── SetupError (fatal to the orchestrator, never retried)
    │   ├── IdentityLookupError        ← --user not found on host
    │   ├── NetworkAllocationError     ← tap device / address allocation failed
    │   └── ExternalToolError          ← mkfs / qemu-img / ip exited non-zero
    │       └── OverlayError           ← copy-on-write overlay creation failed
    ├── ExecBridgeError (fatal inside the bridge process)
    │   ├── ExecRequestError           ← encode/decode of the exec request
    │   └── PrivilegeDropError         ← setgid/setuid/chdir/exec failed
    ├── InstanceError
    │   ├── InstanceConfigError        ← invalid drive/backend configuration
    │   ├── InstanceStateError         ← operation not valid in current state
    │   ├── InstanceStartError         ← start failed (resources released)
    │   └── InstanceExitError          ← hypervisor exited non-zero
    ├── CommunicationError
    │   └── DialError                  ← SSH dial retry budget exhausted
    └── BuildError                     ← provisioning script failed
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base exception for all sandbox errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Setup Errors
# =============================================================================


class SetupError(SandboxError):
    """Host setup failed.

    Base for errors raised while preparing the host side of a sandbox:
    identity lookup, network allocation, temp files, external tools.
    These are fatal to the orchestrator and never retried.
    """


class IdentityLookupError(SetupError):
    """Host user or group could not be resolved."""


class NetworkAllocationError(SetupError):
    """Network endpoint allocation or release failed."""


class ExternalToolError(SetupError):
    """External tool invocation failed.

    Attributes:
        tool: Tool name (e.g. "qemu-img", "mkfs.btrfs")
        output: Combined stdout/stderr of the tool, verbatim
        returncode: Exit status (None if the tool could not be launched)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        tool: str = "",
        output: str = "",
        returncode: int | None = None,
    ):
        super().__init__(message, context)
        self.tool = tool
        self.output = output
        self.returncode = returncode


class OverlayError(ExternalToolError):
    """Copy-on-write overlay creation failed.

    Raised for private directory/ownership failures (before any tool runs)
    and for qemu-img failures (with the tool output attached).
    """


# =============================================================================
# Exec Bridge Errors
# =============================================================================


class ExecBridgeError(SandboxError):
    """Privileged exec bridge failure.

    Inside the bridge process these are always fatal: the process exits
    non-zero instead of falling through to application logic.
    """


class ExecRequestError(ExecBridgeError):
    """Exec request could not be serialized or decoded."""


class PrivilegeDropError(ExecBridgeError):
    """setgid/setuid/chdir/exec failed in the bridge process."""


# =============================================================================
# Instance Errors
# =============================================================================


class InstanceError(SandboxError):
    """Instance lifecycle error."""


class InstanceConfigError(InstanceError):
    """Invalid instance configuration (e.g. both cow and temp_cow set)."""


class InstanceStateError(InstanceError):
    """Operation is not valid in the instance's current state."""


class InstanceStartError(InstanceError):
    """Instance failed to start.

    Temp files and the network endpoint are already released when this is
    raised; the underlying cause is chained as __cause__.
    """


class InstanceExitError(InstanceError):
    """Hypervisor process exited with a non-zero status.

    Attributes:
        returncode: Process exit status (negative for signals)
    """

    def __init__(self, message: str, returncode: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"returncode": returncode})
        super().__init__(message, ctx)
        self.returncode = returncode


# =============================================================================
# Communication / Build Errors
# =============================================================================


class CommunicationError(SandboxError):
    """Guest communication failed."""


class DialError(CommunicationError):
    """SSH dial to the guest failed after the retry budget was spent.

    The last underlying connection error is chained as __cause__.
    """


class BuildError(SandboxError):
    """Provisioning script failed inside the build instance.

    Attributes:
        output: Combined output of the remote script
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, output: str = ""):
        super().__init__(message, context)
        self.output = output
