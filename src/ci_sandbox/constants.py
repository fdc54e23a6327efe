"""Constants for ci-sandbox configuration and limits."""

from typing import Final

# ============================================================================
# Instance Defaults
# ============================================================================

INSTANCE_ID_PREFIX: Final[str] = "vm"
"""Instance ids are INSTANCE_ID_PREFIX + monotonic counter (vm0, vm1, ...)."""

DEFAULT_UML_BIN: Final[str] = "linux"
"""Default User-Mode Linux kernel binary (a bare name is looked up on the launcher's PATH at start)."""

DEFAULT_QEMU_BIN: Final[str] = "/usr/bin/qemu-system-x86_64"
"""Default QEMU system emulator."""

DEFAULT_KERNEL: Final[str] = "vmlinuz"
"""Default guest kernel for QEMU direct kernel boot."""

DEFAULT_MEMORY: Final[str] = "512MB"
"""Default guest memory size."""

UML_ARGV0: Final[str] = "linux"
"""argv[0] for User-Mode Linux (the kernel parses argv[1:] as its cmdline)."""

QEMU_ROOT_DEVICE: Final[str] = "root=/dev/sda"
"""Kernel cmdline passed via -append (first IDE disk)."""

QEMU_HOSTFS_MOUNT_TAG: Final[str] = "netfs"
"""9p mount tag for the read-only interface config share."""

QEMU_DRIVE_KEYS: Final[tuple[str, ...]] = ("hda", "hdb", "hdc", "hdd")
"""Drive flags assigned by position when drives are given as a list."""

# ============================================================================
# Scratch Files
# ============================================================================

INTERFACE_CONFIG_FILENAME: Final[str] = "eth0"
"""Interface descriptor written into the per-instance scratch dir."""

UML_COW_FILENAME: Final[str] = "fs.cow1"
"""UML copy-on-write file name inside a private overlay dir."""

QCOW2_OVERLAY_FILENAME: Final[str] = "fs.qcow2"
"""qcow2 overlay file name inside a private overlay dir."""

SCRATCH_DIR_MODE: Final[int] = 0o755
"""Scratch dir must be readable by the unprivileged hypervisor."""

OVERLAY_DIR_MODE: Final[int] = 0o700
"""Overlay dirs are private to the hypervisor's uid."""

# ============================================================================
# Privileged Exec Bridge
# ============================================================================

EXEC_REQUEST_ENV: Final[str] = "_CI_SANDBOX_EXEC_REQ"
"""Environment variable carrying the base64-encoded exec request."""

EXIT_BRIDGE_FAILURE: Final[int] = 126
"""Exit status of the bridge process when decode/privilege drop/exec fails."""

# ============================================================================
# Guest Communication
# ============================================================================

GUEST_SSH_PORT: Final[int] = 2222
"""TCP port of the guest SSH agent."""

GUEST_SSH_USER: Final[str] = "ubuntu"
"""Bootstrap username, valid only inside the sandbox network."""

GUEST_SSH_PASSWORD: Final[str] = "ubuntu"  # noqa: S105 - sandbox-only bootstrap credential
"""Bootstrap password, valid only inside the sandbox network."""

GUEST_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for a single SSH dial attempt."""

DIAL_MIN_ATTEMPTS: Final[int] = 5
"""Dial at least this many times before giving up."""

DIAL_TOTAL_SECONDS: Final[float] = 300.0
"""Keep dialing until this much time has passed (5 minutes)."""

DIAL_DELAY_SECONDS: Final[float] = 1.0
"""Fixed delay between dial attempts."""

# ============================================================================
# Process Lifecycle
# ============================================================================

KILL_REAP_TIMEOUT_SECONDS: Final[float] = 5.0
"""Seconds to wait for a SIGKILLed hypervisor to be reaped."""

# ============================================================================
# Build Pipeline
# ============================================================================

DATA_IMAGE_SIZE_BYTES: Final[int] = 16 * 1024**3
"""Size of the sparse shared data image (16 GiB)."""

DEFAULT_WORKER_COUNT: Final[int] = 5
"""Default number of worker instances."""

BUILD_SCRIPT: Final[str] = """\
#!/bin/bash
set -e -x

flynn=~/go/src/github.com/flynn
mkdir -p $flynn
export GOPATH=~/go

git clone https://github.com/flynn/flynn-devbox
cd flynn-devbox
./checkout-flynn manifest.txt $flynn
./build-flynn $flynn

sudo umount /var/lib/docker
"""
"""Provisioning script streamed to the build instance over SSH."""

# ============================================================================
# Network
# ============================================================================

DEFAULT_TAP_PREFIX: Final[str] = "ci-tap"
"""Host-side tap device name prefix."""

DEFAULT_TAP_NETWORK: Final[str] = "10.69.0.0/16"
"""Pool carved into /30 subnets, one per tap (host .1, guest .2)."""

TAP_SUBNET_PREFIXLEN: Final[int] = 30
"""Prefix length of each per-instance point-to-point subnet."""

GUEST_NAMESERVER: Final[str] = "8.8.8.8"
"""Nameserver written into guest interface configs."""

# ============================================================================
# CLI
# ============================================================================

EXIT_SUCCESS: Final[int] = 0
EXIT_CLI_ERROR: Final[int] = 2
EXIT_SANDBOX_ERROR: Final[int] = 125
