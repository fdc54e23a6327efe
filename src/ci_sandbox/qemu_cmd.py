"""QEMU command line builder.

Direct kernel boot with IDE drives, a tap NIC and a read-only 9p share
carrying the guest's interface config:

    qemu-system-x86_64 -kernel vmlinuz -append root=/dev/sda
        -net nic -net tap,ifname=ci-tap0,script=no,downscript=no
        -virtfs fsdriver=local,path=/tmp/ci-sandbox-y,security_model=passthrough,readonly,mount_tag=netfs
        -nographic -m 512 -hda /tmp/ci-sandbox-x/fs.qcow2 -hdb data.img
"""

import re

from ci_sandbox import constants
from ci_sandbox.exceptions import InstanceConfigError
from ci_sandbox.models import ResolvedDrive

# Drive keys become flags (-hda); restrict them so a key can never smuggle
# in another option or value
_DRIVE_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9]*$")


def validate_drive_key(key: str) -> None:
    """Reject drive keys that are not plain lowercase flag names.

    Raises:
        InstanceConfigError: Key is empty or contains other characters
    """
    if not _DRIVE_KEY_PATTERN.match(key):
        raise InstanceConfigError(f"invalid QEMU drive key: {key!r}", {"drive": key})


def build_qemu_cmd(
    *,
    qemu_bin: str,
    kernel: str,
    drives: list[ResolvedDrive],
    tap_name: str,
    hostfs: str,
    memory: str = "",
    extra_args: list[str] | None = None,
) -> list[str]:
    """Build the QEMU argv (argv[0] is the binary).

    Drive flags follow the order of `drives`; QEMU attaches each to its
    keyed slot, so the order itself carries no meaning.

    Args:
        qemu_bin: QEMU system binary
        kernel: Guest kernel for -kernel
        drives: Resolved drives; -<key> <cow or fs>
        tap_name: Host tap device for the NIC
        hostfs: Host dir shared read-only as mount_tag=netfs
        memory: -m value, omitted when empty
        extra_args: Appended verbatim at the end

    Returns:
        QEMU command as list of strings

    Raises:
        InstanceConfigError: A drive key is invalid
    """
    argv = [
        qemu_bin,
        "-kernel",
        kernel,
        "-append",
        constants.QEMU_ROOT_DEVICE,
        "-net",
        "nic",
        "-net",
        f"tap,ifname={tap_name},script=no,downscript=no",
        "-virtfs",
        f"fsdriver=local,path={hostfs},security_model=passthrough,readonly,mount_tag={constants.QEMU_HOSTFS_MOUNT_TAG}",
        "-nographic",
    ]
    if memory:
        argv.extend(["-m", memory])
    for drive in drives:
        validate_drive_key(drive.key)
        argv.extend([f"-{drive.key}", drive.cow or drive.fs])
    argv.extend(extra_args or [])
    return argv
