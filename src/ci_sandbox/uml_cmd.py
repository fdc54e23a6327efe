"""User-Mode Linux command line builder.

UML is a Linux kernel running as a host process: everything after argv[0]
is the guest kernel command line. Example:

    linux mem=512MB ubd0=/tmp/ci-sandbox-x/fs.cow1,rootfs.img umid=vm0
          con0=fd:0,fd:1 con=pts rw eth0=tuntap,ci-tap0 hostfs=/tmp/ci-sandbox-y
"""

from ci_sandbox import constants
from ci_sandbox.models import ResolvedDrive


def build_uml_cmd(
    *,
    instance_id: str,
    drives: list[ResolvedDrive],
    tap_name: str,
    hostfs: str,
    memory: str = "",
    extra_args: list[str] | None = None,
) -> list[str]:
    """Build the UML argv (argv[0] included).

    Args:
        instance_id: Used as umid (names the UML control dir)
        drives: Resolved drives; ubd<key> with key = position
        tap_name: Host tap device wired to guest eth0
        hostfs: Host dir exported to the guest (interface config)
        memory: mem= value, omitted when empty
        extra_args: Appended right after argv[0]

    Returns:
        UML command as list of strings
    """
    argv = [constants.UML_ARGV0, *(extra_args or [])]
    if memory:
        argv.append(f"mem={memory}")
    for drive in drives:
        # <cow>,<base>: writes land in cow, base is never modified
        argv.append(f"ubd{drive.key}={drive.cow},{drive.fs}" if drive.cow else f"ubd{drive.key}={drive.fs}")
    argv.extend(
        [
            f"umid={instance_id}",
            "con0=fd:0,fd:1",
            "con=pts",
            "rw",
            f"eth0=tuntap,{tap_name}",
            f"hostfs={hostfs}",
        ]
    )
    return argv
