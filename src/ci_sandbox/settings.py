"""Runtime configuration from environment variables."""

import tempfile
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ci_sandbox import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with CI_SANDBOX_ prefix.
    Example: CI_SANDBOX_QEMU_BIN=/usr/local/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="CI_SANDBOX_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Hypervisors
    default_backend: Literal["uml", "qemu"] = "qemu"
    uml_bin: str = constants.DEFAULT_UML_BIN
    qemu_bin: str = constants.DEFAULT_QEMU_BIN
    kernel_path: str = constants.DEFAULT_KERNEL

    # External tools
    qemu_img_bin: str = "qemu-img"
    mkfs_bin: str = "mkfs.btrfs"
    ip_bin: str = "ip"

    # Scratch space: overlays, interface configs, data images
    temp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    # Per-instance console logs (<id>.log) when no output sink is given
    log_dir: Path = Path(".")

    # Tap networking
    tap_prefix: str = constants.DEFAULT_TAP_PREFIX
    tap_network: str = constants.DEFAULT_TAP_NETWORK

    # Guest SSH agent
    guest_ssh_port: int = constants.GUEST_SSH_PORT
    guest_ssh_user: str = constants.GUEST_SSH_USER
    guest_ssh_password: str = constants.GUEST_SSH_PASSWORD
    guest_connect_timeout: float = constants.GUEST_CONNECT_TIMEOUT_SECONDS
