"""Pipeline configuration for ci-sandbox.

PipelineConfig describes one build-then-fleet run: which backend, which
images, how big, how many workers and how patiently to dial the guests.

Example:
    ```python
    from ci_sandbox import InstanceManager, PipelineConfig, Settings, run_pipeline

    config = PipelineConfig(backend="uml", uid=1000, gid=1000, worker_count=3)
    async with InstanceManager(Settings()) as manager:
        await run_pipeline(manager, config)
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ci_sandbox import constants
from ci_sandbox.models import Backend


class DialPolicy(BaseModel):
    """Retry budget for dialing a booting guest.

    Dialing stops once BOTH at least `min_attempts` dials were made and
    `total_seconds` have elapsed, so a slow host still gets every attempt and
    a fast failure still waits out the boot window.

    Attributes:
        min_attempts: Minimum number of dials. Default: 5.
        total_seconds: Minimum time spent dialing. Default: 300.
        delay_seconds: Fixed pause between dials. Default: 1.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_attempts: int = Field(default=constants.DIAL_MIN_ATTEMPTS, ge=1)
    total_seconds: float = Field(default=constants.DIAL_TOTAL_SECONDS, ge=0)
    delay_seconds: float = Field(default=constants.DIAL_DELAY_SECONDS, ge=0)


class PipelineConfig(BaseModel):
    """Configuration for run_pipeline().

    Attributes:
        backend: Hypervisor for every instance ("uml" or "qemu").
        uid: uid the hypervisors run as (0 keeps the current uid).
        gid: gid the hypervisors run as (0 keeps the current gid).
        rootfs: Base root filesystem image, never modified.
        kernel: UML kernel binary or QEMU guest kernel (None: backend default from Settings).
        build_memory: Memory of the build instance.
        worker_memory: Memory of each worker instance.
        worker_count: Number of worker instances. Range: 1-64. Default: 5.
        data_image_size: Size in bytes of the sparse shared data image.
        build_script: Bash script run in the build instance.
        dial: Retry budget for guest SSH dials.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    backend: Backend = Backend.QEMU
    uid: int = Field(default=0, ge=0)
    gid: int = Field(default=0, ge=0)
    rootfs: str = Field(default="rootfs.img", min_length=1)
    kernel: str | None = Field(default=None, min_length=1)
    build_memory: str = constants.DEFAULT_MEMORY
    worker_memory: str = constants.DEFAULT_MEMORY
    worker_count: int = Field(default=constants.DEFAULT_WORKER_COUNT, ge=1, le=64)
    data_image_size: int = Field(default=constants.DATA_IMAGE_SIZE_BYTES, gt=0)
    build_script: str = constants.BUILD_SCRIPT
    dial: DialPolicy = Field(default_factory=DialPolicy)
