"""Build-then-fleet pipeline.

Stage 1 (build): boot one instance with a throwaway overlay of the root
filesystem and the shared data image attached writable, provision it over
SSH, kill it. The data image keeps what the build produced.

Stage 2 (fleet): boot worker_count instances, each with throwaway overlays
of both the root filesystem and the built data image, so workers start from
the same state and never see each other's writes.

    run_pipeline
    ├── create_filesystem_image      sparse data image, mkfs'd
    ├── run_build                    stage 1
    ├── start_fleet                  stage 2 (concurrent)
    ├── teardown_fleet               kill all, keep going on errors
    └── data image removed           always
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import asyncssh
from tenacity import AsyncRetrying, RetryError, before_sleep_log, stop_after_attempt, stop_after_delay, wait_fixed

from ci_sandbox._logging import get_logger
from ci_sandbox.config import DialPolicy, PipelineConfig
from ci_sandbox.disk_overlay import create_filesystem_image
from ci_sandbox.exceptions import BuildError, CommunicationError, DialError, SandboxError
from ci_sandbox.instance import Instance
from ci_sandbox.models import DriveSpec, InstanceConfig
from ci_sandbox.resource_cleanup import cleanup_path
from ci_sandbox.vm_manager import InstanceManager

logger = get_logger(__name__)

WorkerTask = Callable[[Instance], Awaitable[None]]


async def dial_with_retry(instance: Instance, policy: DialPolicy) -> asyncssh.SSHClientConnection:
    """Dial the guest's SSH agent until it answers or the budget is spent.

    Raises:
        DialError: Every attempt failed (last error chained)
    """
    start = time.monotonic()
    attempts = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.min_attempts) & stop_after_delay(policy.total_seconds),
            wait=wait_fixed(policy.delay_seconds),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                conn = await instance.dial_ssh()
        logger.info(
            "Connected to guest",
            extra={"instance_id": instance.id, "ip": instance.ip(), "attempts": attempts},
        )
        return conn
    except RetryError as e:
        last = e.last_attempt.exception()
        raise DialError(
            f"failed to dial instance {instance.id} at {instance.ip()} after {attempts} attempts: {last}",
            {
                "instance_id": instance.id,
                "ip": instance.ip(),
                "attempts": attempts,
                "elapsed_seconds": round(time.monotonic() - start, 1),
            },
        ) from last


async def run_remote_script(
    conn: asyncssh.SSHClientConnection, script: str, out: Any = None, *, instance_id: str = ""
) -> str:
    """Run `script` with bash on the guest, stderr merged into stdout.

    Args:
        conn: Open SSH connection
        script: Bash script, fed on stdin
        out: Binary sink receiving the combined output (optional)
        instance_id: Instance id for error context

    Returns:
        Combined output

    Raises:
        CommunicationError: The SSH session failed before the script finished
        BuildError: Non-zero exit (output attached)
    """
    try:
        result = await conn.run("bash", input=script, stderr=asyncssh.STDOUT, check=False)
    except (asyncssh.Error, OSError) as e:
        raise CommunicationError(
            f"SSH session to instance {instance_id} failed: {e}",
            {"instance_id": instance_id, "error_type": type(e).__name__},
        ) from e
    output = result.stdout if isinstance(result.stdout, str) else (result.stdout or b"").decode(errors="replace")
    if out is not None:
        out.write(output.encode())
        out.flush()
    if result.exit_status != 0:
        raise BuildError(
            f"remote script exited with status {result.exit_status}",
            {"exit_status": result.exit_status, "exit_signal": result.exit_signal},
            output=output,
        )
    return output


async def run_build(manager: InstanceManager, config: PipelineConfig, data_image: str) -> None:
    """Stage 1: provision data_image from a throwaway root filesystem.

    The build instance is always killed, whether the script succeeded or not.

    Raises:
        InstanceStartError, DialError, CommunicationError, BuildError
    """
    inst = await manager.new_instance(
        InstanceConfig(
            kernel=config.kernel or "",
            user=config.uid,
            group=config.gid,
            memory=config.build_memory,
            drives={
                "hda": DriveSpec(fs=config.rootfs, temp_cow=True),
                "hdb": DriveSpec(fs=data_image),
            },
        ),
        backend=config.backend,
    )
    async with inst:
        logger.info("Booting build instance", extra={"instance_id": inst.id, "ip": inst.ip()})
        await inst.start()
        conn = await dial_with_retry(inst, config.dial)
        async with conn:
            logger.info("Running build script", extra={"instance_id": inst.id})
            await run_remote_script(conn, config.build_script, inst.config.out, instance_id=inst.id)
        logger.info("Build finished", extra={"instance_id": inst.id})


async def _start_worker(
    manager: InstanceManager, config: PipelineConfig, data_image: str, worker_task: WorkerTask | None
) -> Instance:
    inst = await manager.new_instance(
        InstanceConfig(
            kernel=config.kernel or "",
            user=config.uid,
            group=config.gid,
            memory=config.worker_memory,
            drives={
                "hda": DriveSpec(fs=config.rootfs, temp_cow=True),
                "hdb": DriveSpec(fs=data_image, temp_cow=True),
            },
        ),
        backend=config.backend,
    )
    try:
        await inst.start()
        if worker_task is not None:
            await worker_task(inst)
    except BaseException:
        await inst.kill()
        raise
    return inst


async def start_fleet(
    manager: InstanceManager,
    config: PipelineConfig,
    data_image: str,
    worker_task: WorkerTask | None = None,
) -> list[Instance]:
    """Stage 2: start config.worker_count workers concurrently.

    Each worker gets private overlays of the root filesystem and data image.
    If any worker fails, the ones that started are torn down and the first
    error is raised.

    Args:
        manager: Instance factory
        config: Pipeline configuration
        data_image: Image produced by run_build()
        worker_task: Awaited with each started worker (e.g. run tests)

    Returns:
        Running workers, to be passed to teardown_fleet()
    """
    results = await asyncio.gather(
        *(_start_worker(manager, config, data_image, worker_task) for _ in range(config.worker_count)),
        return_exceptions=True,
    )
    started = [r for r in results if isinstance(r, Instance)]
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        logger.error(
            "Worker startup failed",
            extra={"failed": len(errors), "started": len(started), "error": str(errors[0])},
        )
        await teardown_fleet(started)
        raise errors[0]

    logger.info("Fleet started", extra={"workers": [(i.id, i.ip()) for i in started]})
    return started


async def teardown_fleet(instances: list[Instance]) -> bool:
    """Kill every instance; one failure never stops the others.

    Returns:
        True if every instance was killed cleanly
    """
    ok = True
    for inst in instances:
        try:
            await inst.kill()
        except SandboxError as e:
            ok = False
            logger.error("Failed to kill worker", extra={"instance_id": inst.id, "error": e.message, **e.context})
    return ok


async def run_pipeline(
    manager: InstanceManager,
    config: PipelineConfig,
    worker_task: WorkerTask | None = None,
) -> None:
    """Create the shared data image, build into it, run the fleet, clean up.

    The data image is removed on every exit path.
    """
    settings = manager.settings
    data_image: Path = await create_filesystem_image(
        config.data_image_size,
        (config.uid, config.gid),
        temp_dir=settings.temp_dir,
        mkfs=settings.mkfs_bin,
    )
    try:
        await run_build(manager, config, str(data_image))
        workers = await start_fleet(manager, config, str(data_image), worker_task)
        await teardown_fleet(workers)
    finally:
        await cleanup_path(data_image, context_id="pipeline")
