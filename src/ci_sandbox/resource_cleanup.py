"""Resource cleanup utilities for instance lifecycle management.

Cleanup operations log errors but never raise: one failed removal must not
stop the rest of an instance's teardown.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def kill_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    reap_timeout: float = constants.KILL_REAP_TIMEOUT_SECONDS,
) -> int | None:
    """Force kill a subprocess (SIGKILL) and reap it.

    There is no SIGTERM phase: instances are single-use and their disks are
    throwaway overlays, so there is nothing to shut down gracefully.

    Args:
        proc: ProcessWrapper to kill (None safe - returns immediately)
        name: Process name for logging (e.g. "qemu", "linux")
        context_id: Context for logging (instance id)
        reap_timeout: Seconds to wait for exit after SIGKILL

    Returns:
        Exit status, or None if the process could not be reaped in time

    Raises:
        ProcessLookupError, PermissionError: the signal could not be delivered
    """
    if proc is None:
        return None

    if proc.returncode is not None:
        logger.debug(
            f"{name} already terminated",
            extra={"context_id": context_id, "returncode": proc.returncode},
        )
        return proc.returncode

    logger.debug(f"Sending SIGKILL to {name}", extra={"context_id": context_id, "pid": proc.pid})
    await proc.kill()

    try:
        async with asyncio.timeout(reap_timeout):
            returncode = await proc.wait()
    except TimeoutError:
        logger.error(
            f"{name} didn't exit within timeout after SIGKILL",
            extra={"context_id": context_id, "reap_timeout": reap_timeout, "pid": proc.pid},
        )
        return None

    logger.debug(f"{name} killed", extra={"context_id": context_id, "returncode": returncode})
    return returncode


async def cleanup_path(path: Path | None, context_id: str) -> bool:
    """Delete a temp file or directory tree.

    Silently succeeds if the path doesn't exist.

    Args:
        path: File or directory to delete (None safe - returns immediately)
        context_id: Context for logging (instance id)

    Returns:
        True if the path is gone, False if removal failed
    """
    if path is None:
        return True

    try:
        if await aiofiles.os.path.isdir(path) and not await aiofiles.os.path.islink(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await aiofiles.os.remove(path)
        logger.debug("Temp path removed", extra={"context_id": context_id, "path": str(path)})
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            "Temp path removal failed",
            extra={"context_id": context_id, "path": str(path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cleanup_paths(paths: list[Path], context_id: str) -> bool:
    """Delete several temp paths concurrently.

    Returns:
        True if every path was removed
    """
    results = await asyncio.gather(*(cleanup_path(p, context_id) for p in paths))
    return all(results)
