"""Subprocess utilities.

- run_tool: run an external tool to completion, surfacing combined output on failure
- drain_to_sink: copy a child's merged stdout/stderr into an output sink
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from ci_sandbox._logging import get_logger
from ci_sandbox.exceptions import ExternalToolError

if TYPE_CHECKING:
    from ci_sandbox.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def run_tool(
    *argv: str,
    context: dict[str, Any] | None = None,
    error_cls: type[ExternalToolError] = ExternalToolError,
) -> str:
    """Run an external tool and return its combined stdout/stderr.

    stderr is merged into stdout so the output is surfaced verbatim, in
    order, when the tool fails.

    Args:
        argv: Tool and arguments (argv[0] is the tool)
        context: Extra structured context attached to the error
        error_cls: ExternalToolError subclass to raise (e.g. OverlayError)

    Returns:
        Decoded combined output

    Raises:
        ExternalToolError: Tool could not be launched or exited non-zero
    """
    tool = argv[0]
    ctx = {"tool": tool, "argv": list(argv), **(context or {})}
    logger.debug(f"Running {tool}", extra=ctx)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise error_cls(f"Failed to launch {tool}: {e}", ctx, tool=tool) from e

    stdout, _ = await proc.communicate()
    output = stdout.decode(errors="replace")
    if proc.returncode != 0:
        raise error_cls(
            f"{tool} exited with status {proc.returncode}: {output.strip()!r}",
            {**ctx, "returncode": proc.returncode},
            tool=tool,
            output=output,
            returncode=proc.returncode,
        )
    return output


async def drain_to_sink(process: ProcessWrapper, sink: Any, *, context_id: str) -> None:
    """Copy process output into a binary sink until EOF.

    Must run concurrently with the process: an undrained 64KB pipe blocks
    the hypervisor's console writes.

    Args:
        process: Process whose stdout carries merged stdout/stderr
        sink: Binary file-like object (write/flush)
        context_id: Instance id for log correlation
    """
    if process.stdout is None:
        return
    while chunk := await process.stdout.read(65536):
        try:
            sink.write(chunk)
            sink.flush()
        except (OSError, ValueError) as e:
            # Sink closed or unwritable; keep draining so the child never blocks
            logger.warning(
                "Output sink write failed, discarding output",
                extra={"context_id": context_id, "error": str(e)},
            )
            sink = _DiscardSink()


class _DiscardSink:
    def write(self, _data: bytes) -> None:
        pass

    def flush(self) -> None:
        pass


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so a failing drain task
    never goes unnoticed.
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
