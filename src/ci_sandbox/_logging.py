"""Package logging.

The ``ci_sandbox`` logger only carries a NullHandler; the CLI attaches the
stderr handler through configure_logging() and detaches it again with
shutdown_logging(). ``CI_SANDBOX_LOG_LEVEL`` sets the initial level for
library users who never call configure_logging().

Records look like:
    INFO [2026-02-25 10:02:54] ci_sandbox.orchestrator [vm0] - Booting build instance

The bracketed tag is the instance_id (or context_id) passed in `extra`; records
without one have no tag.

Hypervisor output drains and the dial loop log from the event loop, so
records go through a bounded queue and a listener thread does the stderr
writes. A full queue drops records instead of stalling the loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "ci_sandbox"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_initial_level = logging.getLevelNamesMapping().get(os.environ.get("CI_SANDBOX_LOG_LEVEL", "").strip().upper())
if _initial_level:  # NOTSET and unknown names leave the level alone
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_initial_level)

_RECORD_FORMAT = "%(levelname)s [%(asctime)s] %(name)s%(instance_tag)s - %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_MAX_PENDING_RECORDS = 4096


def _style_for(levelno: int) -> dict[str, bool | str]:
    if levelno >= logging.ERROR:
        return {"fg": "red"}
    if levelno >= logging.WARNING:
        return {"fg": "yellow"}
    return {"dim": levelno < logging.INFO}


class _InstanceTagFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tag = getattr(record, "instance_id", None) or getattr(record, "context_id", None)
        record.instance_tag = f" [{tag}]" if tag else ""
        return super().format(record)


class _StderrSink(logging.Handler):
    """Writes formatted records to stderr. Runs on the listener thread."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_InstanceTagFormatter(fmt=_RECORD_FORMAT, datefmt=_TIME_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), **_style_for(record.levelno)), err=True)
        except BlockingIOError:
            return
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _CliLogHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; drops them when the queue is full."""

    def __init__(self) -> None:
        pending: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_MAX_PENDING_RECORDS)
        super().__init__(pending)
        self.listener = logging.handlers.QueueListener(pending, _StderrSink())
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Listener lives in this process: keep args and exc_info as they are
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger under the ``ci_sandbox`` hierarchy."""
    return logging.getLogger(name)


def _cli_handlers(lib_logger: logging.Logger) -> list[_CliLogHandler]:
    return [h for h in lib_logger.handlers if isinstance(h, _CliLogHandler)]


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send package logs to stderr. Safe to call more than once.

    ``quiet`` wins over ``level``; with neither, an unset level becomes INFO.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not _cli_handlers(lib_logger):
        lib_logger.addHandler(_CliLogHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
    elif lib_logger.level == logging.NOTSET:
        lib_logger.setLevel(logging.INFO)


def shutdown_logging() -> None:
    """Detach the stderr handler after flushing whatever is still queued."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    for handler in _cli_handlers(lib_logger):
        lib_logger.removeHandler(handler)
        handler.close()
