"""Privileged exec bridge.

The orchestrator usually runs as root (tap devices, raw disk images), but
the hypervisor must never run as root. setuid/setgid cannot be undone once
applied to the current process, so privilege is dropped in a fresh process:

    launcher (root)                         bridge process
    ----------------                        --------------
    spawn(req, out)
      encode req -> _CI_SANDBOX_EXEC_REQ
      exec python -m ci_sandbox  ------->   maybe_exec()   (first statement)
                                              decode request
                                              setgid -> setuid -> chdir
                                              execve(hypervisor)  (never returns)

The bridge process keeps its PID across execve, so the handle returned by
spawn() is the hypervisor's handle.

Encoding: the request is a pydantic model serialized as JSON (self
describing, schema validated on decode) and base64-encoded into a single
environment variable. Only the uid/gid/argv/env/dir of the target travel
this way.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import os
import shutil
import sys
from dataclasses import dataclass
from typing import Any, NoReturn

import click
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticSerializationError

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.exceptions import ExecBridgeError, ExecRequestError, PrivilegeDropError
from ci_sandbox.platform_utils import ProcessWrapper
from ci_sandbox.subprocess_utils import drain_to_sink, log_task_exception

logger = get_logger(__name__)


class ExecRequest(BaseModel):
    """Run `path` as uid/gid with argv/env, optionally from `dir`."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    uid: int = Field(ge=0, description="Target uid (0 = keep current)")
    gid: int = Field(ge=0, description="Target gid (0 = keep current)")
    path: str = Field(min_length=1, description="Executable path passed to execve")
    argv: list[str] = Field(min_length=1, description="Full argv, argv[0] names the binary")
    env: list[str] = Field(default_factory=list, description="KEY=VALUE entries")
    dir: str = Field(default="", description="Working directory (empty = inherit)")

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: list[str]) -> list[str]:
        for entry in v:
            key, sep, _ = entry.partition("=")
            if not sep or not key:
                raise ValueError(f"env entry must be KEY=VALUE: {entry!r}")
        return v

    def env_dict(self) -> dict[str, str]:
        """Environment as a mapping for execve."""
        return dict(entry.split("=", 1) for entry in self.env)

    def encode(self) -> str:
        """Serialize to the text-safe form carried in EXEC_REQUEST_ENV.

        Raises:
            ExecRequestError: Serialization failed
        """
        try:
            payload = self.model_dump_json().encode()
        except (PydanticSerializationError, UnicodeEncodeError) as e:
            raise ExecRequestError(f"failed to encode exec request: {e}", {"path": self.path}) from e
        return base64.b64encode(payload).decode("ascii")

    @classmethod
    def decode(cls, data: str) -> ExecRequest:
        """Inverse of encode().

        Raises:
            ExecRequestError: Corrupt base64, invalid JSON or schema mismatch
        """
        try:
            payload = base64.b64decode(data, validate=True)
            return cls.model_validate_json(payload)
        except (binascii.Error, ValidationError, ValueError) as e:
            raise ExecRequestError(f"failed to decode exec request: {e}") from e


@dataclass
class BridgedProcess:
    """A hypervisor started through the bridge, plus its output drain."""

    process: ProcessWrapper
    output_task: asyncio.Task[None] | None

    @property
    def pid(self) -> int | None:
        return self.process.pid

    async def wait(self) -> int:
        """Wait for exit and for the output drain to reach EOF."""
        returncode = await self.process.wait()
        if self.output_task is not None:
            await self.output_task
        return returncode


def resolve_executable(path: str) -> str:
    """Look a bare command name up on the launcher's PATH.

    execve does no PATH search and the bridge runs with an empty PATH, so
    "linux" or "qemu-system-x86_64" must become absolute here. Names with a
    slash, and names not found, are returned unchanged.
    """
    if os.sep in path:
        return path
    return shutil.which(path) or path


def bridge_command() -> list[str]:
    """Command that re-invokes this package as the bridge target."""
    return [sys.executable, "-m", "ci_sandbox"]


async def spawn(req: ExecRequest, out: Any = None, *, context_id: str = "") -> BridgedProcess:
    """Start req.path as req.uid/req.gid via the bridge.

    The child gets a minimal environment: only the exec request (and
    PYTHONPATH when set, so the package remains importable). stdout and
    stderr are merged and drained into `out`.

    Args:
        req: What to run and as whom
        out: Binary sink for console/log output (None discards it)
        context_id: Instance id for log correlation

    Raises:
        ExecRequestError: The request could not be encoded
        OSError: The interpreter could not be launched
    """
    env = {constants.EXEC_REQUEST_ENV: req.encode()}
    if pythonpath := os.environ.get("PYTHONPATH"):
        env["PYTHONPATH"] = pythonpath

    logger.debug(
        "Spawning via exec bridge",
        extra={"context_id": context_id, "path": req.path, "uid": req.uid, "gid": req.gid},
    )
    async_proc = await asyncio.create_subprocess_exec(
        *bridge_command(),
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE if out is not None else asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    process = ProcessWrapper(async_proc)

    output_task = None
    if out is not None:
        output_task = asyncio.create_task(
            drain_to_sink(process, out, context_id=context_id), name=f"drain-{context_id}"
        )
        output_task.add_done_callback(log_task_exception)

    return BridgedProcess(process=process, output_task=output_task)


def drop_privileges(uid: int, gid: int) -> None:
    """setgid before setuid: once uid is dropped, gid can no longer change.

    uid/gid 0 means "keep current identity" and makes no syscall.

    Raises:
        PrivilegeDropError: A syscall failed
    """
    if gid > 0:
        try:
            if os.geteuid() == 0:
                # Drop root's supplementary groups along with the primary gid
                os.setgroups([])
            os.setgid(gid)
        except OSError as e:
            raise PrivilegeDropError(f"failed to setgid({gid}): {e}", {"gid": gid}) from e
    if uid > 0:
        try:
            os.setuid(uid)
        except OSError as e:
            raise PrivilegeDropError(f"failed to setuid({uid}): {e}", {"uid": uid}) from e


def _fatal(message: str) -> NoReturn:
    click.echo(f"ci-sandbox exec bridge: {message}", err=True)
    raise SystemExit(constants.EXIT_BRIDGE_FAILURE)


def maybe_exec() -> None:
    """Act as the bridge target if an exec request is present.

    Must be the first thing the process does. Returns only when no request
    is present; otherwise the process image is replaced or the process
    exits with EXIT_BRIDGE_FAILURE.
    """
    data = os.environ.get(constants.EXEC_REQUEST_ENV)
    if data is None:
        return

    try:
        req = ExecRequest.decode(data)
        drop_privileges(req.uid, req.gid)
        if req.dir:
            try:
                os.chdir(req.dir)
            except OSError as e:
                raise PrivilegeDropError(f"failed to chdir to {req.dir!r}: {e}", {"dir": req.dir}) from e
    except ExecBridgeError as e:
        _fatal(e.message)

    click.echo(f"execing {req.path} {req.argv}")
    sys.stdout.flush()
    try:
        os.execve(req.path, req.argv, req.env_dict())
    except OSError as e:
        _fatal(f"failed to exec {req.path!r}: {e}")
