"""Command-line interface for ci-sandbox.

Usage:
    ci-sandbox                                   # QEMU, user ubuntu, 5 workers
    ci-sandbox --backend uml --workers 3         # User-Mode Linux fleet
    ci-sandbox --rootfs base.img --log-dir logs  # Custom image, logs in ./logs
"""

from __future__ import annotations

import asyncio
import pwd
import sys
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from ci_sandbox import __version__
from ci_sandbox._logging import configure_logging, get_logger, shutdown_logging
from ci_sandbox.config import PipelineConfig
from ci_sandbox.constants import EXIT_SANDBOX_ERROR, EXIT_SUCCESS
from ci_sandbox.exceptions import BuildError, IdentityLookupError, SandboxError
from ci_sandbox.orchestrator import run_pipeline
from ci_sandbox.settings import Settings
from ci_sandbox.vm_manager import InstanceManager

logger = get_logger(__name__)


def lookup_user(name: str) -> tuple[int, int]:
    """Resolve a host user name to (uid, gid).

    Raises:
        IdentityLookupError: No such user
    """
    try:
        entry = pwd.getpwnam(name)
    except KeyError as e:
        raise IdentityLookupError(f"unknown user: {name!r}", {"user": name}) from e
    return entry.pw_uid, entry.pw_gid


def format_error(title: str, detail: str, hints: list[str] | None = None) -> str:
    """Render a failure for stderr: title, detail, then what to try."""
    text = f"{click.style('Error: ' + title, fg='red', bold=True)}\n\n  {detail}"
    if hints:
        text += "\n\n  Try:\n" + "\n".join(f"    - {hint}" for hint in hints)
    return text


async def run(settings: Settings, config: PipelineConfig) -> int:
    """Run the pipeline and map failures to exit codes."""
    try:
        async with InstanceManager(settings) as manager:
            await run_pipeline(manager, config)
        return EXIT_SUCCESS

    except BuildError as e:
        tail = "\n  ".join(e.output.strip().splitlines()[-20:])
        click.echo(format_error("Build failed", f"{e.message}\n\n  {tail}" if tail else e.message), err=True)
        return EXIT_SANDBOX_ERROR

    except SandboxError as e:
        click.echo(
            format_error(
                "Sandbox error",
                str(e.message),
                [
                    "Run as root (tap devices and image ownership need it)",
                    "Check that qemu-img, mkfs.btrfs and ip are installed",
                    "See <log-dir>/<instance>.log for hypervisor output",
                ],
            ),
            err=True,
        )
        return EXIT_SANDBOX_ERROR


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--user", default="ubuntu", show_default=True, help="Host user the hypervisors run as")
@click.option("--rootfs", default="rootfs.img", show_default=True, help="Base root filesystem image")
@click.option("--kernel", help="UML kernel binary or QEMU guest kernel (default: from settings)")
@click.option(
    "--backend",
    type=click.Choice(["uml", "qemu"], case_sensitive=False),
    help="Hypervisor backend (default: CI_SANDBOX_DEFAULT_BACKEND or qemu)",
)
@click.option("-w", "--workers", default=5, show_default=True, type=click.IntRange(1, 64), help="Worker instances")
@click.option("-m", "--memory", default="512MB", show_default=True, help="Memory per instance")
@click.option(
    "--log-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for per-instance console logs",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: INFO)",
)
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="ci-sandbox")
def main(
    user: str,
    rootfs: str,
    kernel: str | None,
    backend: str | None,
    workers: int,
    memory: str,
    log_dir: Path | None,
    log_level: str | None,
    quiet: bool,
) -> NoReturn:
    """Build a CI image in a throwaway VM, then boot a fleet of workers from it.

    \b
    Stage 1: boot one instance on an overlay of ROOTFS with a fresh data
             image attached, run the build script over SSH, kill it.
    Stage 2: boot WORKERS instances, each on private overlays of ROOTFS
             and the built data image.

    Needs root: tap devices are created per instance and the hypervisors
    are started as USER.
    """
    configure_logging(level=log_level.upper() if log_level else None, quiet=quiet)

    try:
        settings = Settings() if log_dir is None else Settings(log_dir=log_dir)
    except ValidationError as exc:
        raise click.UsageError(f"invalid CI_SANDBOX_* environment: {exc}") from exc
    settings.log_dir.mkdir(parents=True, exist_ok=True)

    try:
        uid, gid = lookup_user(user)
    except IdentityLookupError as e:
        click.echo(format_error("Unknown user", e.message, ["Pass an existing host user with --user"]), err=True)
        shutdown_logging()
        sys.exit(EXIT_SANDBOX_ERROR)

    try:
        config = PipelineConfig(
            backend=backend.lower() if backend else settings.default_backend,
            uid=uid,
            gid=gid,
            rootfs=rootfs,
            kernel=kernel,
            build_memory=memory,
            worker_memory=memory,
            worker_count=workers,
        )
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    logger.info(
        "Starting pipeline",
        extra={"backend": config.backend.value, "user": user, "workers": workers, "rootfs": rootfs},
    )
    try:
        exit_code = asyncio.run(run(settings, config))
    finally:
        shutdown_logging()

    sys.exit(exit_code)
