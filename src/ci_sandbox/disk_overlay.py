"""Copy-on-write disk overlays and filesystem images.

Every overlay lives in its own private temp dir owned by the hypervisor's
uid/gid, so several instances can share one read-only base image. The
caller registers Overlay.scratch_dir with the owning instance, which deletes
it on cleanup; overlays are never reused.

Two overlay flavors:
- UML: an empty dir plus a conventional file name; the UML kernel creates
  the COW file itself when given ``ubd<N>=<cow>,<base>``.
- qcow2: ``qemu-img create -b <base>``, block-level COW for QEMU.
"""

import asyncio
import os
import tempfile
from pathlib import Path

from ci_sandbox import constants
from ci_sandbox._logging import get_logger
from ci_sandbox.exceptions import ExternalToolError, OverlayError, SetupError
from ci_sandbox.models import Overlay
from ci_sandbox.resource_cleanup import cleanup_path
from ci_sandbox.subprocess_utils import run_tool

logger = get_logger(__name__)

Owner = tuple[int, int]


def _chown_ids(owner: Owner) -> tuple[int, int]:
    # 0 means "keep current identity", same as the exec bridge; -1 leaves the id unchanged
    uid, gid = owner
    return uid or -1, gid or -1


async def make_private_dir(
    owner: Owner | None,
    *,
    temp_dir: Path,
    mode: int = constants.OVERLAY_DIR_MODE,
    error_cls: type[SetupError] = OverlayError,
) -> Path:
    """Create a temp dir with `mode`, owned by `owner` when given.

    Args:
        owner: (uid, gid) to chown to, or None to keep the current owner
        temp_dir: Parent directory
        mode: Permission bits
        error_cls: SetupError subclass raised on failure

    Raises:
        SetupError: mkdtemp/chmod/chown failed (partial dir removed)
    """
    try:
        path = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="ci-sandbox-", dir=temp_dir))
    except OSError as e:
        raise error_cls(f"failed to create temp dir in {temp_dir}: {e}", {"temp_dir": str(temp_dir)}) from e

    try:
        await asyncio.to_thread(os.chmod, path, mode)
        if owner is not None:
            await asyncio.to_thread(os.chown, path, *_chown_ids(owner))
    except OSError as e:
        await cleanup_path(path, context_id=path.name)
        raise error_cls(f"failed to set ownership of {path}: {e}", {"path": str(path), "owner": owner}) from e

    return path


async def make_uml_overlay(base: str, owner: Owner, *, temp_dir: Path) -> Overlay:
    """Reserve a private COW file path for a UML block device.

    The file is created by the UML kernel on first boot, so only the
    directory (owned by the hypervisor's uid) is created here.
    """
    scratch = await make_private_dir(owner, temp_dir=temp_dir)
    overlay = Overlay(path=scratch / constants.UML_COW_FILENAME, scratch_dir=scratch)
    logger.debug("UML overlay reserved", extra={"base": base, "overlay": str(overlay.path)})
    return overlay


async def make_qcow2_overlay(
    base: str,
    owner: Owner,
    *,
    temp_dir: Path,
    qemu_img: str = "qemu-img",
    backing_format: str = "raw",
) -> Overlay:
    """Create a qcow2 overlay backed by `base`.

    Raises:
        OverlayError: Dir/ownership failure (before qemu-img runs), or
            qemu-img failure with its combined output attached
    """
    scratch = await make_private_dir(owner, temp_dir=temp_dir)
    path = scratch / constants.QCOW2_OVERLAY_FILENAME
    # qemu-img resolves relative backing paths against the overlay's dir
    backing = str(Path(base).resolve())
    context = {"base": base, "overlay": str(path)}

    try:
        await run_tool(
            qemu_img, "create", "-f", "qcow2", "-b", backing, "-F", backing_format, str(path),
            context=context,
            error_cls=OverlayError,
        )  # fmt: skip
        await asyncio.to_thread(os.chown, path, *_chown_ids(owner))
    except OverlayError:
        await cleanup_path(scratch, context_id=scratch.name)
        raise
    except OSError as e:
        await cleanup_path(scratch, context_id=scratch.name)
        raise OverlayError(f"failed to set ownership of {path}: {e}", context) from e

    logger.debug("qcow2 overlay created", extra=context)
    return Overlay(path=path, scratch_dir=scratch)


def _allocate_sparse_file(temp_dir: Path, size: int, owner: Owner) -> Path:
    fd, name = tempfile.mkstemp(prefix="ci-sandbox-data-", suffix=".img", dir=temp_dir)
    try:
        os.ftruncate(fd, size)
        os.fchown(fd, *_chown_ids(owner))
    except OSError:
        os.unlink(name)
        raise
    finally:
        os.close(fd)
    return Path(name)


async def create_filesystem_image(
    size: int,
    owner: Owner,
    *,
    temp_dir: Path,
    mkfs: str = "mkfs.btrfs",
) -> Path:
    """Create a sparse `size`-byte file owned by `owner` and format it.

    Raises:
        SetupError: The file could not be allocated
        ExternalToolError: mkfs failed (output attached, file removed)
    """
    try:
        path = await asyncio.to_thread(_allocate_sparse_file, temp_dir, size, owner)
    except OSError as e:
        raise SetupError(f"failed to allocate {size}-byte image in {temp_dir}: {e}", {"size": size}) from e

    try:
        await run_tool(mkfs, str(path), context={"image": str(path), "size": size})
    except ExternalToolError:
        await cleanup_path(path, context_id=path.name)
        raise

    logger.info("Filesystem image created", extra={"image": str(path), "size": size, "mkfs": mkfs})
    return path
