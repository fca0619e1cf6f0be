"""Scoped write access for paths inside an extracted image tree.

Files extracted from an ISO 9660 image are read-only. The image builder only
unlocks the paths it is about to rewrite and restores their original modes on
every exit path, including failures.

Usage:
    from vbox_cluster.storage.permissions import writable

    with writable(tree / "install.amd", recursive=True):
        # Rewrite initrd.gz
        ...
"""

from __future__ import annotations

import os
import shutil
import stat
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Generator

from vbox_cluster.logging import LoggerFactory

from .exceptions import PermissionToggleError

log = LoggerFactory.for_image()


def _collect_modes(path: Path, recursive: bool) -> dict[Path, int]:
    modes = {path: stat.S_IMODE(path.lstat().st_mode)}
    if recursive and path.is_dir():
        for dirpath, dirnames, filenames in os.walk(path):
            for name in dirnames + filenames:
                child = Path(dirpath) / name
                if child.is_symlink():
                    continue
                modes[child] = stat.S_IMODE(child.lstat().st_mode)
    return modes


@contextmanager
def writable(path: Path, *, recursive: bool = False) -> Generator[Path, None, None]:
    """Grant owner write permission on path for the duration of the block.

    Args:
        path: File or directory to unlock
        recursive: Also unlock everything below a directory

    Raises:
        PermissionToggleError: If write permission cannot be granted. Failing
            to restore the original modes afterwards is only logged.
    """
    try:
        original_modes = _collect_modes(path, recursive)
    except OSError as error:
        raise PermissionToggleError(path, error.strerror or str(error)) from error

    unlocked: list[Path] = []
    try:
        for target, mode in original_modes.items():
            if not mode & stat.S_IWUSR:
                os.chmod(target, mode | stat.S_IWUSR)
                unlocked.append(target)
    except OSError as error:
        _restore(unlocked, original_modes)
        raise PermissionToggleError(path, error.strerror or str(error)) from error

    log.debug(f"Unlocked {path} ({len(unlocked)} paths)")
    try:
        yield path
    finally:
        _restore(unlocked, original_modes)
        log.debug(f"Re-locked {path}")


@contextmanager
def writable_paths(*paths: Path) -> Generator[tuple[Path, ...], None, None]:
    """Unlock several files at once; all are re-locked on exit."""
    with ExitStack() as stack:
        for path in paths:
            stack.enter_context(writable(path))
        yield paths


def _restore(paths: list[Path], original_modes: dict[Path, int]) -> None:
    # Children first so a directory is re-locked after its contents.
    for target in reversed(paths):
        try:
            os.chmod(target, original_modes[target])
        except FileNotFoundError:
            log.warning(f"Cannot restore mode of {target}: path no longer exists")
        except OSError as error:
            log.warning(f"Cannot restore mode of {target}: {error}")


def remove_tree(path: Path) -> None:
    """Remove a directory tree even when it contains read-only entries."""
    if not path.exists():
        return
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                os.chmod(child, stat.S_IMODE(child.lstat().st_mode) | stat.S_IRWXU)
    os.chmod(path, stat.S_IMODE(path.lstat().st_mode) | stat.S_IRWXU)
    shutil.rmtree(path)
