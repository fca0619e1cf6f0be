"""Repackaging of the working tree into a bootable image."""

from __future__ import annotations

import os
from pathlib import Path

from vbox_cluster.domain import BootParameters
from vbox_cluster.logging import get_logger
from vbox_cluster.storage.commands import find_tool, run_checked_command
from vbox_cluster.storage.exceptions import DependencyMissingError, RepackagingError
from vbox_cluster.storage.permissions import writable

from .tree import Stage, WorkingTree

log = get_logger(source=__name__, tags=["repackage"])

GENISOIMAGE = "genisoimage"
XORRISO = "xorriso"
PACKAGERS = (GENISOIMAGE, XORRISO)


def packager_command(
    packager: str,
    tool_path: str,
    tree_root: Path,
    output: Path,
    boot: BootParameters,
) -> list[str]:
    """mkisofs-style command line with the El Torito boot record."""
    if packager not in PACKAGERS:
        raise RepackagingError(f"Unknown packager {packager!r}")
    command = [tool_path]
    if packager == XORRISO:
        command += ["-as", "mkisofs"]
    command += [
        "-r",
        "-J",
        "-V",
        boot.volume_label,
        "-o",
        str(output),
        "-b",
        boot.boot_image,
        "-c",
        boot.boot_catalog,
    ]
    if boot.no_emulation:
        command.append("-no-emul-boot")
    command += ["-boot-load-size", str(boot.load_size)]
    if boot.boot_info_table:
        command.append("-boot-info-table")
    # genisoimage has no EFI El Torito support
    if packager == XORRISO and boot.efi_image and (tree_root / boot.efi_image).is_file():
        command += ["-eltorito-alt-boot", "-e", boot.efi_image, "-no-emul-boot"]
    command.append(str(tree_root))
    return command


def repackage_image(
    tree: WorkingTree,
    output: Path,
    boot: BootParameters,
    packager: str = GENISOIMAGE,
) -> Path:
    """Pack the final tree into output.

    The image is written to ``<output>.partial`` and only renamed once the
    packager succeeds; a previous output is removed beforehand so a failed
    run never leaves an old image looking current.

    Raises:
        PipelineOrderError: If the manifest has not been regenerated
        RepackagingError: If packaging fails
    """
    tree.require(Stage.MANIFEST_WRITTEN, "repackage")
    tool_path = find_tool(packager)
    if not tool_path:
        raise DependencyMissingError([packager])
    boot_image = tree.path(boot.boot_image)
    if not boot_image.is_file():
        raise RepackagingError(f"Boot image not found in tree: {boot.boot_image}", output)

    output.parent.mkdir(parents=True, exist_ok=True)
    if output.exists():
        log.warning(f"Removing previous image {output}")
        output.unlink()
    partial = output.with_name(output.name + ".partial")
    partial.unlink(missing_ok=True)

    command = packager_command(packager, tool_path, tree.root, partial, boot)
    # -boot-info-table patches the boot binary in place.
    with writable(boot_image):
        try:
            run_checked_command(command)
        except RuntimeError as error:
            partial.unlink(missing_ok=True)
            raise RepackagingError(f"Failed to create {output}: {error}", output) from error

    if not partial.is_file():
        raise RepackagingError(f"{packager} produced no image at {partial}", output)
    os.replace(partial, output)
    tree.mark(Stage.REPACKAGED)
    log.info(f"Created {output} ({output.stat().st_size} bytes)")
    return output
