"""Base image extraction with bsdtar."""

from __future__ import annotations

from pathlib import Path

from vbox_cluster.domain import InstallerLayout
from vbox_cluster.logging import get_logger
from vbox_cluster.storage.commands import find_tool, run_checked_command, run_to_file
from vbox_cluster.storage.exceptions import DependencyMissingError, ExtractionError
from vbox_cluster.storage.permissions import remove_tree

from .tree import Stage, WorkingTree

log = get_logger(source=__name__, tags=["extract"])


def _bsdtar() -> str:
    bsdtar = find_tool("bsdtar")
    if not bsdtar:
        raise DependencyMissingError(["bsdtar"])
    return bsdtar


def extract_image(
    image: Path, destination: Path, layout: InstallerLayout | None = None
) -> WorkingTree:
    """Unpack image into a fresh working tree.

    Any previous tree at destination is removed first. The image itself is
    only read.

    Raises:
        ExtractionError: If bsdtar fails or expected files are missing
    """
    layout = layout or InstallerLayout()
    if not image.is_file():
        raise ExtractionError(f"Base image not found: {image}", image)
    if destination.exists():
        log.debug(f"Removing stale working tree {destination}")
        remove_tree(destination)
    destination.mkdir(parents=True)

    try:
        run_checked_command([_bsdtar(), "-C", str(destination), "-xf", str(image)])
    except RuntimeError as error:
        raise ExtractionError(f"Failed to extract {image}: {error}", image) from error

    missing = [
        relative
        for relative in layout.required_paths()
        if not (destination / relative).is_file()
    ]
    if missing:
        raise ExtractionError(
            f"Extraction of {image} is incomplete, missing: {', '.join(missing)}",
            image,
        )

    tree = WorkingTree(root=destination, layout=layout)
    tree.mark(Stage.EXTRACTED)
    log.info(f"Extracted {image.name} into {destination}")
    return tree


def extract_member(image: Path, member: str, destination: Path) -> Path:
    """Copy a single file out of an image without unpacking the rest."""
    try:
        run_to_file([_bsdtar(), "-xOf", str(image), member], destination)
    except RuntimeError as error:
        raise ExtractionError(f"Cannot read {member} from {image}: {error}", image) from error
    return destination
