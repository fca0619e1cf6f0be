"""Cross-checks between the answer file, the initrd and the boot menus.

The installer refuses an answer file whose md5 differs from the
``preseed/file/checksum`` argument, so every place the checksum is recorded is
compared against the file actually shipped. Checks run twice: on the working
tree right after recompression, and on the finished image, read back with
bsdtar.
"""

from __future__ import annotations

from pathlib import Path

from vbox_cluster.domain import AnswerFileDelivery, InstallerLayout
from vbox_cluster.logging import get_logger
from vbox_cluster.storage.exceptions import AnswerFileChecksumError

from .answer_file import answer_checksum
from .boot_menu import embedded_checksum
from .extraction import extract_member
from .ramfs import find_member, read_compressed_members

log = get_logger(source=__name__, tags=["verify"])


def menu_paths(layout: InstallerLayout) -> tuple[str, ...]:
    return (layout.isolinux_config, layout.isolinux_menu, layout.grub_config)


def verify_initrd_answer(
    initrd: Path, member_name: str, expected: str, scratch_dir: Path
) -> None:
    """Raise AnswerFileChecksumError unless the initrd holds the expected file."""
    members = read_compressed_members(initrd, scratch_dir)
    member = find_member(members, member_name)
    actual = answer_checksum(member.data) if member is not None else None
    if actual != expected:
        raise AnswerFileChecksumError(f"{initrd.name}:{member_name}", expected, actual)
    log.debug(f"{initrd.name} contains {member_name} with md5 {actual}")


def verify_menu_text(location: str, text: str, expected: str) -> None:
    actual = embedded_checksum(text)
    if actual != expected:
        raise AnswerFileChecksumError(location, expected, actual)


def verify_tree_menus(root: Path, layout: InstallerLayout, expected: str) -> None:
    for relative in menu_paths(layout):
        verify_menu_text(relative, (root / relative).read_text(encoding="utf-8"), expected)


def verify_output_image(
    image: Path,
    layout: InstallerLayout,
    delivery: AnswerFileDelivery,
    expected: str,
    scratch_dir: Path,
) -> tuple[str, ...]:
    """Re-read the finished image and confirm every checksum agrees.

    Returns:
        Relative paths inside the image that were checked
    """
    scratch_dir.mkdir(parents=True, exist_ok=True)
    checked = []

    if delivery is AnswerFileDelivery.INITRD:
        copy = scratch_dir / Path(layout.initrd).name
        try:
            extract_member(image, layout.initrd, copy)
            verify_initrd_answer(copy, layout.answer_file_name, expected, scratch_dir)
        finally:
            copy.unlink(missing_ok=True)
        checked.append(layout.initrd)
    else:
        copy = scratch_dir / layout.answer_file_name
        try:
            extract_member(image, layout.answer_file_name, copy)
            actual = answer_checksum(copy.read_bytes())
        finally:
            copy.unlink(missing_ok=True)
        if actual != expected:
            raise AnswerFileChecksumError(
                f"{image.name}:{layout.answer_file_name}", expected, actual
            )
        checked.append(layout.answer_file_name)

    for relative in menu_paths(layout):
        copy = scratch_dir / relative.replace("/", "_")
        try:
            extract_member(image, relative, copy)
            text = copy.read_text(encoding="utf-8")
        finally:
            copy.unlink(missing_ok=True)
        verify_menu_text(f"{image.name}:{relative}", text, expected)
        checked.append(relative)

    log.info(f"Verified answer file checksum {expected} in {image.name}")
    return tuple(checked)
