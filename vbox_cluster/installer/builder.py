"""Unattended installer image builder.

Turns a stock installer image into one that installs without interaction:

1. Extract the base image into a fresh working tree
2. Place the answer file (appended to the initrd, or at the medium root)
3. Rewrite the isolinux and GRUB menus with the answer file checksum
4. Regenerate md5sum.txt
5. Repackage with the original El Torito boot record and verify the result

The stock tree ships read-only, so every write happens inside a scoped
``writable`` block that restores the original modes afterwards.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path

from vbox_cluster.domain import (
    AnswerFileDelivery,
    BootParameters,
    BuildResult,
    InstallerLayout,
)
from vbox_cluster.logging import get_logger, operation_context
from vbox_cluster.storage.permissions import remove_tree, writable, writable_paths

from .answer_file import answer_checksum
from .boot_menu import (
    KernelCommandLine,
    render_grub_config,
    render_isolinux_config,
    render_isolinux_menu,
)
from .extraction import extract_image
from .manifest import write_manifest
from .ramfs import append_member, compress_in_place, decompress, member_name_for
from .repackage import GENISOIMAGE, repackage_image
from .tree import Stage, WorkingTree
from .verification import verify_initrd_answer, verify_output_image, verify_tree_menus

log = get_logger(source=__name__, tags=["image"])


class ImageBuilder:
    """Builds the unattended installer image from a base image."""

    def __init__(
        self,
        layout: InstallerLayout | None = None,
        boot: BootParameters | None = None,
        *,
        delivery: AnswerFileDelivery = AnswerFileDelivery.INITRD,
        packager: str = GENISOIMAGE,
        verify_output: bool = True,
        keep_work_tree: bool = False,
    ):
        self.layout = layout or InstallerLayout()
        self.boot = boot or BootParameters()
        self.delivery = delivery
        self.packager = packager
        self.verify_output = verify_output
        self.keep_work_tree = keep_work_tree

    def build(
        self, base_image: Path, answer_path: Path, work_dir: Path, output_image: Path
    ) -> BuildResult:
        """Run the whole pipeline and return the build outcome.

        The base image is never modified. The working tree lives in
        ``work_dir/tree`` and is removed after a successful build unless
        keep_work_tree is set.
        """
        with operation_context("extract-image", image=str(base_image)):
            tree = self.extract(base_image, work_dir / "tree")
        with operation_context("customize-image", delivery=self.delivery.value):
            checksum = self.customize(tree, answer_path)
            entries = self.regenerate_manifest(tree)
        with operation_context("repackage-image", output=str(output_image)):
            repackage_image(tree, output_image, self.boot, self.packager)

        checked: tuple[str, ...] = ()
        if self.verify_output:
            with operation_context("verify-image", output=str(output_image)):
                checked = verify_output_image(
                    output_image, self.layout, self.delivery, checksum, work_dir / "verify"
                )

        if not self.keep_work_tree:
            remove_tree(tree.root)
        return BuildResult(
            output_image=output_image,
            answer_checksum=checksum,
            manifest_entries=entries,
            delivery=self.delivery,
            checked_paths=checked,
        )

    def extract(self, base_image: Path, destination: Path) -> WorkingTree:
        return extract_image(base_image, destination, self.layout)

    def customize(self, tree: WorkingTree, answer_path: Path) -> str:
        """Place the answer file and rewrite both boot menus.

        Returns:
            md5 of the answer file as written into the menus
        """
        if self.delivery is AnswerFileDelivery.INITRD:
            checksum = self.inject_answer_file(tree, answer_path)
        else:
            checksum = self.copy_answer_file(tree, answer_path)
        self.write_boot_menus(tree, checksum)
        self.write_grub_menu(tree, checksum)
        verify_tree_menus(tree.root, self.layout, checksum)
        return checksum

    def inject_answer_file(self, tree: WorkingTree, answer_path: Path) -> str:
        """Append the answer file to the initrd as a top-level member.

        The stored member name is the path relative to the directory the
        answer file is staged in, which must be its bare filename.
        """
        tree.require(Stage.EXTRACTED, Stage.ANSWER_INJECTED.value)
        name = member_name_for(answer_path, answer_path.parent)
        content = answer_path.read_bytes()
        checksum = answer_checksum(content)
        initrd = tree.path(self.layout.initrd)
        uncompressed = initrd.with_suffix("")

        with writable(tree.path(self.layout.kernel_dir), recursive=True):
            try:
                decompress(initrd, uncompressed)
                archive = append_member(
                    uncompressed.read_bytes(),
                    name,
                    content,
                    mtime=int(answer_path.stat().st_mtime),
                )
                uncompressed.write_bytes(archive)
                compress_in_place(uncompressed, initrd)
            finally:
                uncompressed.unlink(missing_ok=True)

        with tempfile.TemporaryDirectory(dir=tree.root.parent) as scratch:
            verify_initrd_answer(initrd, name, checksum, Path(scratch))
        tree.mark(Stage.ANSWER_INJECTED)
        log.info(f"Added {name} to {self.layout.initrd} (md5 {checksum})")
        return checksum

    def copy_answer_file(self, tree: WorkingTree, answer_path: Path) -> str:
        tree.require(Stage.EXTRACTED, Stage.ANSWER_INJECTED.value)
        target = tree.path(self.layout.answer_file_name)
        with writable(tree.root):
            shutil.copyfile(answer_path, target)
        checksum = answer_checksum(target.read_bytes())
        tree.mark(Stage.ANSWER_INJECTED)
        log.info(f"Copied {answer_path.name} to the image root (md5 {checksum})")
        return checksum

    def command_line(self, checksum: str) -> KernelCommandLine:
        if self.delivery is AnswerFileDelivery.INITRD:
            answer_file = f"/{self.layout.answer_file_name}"
        else:
            answer_file = f"/cdrom/{self.layout.answer_file_name}"
        return KernelCommandLine(
            kernel=f"/{self.layout.kernel}",
            initrd=f"/{self.layout.initrd}",
            answer_file=answer_file,
            answer_checksum=checksum,
        )

    def write_boot_menus(self, tree: WorkingTree, checksum: str) -> None:
        """Replace isolinux.cfg and txt.cfg with a single unattended entry."""
        tree.require(Stage.ANSWER_INJECTED, Stage.BOOT_MENUS_WRITTEN.value)
        cmdline = self.command_line(checksum)
        config = tree.path(self.layout.isolinux_config)
        menu = tree.path(self.layout.isolinux_menu)
        with writable_paths(config, menu):
            config.write_text(render_isolinux_config(cmdline), encoding="utf-8")
            menu.write_text(render_isolinux_menu(cmdline), encoding="utf-8")
        tree.mark(Stage.BOOT_MENUS_WRITTEN)
        log.debug(f"Rewrote {self.layout.isolinux_config} and {self.layout.isolinux_menu}")

    def write_grub_menu(self, tree: WorkingTree, checksum: str) -> None:
        tree.require(Stage.ANSWER_INJECTED, Stage.GRUB_MENU_WRITTEN.value)
        grub = tree.path(self.layout.grub_config)
        with writable(grub):
            grub.write_text(render_grub_config(self.command_line(checksum)), encoding="utf-8")
        tree.mark(Stage.GRUB_MENU_WRITTEN)
        log.debug(f"Rewrote {self.layout.grub_config}")

    def regenerate_manifest(self, tree: WorkingTree) -> int:
        """Rewrite md5sum.txt after every mutation; returns the entry count."""
        for stage in (Stage.ANSWER_INJECTED, Stage.BOOT_MENUS_WRITTEN, Stage.GRUB_MENU_WRITTEN):
            tree.require(stage, Stage.MANIFEST_WRITTEN.value)
        with writable(tree.path(self.layout.manifest)):
            entries = write_manifest(tree.root, self.layout.manifest)
        tree.mark(Stage.MANIFEST_WRITTEN)
        return len(entries)
