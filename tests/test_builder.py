"""Tests for the installer image builder.

Tests cover:
- Answer file injection into the initrd
- Boot menu rewriting with the answer file checksum
- Manifest regeneration after every mutation
- Step ordering enforced by the working tree
- The optical delivery variant
"""

from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import stat

import pytest

from vbox_cluster.domain import AnswerFileDelivery, BuildResult
from vbox_cluster.installer.boot_menu import embedded_checksum
from vbox_cluster.installer.builder import ImageBuilder
from vbox_cluster.installer.manifest import parse_manifest, verify_manifest
from vbox_cluster.installer.ramfs import append_member, find_member, read_members
from vbox_cluster.installer.tree import Stage, WorkingTree
from vbox_cluster.storage.exceptions import AnswerFileChecksumError, PipelineOrderError

requires_gzip = pytest.mark.skipif(
    shutil.which("gzip") is None and shutil.which("pigz") is None,
    reason="gzip is not installed",
)

MENUS = ("isolinux/isolinux.cfg", "isolinux/txt.cfg", "boot/grub/grub.cfg")


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


class TestWorkingTree:
    """Test stage bookkeeping."""

    def test_require_missing_stage(self, tmp_path):
        tree = WorkingTree(root=tmp_path)

        with pytest.raises(PipelineOrderError, match="'extract'"):
            tree.require(Stage.EXTRACTED, "inject-answer")

    def test_mutation_invalidates_manifest(self, tmp_path):
        tree = WorkingTree(root=tmp_path)
        tree.mark(Stage.EXTRACTED)
        tree.mark(Stage.MANIFEST_WRITTEN)

        tree.mark(Stage.BOOT_MENUS_WRITTEN)

        assert not tree.has_completed(Stage.MANIFEST_WRITTEN)


@requires_gzip
class TestInitrdDelivery:
    """Test the full customization pass on a read-only tree."""

    def test_answer_file_appended_to_initrd(self, installer_tree, answer_file, stub_members):
        checksum = ImageBuilder().customize(installer_tree, answer_file)

        initrd = installer_tree.path("install.amd/initrd.gz")
        members = read_members(gzip.decompress(initrd.read_bytes()))
        assert len(members) == len(stub_members) + 1
        assert members[-1].name == "preseed.cfg"
        assert md5(find_member(members, "preseed.cfg").data) == checksum
        assert checksum == md5(answer_file.read_bytes())

    def test_every_menu_carries_the_checksum(self, installer_tree, answer_file):
        checksum = ImageBuilder().customize(installer_tree, answer_file)

        for menu in MENUS:
            text = installer_tree.path(menu).read_text()
            assert embedded_checksum(text) == checksum
            assert "preseed/file=/preseed.cfg" in text

    def test_permissions_restored(self, installer_tree, answer_file):
        ImageBuilder().customize(installer_tree, answer_file)

        for relative in ("install.amd", "isolinux"):
            assert stat.S_IMODE(os.stat(installer_tree.path(relative)).st_mode) == 0o555
        for relative in ("install.amd/initrd.gz", *MENUS):
            assert stat.S_IMODE(os.stat(installer_tree.path(relative)).st_mode) == 0o444

    def test_no_scratch_files_left_in_tree(self, installer_tree, answer_file):
        ImageBuilder().customize(installer_tree, answer_file)

        assert sorted(os.listdir(installer_tree.path("install.amd"))) == [
            "initrd.gz",
            "vmlinuz",
        ]

    def test_manifest_regenerated_after_mutation(self, installer_tree, answer_file):
        builder = ImageBuilder()
        builder.customize(installer_tree, answer_file)

        count = builder.regenerate_manifest(installer_tree)

        assert verify_manifest(installer_tree.root) == []
        entries = parse_manifest(installer_tree.path("md5sum.txt").read_text())
        assert len(entries) == count
        assert "md5sum.txt" not in entries
        initrd = installer_tree.path("install.amd/initrd.gz").read_bytes()
        assert entries["install.amd/initrd.gz"] == md5(initrd)
        assert stat.S_IMODE(os.stat(installer_tree.path("md5sum.txt")).st_mode) == 0o444

    def test_corrupted_recompression_is_detected(self, installer_tree, answer_file, mocker):
        def append_wrong_content(archive, name, content, **kwargs):
            return append_member(archive, name, content + b"# tampered\n", **kwargs)

        mocker.patch(
            "vbox_cluster.installer.builder.append_member", side_effect=append_wrong_content
        )

        with pytest.raises(AnswerFileChecksumError):
            ImageBuilder().inject_answer_file(installer_tree, answer_file)


@requires_gzip
class TestOpticalDelivery:
    def test_answer_file_copied_to_image_root(self, installer_tree, answer_file, stub_archive):
        builder = ImageBuilder(delivery=AnswerFileDelivery.OPTICAL)

        checksum = builder.customize(installer_tree, answer_file)
        builder.regenerate_manifest(installer_tree)

        assert installer_tree.path("preseed.cfg").read_bytes() == answer_file.read_bytes()
        initrd = installer_tree.path("install.amd/initrd.gz").read_bytes()
        assert gzip.decompress(initrd) == stub_archive
        text = installer_tree.path("boot/grub/grub.cfg").read_text()
        assert "preseed/file=/cdrom/preseed.cfg" in text
        assert embedded_checksum(text) == checksum
        assert "preseed.cfg" in parse_manifest(installer_tree.path("md5sum.txt").read_text())


class TestOrdering:
    """Test that out-of-order steps are rejected."""

    def test_menus_before_injection(self, installer_tree):
        with pytest.raises(PipelineOrderError):
            ImageBuilder().write_boot_menus(installer_tree, "abc")

    def test_grub_before_injection(self, installer_tree):
        with pytest.raises(PipelineOrderError):
            ImageBuilder().write_grub_menu(installer_tree, "abc")

    def test_manifest_before_menus(self, installer_tree):
        installer_tree.mark(Stage.ANSWER_INJECTED)

        with pytest.raises(PipelineOrderError, match="write-boot-menus"):
            ImageBuilder().regenerate_manifest(installer_tree)

    def test_injection_before_extraction(self, tmp_path, answer_file):
        with pytest.raises(PipelineOrderError):
            ImageBuilder().inject_answer_file(WorkingTree(root=tmp_path), answer_file)


class TestBuild:
    """Test the stage sequence with the external tools mocked out."""

    def test_build_runs_stages_in_order(self, mocker, installer_tree, answer_file, tmp_path):
        calls = []
        mocker.patch(
            "vbox_cluster.installer.builder.extract_image",
            side_effect=lambda *a: calls.append("extract") or installer_tree,
        )
        mocker.patch.object(
            ImageBuilder,
            "customize",
            side_effect=lambda tree, path: calls.append("customize") or "abc",
        )
        mocker.patch.object(
            ImageBuilder,
            "regenerate_manifest",
            side_effect=lambda tree: calls.append("manifest") or 7,
        )
        mocker.patch(
            "vbox_cluster.installer.builder.repackage_image",
            side_effect=lambda *a: calls.append("repackage"),
        )
        verify = mocker.patch(
            "vbox_cluster.installer.builder.verify_output_image",
            side_effect=lambda *a: calls.append("verify") or ("install.amd/initrd.gz",),
        )
        remove = mocker.patch("vbox_cluster.installer.builder.remove_tree")

        output = tmp_path / "out.iso"
        result = ImageBuilder().build(tmp_path / "base.iso", answer_file, tmp_path / "work", output)

        assert calls == ["extract", "customize", "manifest", "repackage", "verify"]
        assert result == BuildResult(
            output_image=output,
            answer_checksum="abc",
            manifest_entries=7,
            checked_paths=("install.amd/initrd.gz",),
        )
        assert verify.call_args[0][3] == "abc"
        remove.assert_called_once_with(installer_tree.root)

    def test_keep_work_tree_and_skip_verification(self, mocker, installer_tree, answer_file, tmp_path):
        mocker.patch("vbox_cluster.installer.builder.extract_image", return_value=installer_tree)
        mocker.patch.object(ImageBuilder, "customize", return_value="abc")
        mocker.patch.object(ImageBuilder, "regenerate_manifest", return_value=1)
        mocker.patch("vbox_cluster.installer.builder.repackage_image")
        verify = mocker.patch("vbox_cluster.installer.builder.verify_output_image")
        remove = mocker.patch("vbox_cluster.installer.builder.remove_tree")

        builder = ImageBuilder(verify_output=False, keep_work_tree=True)
        result = builder.build(tmp_path / "base.iso", answer_file, tmp_path / "work", tmp_path / "o.iso")

        verify.assert_not_called()
        remove.assert_not_called()
        assert result.checked_paths == ()
