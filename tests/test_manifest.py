"""Tests for md5sum.txt regeneration."""

from __future__ import annotations

import hashlib
import os

import pytest

from vbox_cluster.installer.manifest import (
    compute_manifest,
    format_manifest,
    parse_manifest,
    verify_manifest,
    write_manifest,
)


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "tree"
    (root / "install.amd").mkdir(parents=True)
    (root / "install.amd" / "initrd.gz").write_bytes(b"initrd")
    (root / "isolinux").mkdir()
    (root / "isolinux" / "isolinux.cfg").write_text("default unattended\n")
    (root / "README.txt").write_text("hello\n")
    (root / "md5sum.txt").write_text("stale\n")
    return root


class TestComputeManifest:
    def test_covers_every_file_except_itself(self, tree):
        entries = compute_manifest(tree)

        assert set(entries) == {"README.txt", "install.amd/initrd.gz", "isolinux/isolinux.cfg"}
        assert entries["install.amd/initrd.gz"] == hashlib.md5(b"initrd").hexdigest()

    def test_follows_symlinks(self, tree, tmp_path):
        outside = tmp_path / "pool"
        outside.mkdir()
        (outside / "pkg.deb").write_bytes(b"deb")
        os.symlink(outside, tree / "pool")
        os.symlink(tree / "README.txt", tree / "README.link")

        entries = compute_manifest(tree)

        assert entries["pool/pkg.deb"] == hashlib.md5(b"deb").hexdigest()
        assert entries["README.link"] == entries["README.txt"]

    def test_symlink_loop_terminates(self, tree):
        os.symlink(tree, tree / "isolinux" / "loop")

        entries = compute_manifest(tree)

        assert "README.txt" in entries

    def test_directory_alias_listed_under_both_paths(self, tree):
        (tree / "dists" / "bookworm").mkdir(parents=True)
        (tree / "dists" / "bookworm" / "Release").write_bytes(b"Suite: stable\n")
        os.symlink("bookworm", tree / "dists" / "stable")

        entries = compute_manifest(tree)

        assert entries["dists/bookworm/Release"] == hashlib.md5(b"Suite: stable\n").hexdigest()
        assert entries["dists/stable/Release"] == entries["dists/bookworm/Release"]

    def test_sorted_paths(self, tree):
        assert list(compute_manifest(tree)) == sorted(compute_manifest(tree))


class TestManifestFormat:
    def test_line_format(self):
        text = format_manifest({"install.amd/initrd.gz": "abc"})

        assert text == "abc  ./install.amd/initrd.gz\n"

    def test_parse_round_trip(self, tree):
        entries = compute_manifest(tree)

        assert parse_manifest(format_manifest(entries)) == entries

    def test_parse_rejects_malformed_line(self):
        with pytest.raises(ValueError, match="Malformed"):
            parse_manifest("no-separator\n")


class TestWriteManifest:
    """Test manifest regeneration against the current tree."""

    def test_regenerated_manifest_verifies(self, tree):
        write_manifest(tree)

        assert verify_manifest(tree) == []

    def test_detects_mutation_after_regeneration(self, tree):
        write_manifest(tree)
        (tree / "isolinux" / "isolinux.cfg").write_text("changed\n")
        (tree / "new.txt").write_text("new\n")

        assert verify_manifest(tree) == ["new.txt", "isolinux/isolinux.cfg"]
