"""Tests for the initrd cpio codec.

Tests cover:
- Parsing and serializing newc archives
- Appending the answer file as a top-level member
- Member path derivation from the staging directory
- gzip decompression and atomic recompression
"""

from __future__ import annotations

import gzip
import hashlib
import shutil

import pytest

from vbox_cluster.installer import ramfs
from vbox_cluster.installer.ramfs import (
    BLOCK_SIZE,
    CpioMember,
    append_member,
    build_archive,
    find_member,
    member_name_for,
    read_members,
)
from vbox_cluster.storage.exceptions import DependencyMissingError, RamfsArchiveError

requires_gzip = pytest.mark.skipif(
    shutil.which("gzip") is None and shutil.which("pigz") is None,
    reason="gzip is not installed",
)


class TestReadMembers:
    """Test newc parsing."""

    def test_reads_all_members_without_trailer(self, stub_archive, stub_members):
        members = read_members(stub_archive)

        assert [m.name for m in members] == [m.name for m in stub_members]
        assert members[1].data == stub_members[1].data
        assert members[3].mode == stub_members[3].mode

    def test_archive_is_block_aligned(self, stub_archive):
        assert len(stub_archive) % BLOCK_SIZE == 0

    def test_reads_concatenated_archives(self, stub_archive):
        second = build_archive([CpioMember(name="extra", mode=0o100644, data=b"x")])

        members = read_members(stub_archive + second)

        assert [m.name for m in members][-1] == "extra"
        assert len(members) == 5

    def test_rejects_non_newc_magic(self):
        with pytest.raises(RamfsArchiveError, match="newc"):
            read_members(b"070707" + b"0" * 200)

    def test_rejects_truncated_member(self, stub_archive):
        with pytest.raises(RamfsArchiveError):
            read_members(stub_archive[:130])


class TestAppendMember:
    """Test adding the answer file to an existing archive."""

    def test_append_answer_file_to_four_member_archive(self, stub_archive):
        """A 37-byte answer file becomes the fifth, top-level member."""
        content = b"d-i debian-installer/locale string C\n"
        assert len(content) == 37

        result = append_member(stub_archive, "preseed.cfg", content)
        members = read_members(result)

        assert len(members) == 5
        assert members[-1].name == "preseed.cfg"
        assert hashlib.md5(members[-1].data).hexdigest() == hashlib.md5(content).hexdigest()

    def test_existing_members_are_unchanged(self, stub_archive, stub_members):
        result = append_member(stub_archive, "preseed.cfg", b"data")

        before = read_members(stub_archive)
        after = read_members(result)
        assert after[:4] == before
        trailer_offset = result.index(b"TRAILER!!!") - ramfs.HEADER_SIZE
        assert result[: after[-1].offset] == stub_archive[: after[-1].offset]
        assert trailer_offset > after[-1].offset

    def test_new_member_gets_unique_inode(self, stub_archive):
        members = read_members(append_member(stub_archive, "preseed.cfg", b"x"))

        assert members[-1].ino == 5
        assert len({m.ino for m in members}) == 5

    def test_uses_given_mtime(self, stub_archive):
        members = read_members(append_member(stub_archive, "preseed.cfg", b"x", mtime=1234))

        assert members[-1].mtime == 1234
        assert members[-1].mode == ramfs.REGULAR_FILE_MODE

    def test_rejects_duplicate_name(self, stub_archive):
        with pytest.raises(RamfsArchiveError, match="already contains"):
            append_member(stub_archive, "init", b"x")

    @pytest.mark.parametrize("name", ["", "/preseed.cfg", "TRAILER!!!"])
    def test_rejects_invalid_names(self, stub_archive, name):
        with pytest.raises(RamfsArchiveError, match="Invalid"):
            append_member(stub_archive, name, b"x")

    def test_rejects_archive_without_trailer(self, stub_members):
        data = b"".join(ramfs.encode_member(m) for m in stub_members)

        with pytest.raises(RamfsArchiveError):
            append_member(data, "preseed.cfg", b"x")

    def test_rejects_empty_archive(self):
        with pytest.raises(RamfsArchiveError, match="Empty"):
            append_member(b"\0" * 512, "preseed.cfg", b"x")

    def test_keeps_concatenated_archives(self, stub_archive):
        second = build_archive([CpioMember(name="extra", mode=0o100644, data=b"x")])

        result = append_member(stub_archive + second, "preseed.cfg", b"answer")
        names = [m.name for m in read_members(result)]

        assert names.index("preseed.cfg") == 4
        assert names[-1] == "extra"
        assert len(result) % BLOCK_SIZE == 0


class TestMemberNameFor:
    """Test archive path derivation."""

    def test_bare_filename_at_staging_root(self, answer_file):
        assert member_name_for(answer_file, answer_file.parent) == "preseed.cfg"

    def test_rejects_nested_file(self, tmp_path):
        nested = tmp_path / "sub" / "preseed.cfg"
        nested.parent.mkdir()
        nested.write_text("x")

        with pytest.raises(RamfsArchiveError, match="staging root"):
            member_name_for(nested, tmp_path)

    def test_rejects_file_outside_staging_dir(self, tmp_path, answer_file):
        other = tmp_path / "other"
        other.mkdir()

        with pytest.raises(RamfsArchiveError, match="not inside"):
            member_name_for(answer_file, other)


class TestFindMember:
    def test_matches_dot_slash_prefix(self):
        members = [CpioMember(name="./preseed.cfg", mode=0o100644, data=b"a")]

        assert find_member(members, "preseed.cfg") is members[0]

    def test_returns_last_match(self):
        members = [
            CpioMember(name="preseed.cfg", mode=0o100644, data=b"old"),
            CpioMember(name="preseed.cfg", mode=0o100644, data=b"new"),
        ]

        assert find_member(members, "preseed.cfg").data == b"new"

    def test_missing_member(self, stub_members):
        assert find_member(stub_members, "preseed.cfg") is None


class TestCompression:
    """Test gzip round trips through the external tools."""

    def test_missing_gzip_raises(self, mocker, tmp_path):
        mocker.patch("vbox_cluster.installer.ramfs.find_tool", return_value=None)

        with pytest.raises(DependencyMissingError):
            ramfs.decompress(tmp_path / "initrd.gz", tmp_path / "initrd")

    def test_decompress_failure_is_wrapped(self, mocker, tmp_path):
        mocker.patch("vbox_cluster.installer.ramfs.find_tool", return_value="/bin/gzip")
        mocker.patch(
            "vbox_cluster.installer.ramfs.run_to_file",
            side_effect=RuntimeError("Command failed (gzip): not in gzip format"),
        )

        with pytest.raises(RamfsArchiveError, match="not in gzip format"):
            ramfs.decompress(tmp_path / "initrd.gz", tmp_path / "initrd")

    def test_recompress_failure_keeps_original(self, mocker, tmp_path):
        compressed = tmp_path / "initrd.gz"
        compressed.write_bytes(b"original")
        mocker.patch("vbox_cluster.installer.ramfs.find_tool", return_value="/bin/gzip")
        mocker.patch(
            "vbox_cluster.installer.ramfs.run_to_file",
            side_effect=RuntimeError("Command failed (gzip): disk full"),
        )

        with pytest.raises(RamfsArchiveError, match="recompress"):
            ramfs.compress_in_place(tmp_path / "initrd", compressed)

        assert compressed.read_bytes() == b"original"
        assert not (tmp_path / "initrd.gz.partial").exists()

    @requires_gzip
    def test_round_trip_through_gzip(self, tmp_path, stub_archive):
        compressed = tmp_path / "initrd.gz"
        compressed.write_bytes(gzip.compress(stub_archive))
        uncompressed = tmp_path / "initrd"

        ramfs.decompress(compressed, uncompressed)
        uncompressed.write_bytes(append_member(uncompressed.read_bytes(), "preseed.cfg", b"a"))
        ramfs.compress_in_place(uncompressed, compressed)

        members = ramfs.read_compressed_members(compressed, tmp_path)
        assert members[-1].name == "preseed.cfg"
        assert gzip.decompress(compressed.read_bytes()) == uncompressed.read_bytes()
        assert not (tmp_path / "initrd.cpio").exists()
