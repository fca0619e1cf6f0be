"""Initial RAM filesystem (initrd) handling.

The Debian installer initrd is a gzip-compressed cpio archive in the "newc"
format. This module decompresses and recompresses it with the gzip tools and
parses/extends the cpio stream directly:

    header (110 bytes, ASCII hex) | name + NUL | pad to 4 | data | pad to 4

Appending a member never touches the bytes of the existing members: the new
record is spliced in front of the first ``TRAILER!!!`` record.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from vbox_cluster.logging import get_logger
from vbox_cluster.storage.commands import find_tool, run_to_file
from vbox_cluster.storage.exceptions import DependencyMissingError, RamfsArchiveError

log = get_logger(source=__name__, tags=["initrd"])

NEWC_MAGIC = b"070701"
NEWC_CRC_MAGIC = b"070702"
HEADER_SIZE = 110
TRAILER_NAME = "TRAILER!!!"
BLOCK_SIZE = 512

_FIELDS = (
    "ino",
    "mode",
    "uid",
    "gid",
    "nlink",
    "mtime",
    "filesize",
    "devmajor",
    "devminor",
    "rdevmajor",
    "rdevminor",
    "namesize",
    "check",
)

REGULAR_FILE_MODE = 0o100644


@dataclass(frozen=True)
class CpioMember:
    name: str
    mode: int
    data: bytes
    ino: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 1
    mtime: int = 0
    devmajor: int = 0
    devminor: int = 0
    rdevmajor: int = 0
    rdevminor: int = 0
    check: int = 0
    offset: int = 0  # Position of the header in the uncompressed stream

    @property
    def is_trailer(self) -> bool:
        return self.name == TRAILER_NAME


def _align4(value: int) -> int:
    return (value + 3) & ~3


def _parse_header(data: bytes, offset: int) -> dict[str, int]:
    header = data[offset : offset + HEADER_SIZE]
    if len(header) < HEADER_SIZE:
        raise RamfsArchiveError(f"Truncated cpio header at offset {offset}")
    magic = header[:6]
    if magic not in (NEWC_MAGIC, NEWC_CRC_MAGIC):
        raise RamfsArchiveError(
            f"Unsupported cpio magic {magic!r} at offset {offset} (expected newc)"
        )
    values = {}
    for index, field_name in enumerate(_FIELDS):
        start = 6 + index * 8
        try:
            values[field_name] = int(header[start : start + 8], 16)
        except ValueError:
            raise RamfsArchiveError(
                f"Corrupt cpio header field {field_name} at offset {offset}"
            ) from None
    return values


def _iter_records(data: bytes, start: int = 0) -> Iterator[tuple[CpioMember, int]]:
    """Yield (member, end offset) for one archive, trailer included."""
    offset = start
    while True:
        fields = _parse_header(data, offset)
        name_start = offset + HEADER_SIZE
        name_end = name_start + fields["namesize"]
        if fields["namesize"] == 0 or name_end > len(data):
            raise RamfsArchiveError(f"Truncated cpio member name at offset {offset}")
        name = data[name_start : name_end - 1].decode("utf-8", errors="surrogateescape")
        data_start = _align4(name_end)
        data_end = data_start + fields["filesize"]
        if data_end > len(data):
            raise RamfsArchiveError(f"Truncated cpio member {name!r}")
        member = CpioMember(
            name=name,
            mode=fields["mode"],
            data=data[data_start:data_end],
            ino=fields["ino"],
            uid=fields["uid"],
            gid=fields["gid"],
            nlink=fields["nlink"],
            mtime=fields["mtime"],
            devmajor=fields["devmajor"],
            devminor=fields["devminor"],
            rdevmajor=fields["rdevmajor"],
            rdevminor=fields["rdevminor"],
            check=fields["check"],
            offset=offset,
        )
        end = _align4(data_end)
        yield member, end
        if member.is_trailer:
            return
        offset = end


def _skip_padding(data: bytes, offset: int) -> int:
    while offset < len(data) and data[offset] == 0:
        offset += 1
    return offset


def read_members(data: bytes) -> list[CpioMember]:
    """Parse every member of a (possibly concatenated) newc stream.

    Trailer records are not returned.
    """
    members: list[CpioMember] = []
    offset = 0
    while True:
        offset = _skip_padding(data, offset)
        if offset >= len(data):
            break
        for member, end in _iter_records(data, offset):
            if not member.is_trailer:
                members.append(member)
            offset = end
    return members


def encode_member(member: CpioMember) -> bytes:
    """Serialize one member as a newc record (header, name, data, padding)."""
    name_bytes = member.name.encode("utf-8", errors="surrogateescape") + b"\0"
    values = {
        "ino": member.ino,
        "mode": member.mode,
        "uid": member.uid,
        "gid": member.gid,
        "nlink": member.nlink,
        "mtime": member.mtime,
        "filesize": len(member.data),
        "devmajor": member.devmajor,
        "devminor": member.devminor,
        "rdevmajor": member.rdevmajor,
        "rdevminor": member.rdevminor,
        "namesize": len(name_bytes),
        "check": member.check,
    }
    header = NEWC_MAGIC + b"".join(
        f"{values[field_name]:08X}".encode("ascii") for field_name in _FIELDS
    )
    record = header + name_bytes
    record += b"\0" * (_align4(len(record)) - len(record))
    record += member.data
    record += b"\0" * (_align4(len(record)) - len(record))
    return record


def trailer_record() -> bytes:
    return encode_member(CpioMember(name=TRAILER_NAME, mode=0, data=b"", nlink=1))


def build_archive(members: list[CpioMember]) -> bytes:
    """Serialize members into a complete newc archive padded to 512 bytes."""
    data = b"".join(encode_member(member) for member in members) + trailer_record()
    return data + b"\0" * (-len(data) % BLOCK_SIZE)


def append_member(
    archive: bytes,
    name: str,
    content: bytes,
    *,
    mode: int = REGULAR_FILE_MODE,
    mtime: Optional[int] = None,
) -> bytes:
    """Return a copy of archive with one regular file appended.

    The new record is inserted before the first trailer; everything in front
    of it is copied unchanged, and any concatenated archives after the
    trailer are kept in order.

    Raises:
        RamfsArchiveError: If the archive is malformed or already has a
            member with the same name
    """
    if not name or name.startswith("/") or name == TRAILER_NAME:
        raise RamfsArchiveError(f"Invalid cpio member name {name!r}")
    max_ino = 0
    trailer_offset = None
    trailer_end = None
    offset = _skip_padding(archive, 0)
    if offset >= len(archive):
        raise RamfsArchiveError("Empty cpio archive")
    for member, end in _iter_records(archive, offset):
        if member.is_trailer:
            trailer_offset, trailer_end = member.offset, end
            break
        if member.name == name:
            raise RamfsArchiveError(f"Archive already contains a member named {name!r}")
        max_ino = max(max_ino, member.ino)
    if trailer_offset is None or trailer_end is None:
        raise RamfsArchiveError("cpio archive has no trailer")

    new_member = CpioMember(
        name=name,
        mode=mode,
        data=content,
        ino=max_ino + 1,
        nlink=1,
        mtime=int(time.time()) if mtime is None else mtime,
    )
    rest = archive[trailer_end:].lstrip(b"\0")
    result = (
        archive[:trailer_offset]
        + encode_member(new_member)
        + archive[trailer_offset:trailer_end]
    )
    result += b"\0" * (-len(result) % BLOCK_SIZE)
    if rest:
        # Concatenated archives stay block aligned.
        result += rest + b"\0" * (-len(rest) % BLOCK_SIZE)
    return result


def member_name_for(answer_path: Path, staging_dir: Path) -> str:
    """Archive path of a staged file, relative to the staging directory.

    The installer only looks for the answer file at the initrd root, so the
    staged file must sit directly in staging_dir and the stored name is its
    bare filename.
    """
    try:
        relative = answer_path.resolve().relative_to(staging_dir.resolve())
    except ValueError:
        raise RamfsArchiveError(
            f"{answer_path} is not inside staging directory {staging_dir}"
        ) from None
    name = relative.as_posix()
    if name != answer_path.name:
        raise RamfsArchiveError(
            f"Staged answer file must be at the staging root, got {name!r}"
        )
    return name


def find_member(members: list[CpioMember], name: str) -> Optional[CpioMember]:
    """Last member with the given name (the one the kernel keeps)."""
    found = None
    for member in members:
        candidate = member.name[2:] if member.name.startswith("./") else member.name
        if candidate == name:
            found = member
    return found


def _gzip_tool() -> str:
    gzip_path = find_tool("pigz", "gzip")
    if not gzip_path:
        raise DependencyMissingError(["pigz or gzip"])
    return gzip_path


def decompress(compressed: Path, destination: Path) -> Path:
    """Decompress a gzip file, leaving the original in place."""
    try:
        run_to_file([_gzip_tool(), "-dc", str(compressed)], destination)
    except RuntimeError as error:
        raise RamfsArchiveError(str(error), compressed) from error
    log.debug(
        f"Decompressed {compressed.name}: "
        f"{compressed.stat().st_size} -> {destination.stat().st_size} bytes"
    )
    return destination


def compress_in_place(uncompressed: Path, compressed: Path) -> Path:
    """Compress uncompressed into compressed, replacing it atomically."""
    partial = compressed.with_name(compressed.name + ".partial")
    try:
        run_to_file([_gzip_tool(), "-9", "-n", "-c", str(uncompressed)], partial)
        os.replace(partial, compressed)
    except (RuntimeError, OSError) as error:
        partial.unlink(missing_ok=True)
        raise RamfsArchiveError(f"Failed to recompress {compressed}: {error}", compressed) from error
    log.debug(f"Recompressed {compressed.name}: {compressed.stat().st_size} bytes")
    return compressed


def read_compressed_members(compressed: Path, scratch_dir: Path) -> list[CpioMember]:
    """Decompress into scratch_dir and parse the archive."""
    scratch = scratch_dir / (compressed.stem + ".cpio")
    try:
        decompress(compressed, scratch)
        return read_members(scratch.read_bytes())
    finally:
        scratch.unlink(missing_ok=True)
