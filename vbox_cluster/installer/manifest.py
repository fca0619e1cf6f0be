"""md5sum.txt regeneration.

The installer's integrity check reads ``md5sum.txt`` at the image root, one
``<md5>  ./<relative path>`` line per file, excluding the manifest itself.
The walk follows symbolic links, like ``find -follow -type f``.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Iterator

from vbox_cluster.logging import get_logger

log = get_logger(source=__name__, tags=["manifest"])

CHUNK_SIZE = 1024 * 1024


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _collect_files(
    root: Path,
    directory: Path,
    ancestors: frozenset[tuple[int, int]],
    found: list[str],
) -> None:
    stat_result = os.stat(directory)
    key = (stat_result.st_dev, stat_result.st_ino)
    if key in ancestors:
        # Symlink back to a directory on the current path
        return
    ancestors = ancestors | {key}
    with os.scandir(directory) as entries:
        children = sorted(entries, key=lambda entry: entry.name)
    for entry in children:
        path = Path(entry.path)
        if entry.is_dir():
            _collect_files(root, path, ancestors, found)
        elif entry.is_file():
            found.append(path.relative_to(root).as_posix())


def iter_tree_files(root: Path, exclude: str) -> Iterator[str]:
    """Relative POSIX paths of every regular file under root, sorted.

    A directory reached through several symlinks is listed under every
    alias; only links that point back to one of their own ancestors are
    pruned.
    """
    found: list[str] = []
    _collect_files(root, root, frozenset(), found)
    for relative in sorted(found):
        if relative != exclude:
            yield relative


def compute_manifest(root: Path, manifest_name: str = "md5sum.txt") -> dict[str, str]:
    """Map of relative path -> md5 for the current tree state."""
    return {
        relative: file_md5(root / relative)
        for relative in iter_tree_files(root, manifest_name)
    }


def format_manifest(entries: dict[str, str]) -> str:
    return "".join(f"{checksum}  ./{relative}\n" for relative, checksum in entries.items())


def parse_manifest(text: str) -> dict[str, str]:
    """Parse md5sum output back into relative path -> md5."""
    entries = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        checksum, _, path = line.partition("  ")
        if not path:
            raise ValueError(f"Malformed manifest line: {line!r}")
        if path.startswith("./"):
            path = path[2:]
        entries[path] = checksum.lower()
    return entries


def write_manifest(root: Path, manifest_name: str = "md5sum.txt") -> dict[str, str]:
    """Regenerate the manifest from the tree and write it.

    The caller is responsible for making the manifest file writable.
    """
    entries = compute_manifest(root, manifest_name)
    (root / manifest_name).write_text(format_manifest(entries), encoding="utf-8")
    log.info(f"Regenerated {manifest_name} with {len(entries)} entries")
    return entries


def verify_manifest(root: Path, manifest_name: str = "md5sum.txt") -> list[str]:
    """Relative paths whose manifest entry is missing, extra or wrong."""
    recorded = parse_manifest((root / manifest_name).read_text(encoding="utf-8"))
    actual = compute_manifest(root, manifest_name)
    problems = sorted(set(recorded) ^ set(actual))
    problems += sorted(
        path for path in set(recorded) & set(actual) if recorded[path] != actual[path]
    )
    return problems
