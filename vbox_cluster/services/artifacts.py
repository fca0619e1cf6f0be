"""Base image download and integrity verification.

The published ``SHA256SUMS`` list is fetched next to the image and the image
is checked against its entry before anything is extracted from it.
"""

from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path

import aiohttp

from vbox_cluster.domain import BaseImage
from vbox_cluster.logging import LoggerFactory
from vbox_cluster.storage.commands import run_checked_command
from vbox_cluster.storage.exceptions import (
    ChecksumEntryNotFoundError,
    ChecksumMismatchError,
    DependencyMissingError,
    DownloadError,
)

log = LoggerFactory.for_fetch()

CHUNK_SIZE = 1024 * 1024


def parse_checksum_list(text: str) -> dict[str, str]:
    """Parse sha256sum output into file name -> digest.

    Handles binary-mode markers (``*name``) and ``./`` prefixes.
    """
    entries = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        digest, name = parts
        name = name.lstrip("*")
        if name.startswith("./"):
            name = name[2:]
        entries[name] = digest.lower()
    return entries


def expected_checksum(image: BaseImage) -> str:
    entries = parse_checksum_list(image.checksum_path.read_text(encoding="utf-8"))
    try:
        return entries[image.name]
    except KeyError:
        raise ChecksumEntryNotFoundError(image.name, image.checksum_path) from None


def sha256_of(path: Path) -> str:
    """SHA256 of a file using sha256sum."""
    sha256_path = shutil.which("sha256sum")
    if not sha256_path:
        raise DependencyMissingError(["sha256sum"])
    output = run_checked_command([sha256_path, str(path)])
    return output.split()[0].lower()


def verify_image(image: BaseImage) -> str:
    """Check the image against its checksum list entry.

    Returns:
        The verified digest

    Raises:
        ChecksumEntryNotFoundError: If the list has no entry for the image
        ChecksumMismatchError: If the digests differ
    """
    expected = expected_checksum(image)
    log.info(f"Validating checksum for {image.name}")
    actual = sha256_of(image.path)
    if actual != expected:
        log.error(f"Checksum validation failed for {image.name}")
        log.error(f"Expected checksum: {expected}")
        log.error(f"Actual checksum: {actual}")
        raise ChecksumMismatchError(image.path, expected, actual)
    log.info("Checksum validated successfully")
    return actual


class ArtifactFetcher:
    """Downloads missing artifacts over HTTP."""

    def __init__(self, timeout_seconds: int = 3600):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def download(self, url: str, destination: Path) -> Path:
        """Stream url into destination via a ``.partial`` file.

        Raises:
            DownloadError: On HTTP or connection failure
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".partial")
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    with partial.open("wb") as handle:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            handle.write(chunk)
        except aiohttp.ClientError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(url, str(e)) from e
        except asyncio.TimeoutError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(url, "timed out") from e
        except DownloadError:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, destination)
        log.info(f"Downloaded {url} -> {destination}")
        return destination

    async def fetch_missing(self, image: BaseImage) -> None:
        if not image.path.exists():
            log.info(f"Image not found. Downloading from {image.url}")
            await self.download(image.url, image.path)
        if not image.checksum_path.exists():
            log.info(f"Checksum file not found. Downloading from {image.checksum_url}")
            await self.download(image.checksum_url, image.checksum_path)


def ensure_base_image(image: BaseImage, timeout_seconds: int = 3600) -> str:
    """Download what is missing, then verify the image.

    Returns:
        The verified SHA256 digest
    """
    asyncio.run(ArtifactFetcher(timeout_seconds).fetch_missing(image))
    return verify_image(image)
