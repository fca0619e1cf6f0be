"""Custom exceptions for cluster setup.

This module defines a hierarchy of exceptions so every fatal condition
identifies the stage that failed.

Exception Hierarchy:
    ClusterSetupError (base)
        ├── DependencyMissingError
        ├── ConfigurationError
        ├── IntegrityError
        │   ├── DownloadError
        │   ├── ChecksumEntryNotFoundError
        │   └── ChecksumMismatchError
        ├── ImageError
        │   ├── ExtractionError
        │   ├── RamfsArchiveError
        │   ├── AnswerFileChecksumError
        │   ├── PermissionToggleError
        │   ├── PipelineOrderError
        │   └── RepackagingError
        └── ProvisioningError
            ├── VirtualBoxError
            └── NodeConfigurationError

Usage:
    from vbox_cluster.storage.exceptions import ChecksumMismatchError

    if actual != expected:
        raise ChecksumMismatchError(image_path, expected, actual)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable


class ClusterSetupError(Exception):
    """Base exception for all cluster setup failures."""

    stage = "setup"


class DependencyMissingError(ClusterSetupError):
    """One or more required external tools are not installed."""

    stage = "dependencies"

    def __init__(self, tools: Iterable[str]):
        self.tools = list(tools)
        super().__init__(
            f"Required tools not installed: {', '.join(self.tools)}. "
            "Please install them and re-run."
        )


class ConfigurationError(ClusterSetupError):
    """A setting is missing or has an invalid value."""

    stage = "configuration"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid setting {key!r}: {reason}")


class IntegrityError(ClusterSetupError):
    """Base exception for fetch and checksum failures."""

    stage = "fetch"


class DownloadError(IntegrityError):
    """An artifact could not be downloaded."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to download {url}: {reason}")


class ChecksumEntryNotFoundError(IntegrityError):
    """The published checksum list has no entry for the artifact."""

    def __init__(self, name: str, checksum_file: Path):
        self.name = name
        self.checksum_file = checksum_file
        super().__init__(f"No checksum entry for {name} in {checksum_file}")


class ChecksumMismatchError(IntegrityError):
    """Artifact checksum differs from the published value."""

    def __init__(self, path: Path, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum validation failed for {path}: "
            f"expected {expected}, actual {actual}"
        )


class ImageError(ClusterSetupError):
    """Base exception for installer image customization."""

    stage = "image"


class ExtractionError(ImageError):
    """Base image could not be extracted completely."""

    def __init__(self, message: str, image: Path | None = None):
        self.image = image
        super().__init__(message)


class RamfsArchiveError(ImageError):
    """Initial RAM filesystem archive is unreadable or could not be rewritten."""

    def __init__(self, message: str, archive: Path | None = None):
        self.archive = archive
        super().__init__(message)


class AnswerFileChecksumError(ImageError):
    """Answer file stored in the image does not match the boot menu checksum."""

    def __init__(self, location: str, expected: str, actual: str | None):
        self.location = location
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Answer file checksum mismatch in {location}: "
            f"expected {expected}, found {actual or 'nothing'}"
        )


class PermissionToggleError(ImageError):
    """Write permission could not be granted on a tracked path."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot make {path} writable: {reason}")


class PipelineOrderError(ImageError):
    """A pipeline step was invoked before the step it depends on."""

    def __init__(self, step: str, required: str):
        self.step = step
        self.required = required
        super().__init__(f"Cannot run {step!r} before {required!r} has completed")


class RepackagingError(ImageError):
    """Working tree could not be packed into a bootable image."""

    stage = "repackage"

    def __init__(self, message: str, output: Path | None = None):
        self.output = output
        super().__init__(message)


class ProvisioningError(ClusterSetupError):
    """Base exception for hypervisor operations."""

    stage = "provision"


class VirtualBoxError(ProvisioningError):
    """VBoxManage rejected a request."""

    def __init__(self, message: str, code: str | None = None, stderr: str = ""):
        self.code = code
        self.stderr = stderr
        if code:
            message = f"{message} (code {code})"
        super().__init__(message)


class NodeConfigurationError(ProvisioningError):
    """Per-node configuration volume could not be generated."""

    stage = "node-config"

    def __init__(self, node_name: str, reason: str):
        self.node_name = node_name
        self.reason = reason
        super().__init__(f"Failed to build configuration for {node_name}: {reason}")
