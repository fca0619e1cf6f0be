"""
Pytest configuration and shared fixtures for vbox-cluster tests.

This module provides common fixtures and utilities used across all test modules.
"""

import gzip
import json
import os
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path
from typing import List
from unittest.mock import Mock

import pytest

from vbox_cluster.config.settings import DEFAULT_SETTINGS
from vbox_cluster.domain import ClusterNetwork, NodeRole, RoleResources, build_roster
from vbox_cluster.installer.ramfs import REGULAR_FILE_MODE, CpioMember, build_archive
from vbox_cluster.installer.tree import Stage, WorkingTree


# 37 bytes
ANSWER_BYTES = b"d-i debian-installer/locale string C\n"


# ==============================================================================
# Cluster Fixtures
# ==============================================================================


@pytest.fixture
def settings_values():
    """A deep copy of DEFAULT_SETTINGS that tests may modify."""
    return json.loads(json.dumps(DEFAULT_SETTINGS))


@pytest.fixture
def cluster_network() -> ClusterNetwork:
    return ClusterNetwork(
        cidr=IPv4Network("192.168.60.0/24"),
        gateway=IPv4Address("192.168.60.1"),
    )


@pytest.fixture
def role_resources():
    return {
        NodeRole.CONTROLLER: RoleResources(2048, 2, 10000, ("curl", "nfs-common")),
        NodeRole.WORKER: RoleResources(2048, 1, 10000, ("curl", "nfs-common"), count=2),
        NodeRole.STORAGE: RoleResources(2048, 1, 20000, ("curl", "nfs-kernel-server")),
    }


@pytest.fixture
def roster(role_resources, cluster_network):
    return build_roster(role_resources, cluster_network.cidr, cluster_network.gateway)


# ==============================================================================
# Installer Image Fixtures
# ==============================================================================


@pytest.fixture
def stub_members() -> List[CpioMember]:
    """Four-member stand-in for the installer initrd."""
    return [
        CpioMember(name=".", mode=0o040755, data=b"", ino=1, nlink=2),
        CpioMember(name="init", mode=0o100755, data=b"#!/bin/sh\nexec /sbin/init\n", ino=2),
        CpioMember(name="etc", mode=0o040755, data=b"", ino=3, nlink=2),
        CpioMember(name="etc/hostname", mode=REGULAR_FILE_MODE, data=b"debian\n", ino=4),
    ]


@pytest.fixture
def stub_archive(stub_members) -> bytes:
    return build_archive(stub_members)


@pytest.fixture
def answer_file(tmp_path) -> Path:
    """A 37-byte answer file staged in its own directory."""
    staging = tmp_path / "preseed"
    staging.mkdir()
    path = staging / "preseed.cfg"
    path.write_bytes(ANSWER_BYTES)
    return path


def _lock_tree(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        for name in filenames:
            os.chmod(Path(dirpath) / name, 0o444)
        os.chmod(dirpath, 0o555)


@pytest.fixture
def installer_tree(tmp_path, stub_archive) -> WorkingTree:
    """
    Fixture providing an extracted, read-only installer tree.

    Mirrors the layout of a Debian netinst image as bsdtar leaves it.
    """
    root = tmp_path / "work" / "tree"
    files = {
        "install.amd/vmlinuz": b"kernel",
        "install.amd/initrd.gz": gzip.compress(stub_archive, mtime=0),
        "isolinux/isolinux.cfg": b"path\ninclude menu.cfg\ndefault vesamenu.c32\n",
        "isolinux/txt.cfg": b"label install\n\tkernel /install.amd/vmlinuz\n",
        "isolinux/isolinux.bin": b"\0" * 2048,
        "isolinux/boot.cat": b"\0" * 2048,
        "boot/grub/grub.cfg": b"menuentry 'Install' {\n}\n",
        "boot/grub/efi.img": b"\0" * 1024,
        "README.txt": b"Debian netinst\n",
        "md5sum.txt": b"00000000000000000000000000000000  ./README.txt\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    _lock_tree(root)

    tree = WorkingTree(root=root)
    tree.mark(Stage.EXTRACTED)
    yield tree

    for dirpath, dirnames, filenames in os.walk(root):
        os.chmod(dirpath, 0o755)


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    mock_result = Mock()
    mock_result.returncode = 0
    mock_result.stdout = ""
    mock_result.stderr = ""
    return mocker.patch("subprocess.run", return_value=mock_result)


@pytest.fixture
def capture_subprocess_calls(mocker) -> List[List]:
    """
    Fixture that captures all subprocess.run calls for inspection.

    Returns:
        List that will contain all subprocess command arguments.
    """
    calls = []

    def track_call(cmd, **kwargs):
        calls.append(cmd)
        result = Mock()
        result.returncode = 0
        result.stdout = ""
        result.stderr = ""
        return result

    mocker.patch("subprocess.run", side_effect=track_call)
    return calls


@pytest.fixture
def all_tools_installed(mocker):
    """Make every shutil.which lookup succeed."""
    return mocker.patch("shutil.which", side_effect=lambda name: f"/usr/bin/{name}")
