"""Domain model for cluster provisioning.

Type-safe, immutable records passed explicitly between the pipeline stages
instead of script-level globals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path


# ==============================================================================
# Cluster Roster Domain
# ==============================================================================


class NodeRole(Enum):
    """Role of a node in the fixed cluster topology."""

    CONTROLLER = "controller"
    WORKER = "worker"
    STORAGE = "nfs"  # NFS export node


@dataclass(frozen=True)
class RoleResources:
    """Resource allocation shared by every node of one role."""

    memory_mb: int
    cpus: int
    disk_mb: int
    packages: tuple[str, ...] = ()
    count: int = 1


@dataclass(frozen=True)
class NodeSpec:
    """One virtual machine to provision.

    Drives both node configuration generation and provisioning.
    """

    role: NodeRole
    name: str  # e.g., "worker1" or "lab-worker1" with a prefix
    memory_mb: int
    cpus: int
    disk_mb: int
    address: IPv4Address  # Static address on the cluster network
    packages: tuple[str, ...] = ()

    def format_summary(self) -> str:
        """Format the one-line summary written to the run log.

        Returns: e.g., "- worker1: Memory=2048MB, CPUs=1, Disk=10000MB"
        """
        return (
            f"- {self.name}: Memory={self.memory_mb}MB, "
            f"CPUs={self.cpus}, Disk={self.disk_mb}MB"
        )


# ==============================================================================
# Installer Image Domain
# ==============================================================================


class AnswerFileDelivery(Enum):
    """How the answer file reaches the installer."""

    INITRD = "initrd"  # Embedded in the boot image's initrd
    OPTICAL = "optical"  # Root of the installer optical medium (/cdrom)


@dataclass(frozen=True)
class BaseImage:
    """Upstream installer image and its published checksum list."""

    path: Path
    url: str
    checksum_path: Path
    checksum_url: str

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class InstallerLayout:
    """Relative paths of the files the builder touches inside the image."""

    kernel_dir: str = "install.amd"
    kernel: str = "install.amd/vmlinuz"
    initrd: str = "install.amd/initrd.gz"
    isolinux_config: str = "isolinux/isolinux.cfg"
    isolinux_menu: str = "isolinux/txt.cfg"
    grub_config: str = "boot/grub/grub.cfg"
    manifest: str = "md5sum.txt"
    answer_file_name: str = "preseed.cfg"

    def required_paths(self) -> tuple[str, ...]:
        """Paths that must exist after a complete extraction."""
        return (
            self.kernel,
            self.initrd,
            self.isolinux_config,
            self.isolinux_menu,
            self.grub_config,
            self.manifest,
        )


@dataclass(frozen=True)
class BootParameters:
    """El Torito boot record settings for the repackaged image."""

    boot_image: str = "isolinux/isolinux.bin"
    boot_catalog: str = "isolinux/boot.cat"
    no_emulation: bool = True
    boot_info_table: bool = True
    load_size: int = 4  # 512-byte sectors
    efi_image: str | None = "boot/grub/efi.img"
    volume_label: str = "DEBIAN_PRESEED"


@dataclass(frozen=True)
class BuildResult:
    """Outcome of a successful image build."""

    output_image: Path
    answer_checksum: str
    manifest_entries: int
    delivery: AnswerFileDelivery = AnswerFileDelivery.INITRD
    checked_paths: tuple[str, ...] = field(default_factory=tuple)


# ==============================================================================
# Cluster Network Domain
# ==============================================================================


@dataclass(frozen=True)
class ClusterNetwork:
    """Host-only network shared by every node."""

    cidr: IPv4Network
    gateway: IPv4Address  # Host side of the host-only interface
    nameservers: tuple[str, ...] = ("8.8.8.8",)
    domain: str = "k8s.local"
    interface: str = "enp0s8"  # Guest NIC attached to the host-only adapter
    nat_interface: str = "enp0s3"  # Keeps the default route

    @property
    def netmask(self) -> str:
        return str(self.cidr.netmask)

    def interface_address(self, address: IPv4Address) -> str:
        """Address in CIDR notation, e.g. 192.168.60.101/24."""
        return f"{address}/{self.cidr.prefixlen}"
