"""Settings storage and resolution into an immutable run configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network, ip_address
from pathlib import Path
from typing import Any, Mapping, Optional

from vbox_cluster.domain import (
    AnswerFileDelivery,
    BaseImage,
    BootParameters,
    ClusterNetwork,
    NodeRole,
    NodeSpec,
    RoleResources,
    build_roster,
)
from vbox_cluster.installer.answer_file import AnswerFileParameters
from vbox_cluster.installer.repackage import PACKAGERS
from vbox_cluster.storage.exceptions import ConfigurationError


SETTINGS_PATH = Path(
    os.environ.get(
        "VBOX_CLUSTER_SETTINGS_PATH",
        Path.home() / ".config" / "vbox-cluster" / "settings.json",
    )
)
PASSWORD_ENV = "VBOX_CLUSTER_PASSWORD"

DEBIAN_CD_URL = "https://cdimage.debian.org/debian-cd/current/amd64/iso-cd"
DEFAULT_ISO_NAME = "debian-12.10.0-amd64-netinst.iso"

DEFAULT_SETTINGS: dict[str, Any] = {
    # Network
    "network_cidr": "192.168.60.0/24",
    "gateway": "192.168.60.1",
    "first_host_offset": 100,
    "nameservers": ["8.8.8.8"],
    "domain": "k8s.local",
    "guest_interface": "enp0s8",
    "guest_nat_interface": "enp0s3",
    # Machines
    "vm_base_dir": "/vms",
    "vm_prefix": "",
    "os_type": "Debian_64",
    "storage_controller": "SATA Controller",
    "roles": {
        "controller": {"memory_mb": 2048, "cpus": 2, "disk_mb": 10000, "count": 1,
                       "packages": ["curl", "nfs-common"]},
        "worker": {"memory_mb": 2048, "cpus": 1, "disk_mb": 10000, "count": 2,
                   "packages": ["curl", "nfs-common"]},
        "nfs": {"memory_mb": 2048, "cpus": 1, "disk_mb": 20000, "count": 1,
                "packages": ["curl", "nfs-kernel-server"]},
    },
    # Base image
    "iso_dir": ".",
    "iso_name": DEFAULT_ISO_NAME,
    "iso_url": f"{DEBIAN_CD_URL}/{DEFAULT_ISO_NAME}",
    "checksum_file": "SHA256SUMS",
    "checksum_url": f"{DEBIAN_CD_URL}/SHA256SUMS",
    "download_timeout_seconds": 3600,
    # Image build
    "work_dir": "build",
    "output_image": "debian-preseed.iso",
    "packager": "genisoimage",
    "volume_label": "DEBIAN_PRESEED",
    "answer_file_delivery": "initrd",
    "verify_output_image": True,
    "keep_work_tree": False,
    # Answer file
    "preseed_dir": "preseed",
    "username": "username",
    "full_name": None,
    "password_file": None,
    "password_crypted": None,
    "locale": "en_US.UTF-8",
    "keymap": "us",
    "timezone": "UTC",
    "target_disk": "/dev/sda",
    "partitioning": "regular",
    "install_packages": ["openssh-server", "cloud-init"],
    "reboot_on_finish": True,
    "mirror_hostname": "deb.debian.org",
    "mirror_directory": "/debian",
    # Node configuration and output
    "cloudinit_dir": "cloudinit",
    "log_file": "vm_setup.log",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None


settings_store = SettingsStore()


def load_settings(path: Optional[Path] = None) -> dict[str, Any]:
    """Merge the JSON settings file over DEFAULT_SETTINGS.

    A missing file means defaults. An unreadable or malformed file raises
    ConfigurationError rather than silently provisioning with defaults.
    """
    path = path or SETTINGS_PATH
    settings_store.values = json.loads(json.dumps(DEFAULT_SETTINGS))
    settings_store.path = path
    if not path.exists():
        return settings_store.values
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ConfigurationError(str(path), f"cannot read settings: {error}") from error
    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "settings file must hold a JSON object")
    unknown = sorted(set(data) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ConfigurationError(", ".join(unknown), "unknown setting")
    settings_store.values.update(data)
    return settings_store.values


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


@dataclass(frozen=True)
class ClusterConfig:
    """Fully resolved configuration for one run. All paths are absolute."""

    network: ClusterNetwork
    roster: tuple[NodeSpec, ...]
    base_image: BaseImage
    answer: AnswerFileParameters
    answer_path: Path
    delivery: AnswerFileDelivery
    boot: BootParameters
    packager: str
    work_dir: Path
    output_image: Path
    cloudinit_dir: Path
    vm_base_dir: Path
    log_file: Path
    os_type: str
    storage_controller: str
    verify_output_image: bool = True
    keep_work_tree: bool = False
    download_timeout_seconds: int = 3600


def _resolve(value: str, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()


def resolve_password(values: Mapping[str, Any], base_dir: Path) -> Optional[str]:
    """Password from the environment, else from password_file.

    Returns None when neither is set; a crypted password may still be
    configured.
    """
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password
    password_file = values.get("password_file")
    if not password_file:
        return None
    path = _resolve(password_file, base_dir)
    try:
        password = path.read_text(encoding="utf-8").strip()
    except OSError as error:
        raise ConfigurationError("password_file", f"cannot read {path}: {error}") from error
    if not password:
        raise ConfigurationError("password_file", f"{path} is empty")
    return password


def _role_resources(raw_roles: Any) -> dict[NodeRole, RoleResources]:
    if not isinstance(raw_roles, dict):
        raise ConfigurationError("roles", "must be an object keyed by role")
    resources = {}
    for role in NodeRole:
        raw = raw_roles.get(role.value)
        if raw is None:
            raise ConfigurationError(f"roles.{role.value}", "missing role definition")
        try:
            allocation = RoleResources(
                memory_mb=int(raw["memory_mb"]),
                cpus=int(raw["cpus"]),
                disk_mb=int(raw["disk_mb"]),
                packages=tuple(raw.get("packages", ())),
                count=int(raw.get("count", 1)),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise ConfigurationError(f"roles.{role.value}", f"invalid value: {error}") from error
        if min(allocation.memory_mb, allocation.cpus, allocation.disk_mb, allocation.count) < 1:
            raise ConfigurationError(f"roles.{role.value}", "values must be positive")
        resources[role] = allocation
    return resources


def _integer(values: Mapping[str, Any], key: str, minimum: int) -> int:
    value = values[key]
    if isinstance(value, bool):
        raise ConfigurationError(key, f"expected an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(key, f"expected an integer, got {value!r}") from error
    if number < minimum:
        raise ConfigurationError(key, f"must be at least {minimum}")
    return number


def _nameservers(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("nameservers", "must be a non-empty list of addresses")
    for server in raw:
        try:
            ip_address(server)
        except ValueError as error:
            raise ConfigurationError("nameservers", str(error)) from error
    return tuple(raw)


def _network(values: Mapping[str, Any]) -> ClusterNetwork:
    try:
        cidr = IPv4Network(values["network_cidr"], strict=True)
    except ValueError as error:
        raise ConfigurationError("network_cidr", str(error)) from error
    try:
        gateway = IPv4Address(values["gateway"])
    except ValueError as error:
        raise ConfigurationError("gateway", str(error)) from error
    if gateway not in cidr or gateway in (cidr.network_address, cidr.broadcast_address):
        raise ConfigurationError("gateway", f"{gateway} is not a host address in {cidr}")
    return ClusterNetwork(
        cidr=cidr,
        gateway=gateway,
        nameservers=_nameservers(values["nameservers"]),
        domain=values["domain"],
        interface=values["guest_interface"],
        nat_interface=values["guest_nat_interface"],
    )


def build_config(
    values: Optional[Mapping[str, Any]] = None, base_dir: Optional[Path] = None
) -> ClusterConfig:
    """Validate settings and resolve them into a ClusterConfig.

    Relative paths are resolved against base_dir (the working directory by
    default).

    Raises:
        ConfigurationError: On any invalid or missing value
    """
    values = values if values is not None else settings_store.values
    base_dir = base_dir or Path.cwd()

    network = _network(values)
    roster = build_roster(
        _role_resources(values["roles"]),
        network.cidr,
        network.gateway,
        prefix=values["vm_prefix"],
        first_host_offset=_integer(values, "first_host_offset", minimum=1),
    )

    try:
        delivery = AnswerFileDelivery(values["answer_file_delivery"])
    except ValueError:
        raise ConfigurationError(
            "answer_file_delivery",
            f"expected one of {', '.join(d.value for d in AnswerFileDelivery)}",
        ) from None
    if values["packager"] not in PACKAGERS:
        raise ConfigurationError("packager", f"expected one of {', '.join(PACKAGERS)}")

    try:
        answer = AnswerFileParameters(
            username=values["username"],
            password=resolve_password(values, base_dir),
            password_crypted=values["password_crypted"],
            full_name=values["full_name"],
            locale=values["locale"],
            keymap=values["keymap"],
            timezone=values["timezone"],
            target_disk=values["target_disk"],
            partitioning=values["partitioning"],
            packages=tuple(values["install_packages"]),
            reboot_on_finish=bool(values["reboot_on_finish"]),
            mirror_hostname=values["mirror_hostname"],
            mirror_directory=values["mirror_directory"],
        )
    except ValueError as error:
        raise ConfigurationError(
            "password", f"{error}; set {PASSWORD_ENV}, password_file or password_crypted"
        ) from error

    iso_dir = _resolve(values["iso_dir"], base_dir)
    base_image = BaseImage(
        path=iso_dir / values["iso_name"],
        url=values["iso_url"],
        checksum_path=iso_dir / values["checksum_file"],
        checksum_url=values["checksum_url"],
    )

    return ClusterConfig(
        network=network,
        roster=roster,
        base_image=base_image,
        answer=answer,
        answer_path=_resolve(values["preseed_dir"], base_dir) / "preseed.cfg",
        delivery=delivery,
        boot=BootParameters(volume_label=values["volume_label"]),
        packager=values["packager"],
        work_dir=_resolve(values["work_dir"], base_dir),
        output_image=_resolve(values["output_image"], base_dir),
        cloudinit_dir=_resolve(values["cloudinit_dir"], base_dir),
        vm_base_dir=_resolve(values["vm_base_dir"], base_dir),
        log_file=_resolve(values["log_file"], base_dir),
        os_type=values["os_type"],
        storage_controller=values["storage_controller"],
        verify_output_image=bool(values["verify_output_image"]),
        keep_work_tree=bool(values["keep_work_tree"]),
        download_timeout_seconds=_integer(values, "download_timeout_seconds", minimum=1),
    )
