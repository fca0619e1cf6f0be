"""NoCloud node configuration volumes.

Each node gets its own volume labelled ``cidata`` holding ``user-data``,
``meta-data`` and ``network-config``; cloud-init on the installed system
finds it by label on first boot.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from vbox_cluster.domain import ClusterNetwork, NodeSpec
from vbox_cluster.logging import get_logger
from vbox_cluster.storage.commands import find_tool, run_checked_command
from vbox_cluster.storage.exceptions import DependencyMissingError, NodeConfigurationError

log = get_logger(source=__name__, tags=["cloud-init"])

VOLUME_LABEL = "cidata"
SEED_FILES = ("user-data", "meta-data", "network-config")


@dataclass(frozen=True)
class NodeVolume:
    """Generated configuration volume for one node."""

    node_name: str
    seed_dir: Path
    volume: Path


def user_data(node: NodeSpec, network: ClusterNetwork) -> dict[str, Any]:
    return {
        "hostname": node.name,
        "fqdn": f"{node.name}.{network.domain}",
        "manage_etc_hosts": True,
        "packages": list(node.packages),
    }


def meta_data(node: NodeSpec) -> dict[str, Any]:
    return {"instance-id": f"{node.name}-001", "local-hostname": node.name}


def network_config(node: NodeSpec, network: ClusterNetwork) -> dict[str, Any]:
    """Netplan v2 config with a static address on the host-only NIC.

    The default route stays on the NAT interface; the gateway is the host
    and is reachable on-link.
    """
    return {
        "version": 2,
        "ethernets": {
            network.nat_interface: {"dhcp4": True},
            network.interface: {
                "addresses": [network.interface_address(node.address)],
                "nameservers": {"addresses": list(network.nameservers)},
            },
        },
    }


def render_seed(node: NodeSpec, network: ClusterNetwork) -> dict[str, str]:
    """Seed file name -> YAML document."""
    return {
        "user-data": "#cloud-config\n"
        + yaml.safe_dump(user_data(node, network), default_flow_style=False, sort_keys=False),
        "meta-data": yaml.safe_dump(meta_data(node), default_flow_style=False),
        "network-config": yaml.safe_dump(
            network_config(node, network), default_flow_style=False, sort_keys=False
        ),
    }


def volume_path(output_dir: Path, node: NodeSpec) -> Path:
    return output_dir / f"{node.name}-cloud-init.iso"


def create_node_volume(
    node: NodeSpec, network: ClusterNetwork, output_dir: Path
) -> NodeVolume:
    """Write the seed files for node and pack them into a cidata volume.

    Raises:
        NodeConfigurationError: If the files or the volume cannot be written
    """
    genisoimage = find_tool("genisoimage")
    if not genisoimage:
        raise DependencyMissingError(["genisoimage"])
    seed_dir = output_dir / node.name
    volume = volume_path(output_dir, node)
    try:
        seed_dir.mkdir(parents=True, exist_ok=True)
        for name, content in render_seed(node, network).items():
            (seed_dir / name).write_text(content, encoding="utf-8")
    except OSError as error:
        raise NodeConfigurationError(node.name, str(error)) from error
    log.info(f"Cloud-init files generated for {node.name}")

    volume.unlink(missing_ok=True)
    command = [
        genisoimage,
        "-output",
        str(volume),
        "-volid",
        VOLUME_LABEL,
        "-joliet",
        "-rock",
        *(str(seed_dir / name) for name in SEED_FILES),
    ]
    try:
        run_checked_command(command)
    except RuntimeError as error:
        volume.unlink(missing_ok=True)
        raise NodeConfigurationError(node.name, str(error)) from error
    log.info(f"Cloud-init volume created for {node.name}: {volume}")
    return NodeVolume(node_name=node.name, seed_dir=seed_dir, volume=volume)


def create_node_volumes(
    roster: tuple[NodeSpec, ...], network: ClusterNetwork, output_dir: Path
) -> dict[str, NodeVolume]:
    """One volume per node, keyed by node name, in roster order."""
    return {node.name: create_node_volume(node, network, output_dir) for node in roster}
