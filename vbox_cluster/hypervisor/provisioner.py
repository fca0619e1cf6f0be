"""Cluster provisioning.

Nodes are created one at a time in roster order. The first failure aborts
the run; machines created before it are left registered (no rollback).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from vbox_cluster.domain import ClusterNetwork, NodeSpec
from vbox_cluster.logging import LoggerFactory, operation_context
from vbox_cluster.storage.exceptions import NodeConfigurationError

from .virtualbox import VBoxManage

DISK_PORT = 0
IMAGE_PORT = 1
CONFIG_VOLUME_PORT = 2
BOOT_ORDER = ("dvd", "disk", "none", "none")


@dataclass(frozen=True)
class ProvisionedNode:
    node: NodeSpec
    disk: Path


class ClusterProvisioner:
    """Creates the host-only network and one VM per roster entry."""

    def __init__(
        self,
        vbox: VBoxManage,
        base_folder: Path,
        *,
        os_type: str = "Debian_64",
        storage_controller: str = "SATA Controller",
    ):
        self.vbox = vbox
        self.base_folder = base_folder
        self.os_type = os_type
        self.storage_controller = storage_controller

    def provision(
        self,
        roster: tuple[NodeSpec, ...],
        network: ClusterNetwork,
        install_image: Path,
        config_volumes: Mapping[str, Path],
    ) -> list[ProvisionedNode]:
        """Provision every node; the network is created before any node."""
        missing = [node.name for node in roster if node.name not in config_volumes]
        if missing:
            raise NodeConfigurationError(", ".join(missing), "no configuration volume")
        with operation_context("create-network", cidr=str(network.cidr)):
            adapter = self.vbox.create_host_only_network(network.cidr, network.gateway)
        provisioned = []
        for node in roster:
            with operation_context("provision-node", vm_name=node.name):
                provisioned.append(
                    self.provision_node(node, adapter, install_image, config_volumes[node.name])
                )
        return provisioned

    def provision_node(
        self, node: NodeSpec, adapter: str, install_image: Path, config_volume: Path
    ) -> ProvisionedNode:
        log = LoggerFactory.for_vbox(node.name)
        vm_dir = self.base_folder / node.name
        vm_dir.mkdir(parents=True, exist_ok=True)
        disk = vm_dir / f"{node.name}.vdi"

        log.info(
            f"Creating VM: {node.name} with {node.memory_mb} MB RAM, "
            f"{node.cpus} CPUs, {node.disk_mb} MB disk"
        )
        self.vbox.create_vm(node.name, self.os_type, self.base_folder)
        self.vbox.modify_vm(node.name, node.memory_mb, node.cpus, adapter)
        self.vbox.add_storage_controller(node.name, self.storage_controller)
        self.vbox.create_disk(disk, node.disk_mb)
        self.vbox.attach_medium(node.name, self.storage_controller, DISK_PORT, "hdd", disk)
        self.vbox.attach_medium(
            node.name, self.storage_controller, IMAGE_PORT, "dvddrive", install_image
        )
        self.vbox.attach_medium(
            node.name, self.storage_controller, CONFIG_VOLUME_PORT, "dvddrive", config_volume
        )
        self.vbox.set_boot_order(node.name, BOOT_ORDER)
        log.info(f"VM {node.name} ready at {node.address}")
        return ProvisionedNode(node=node, disk=disk)
