"""Roster construction and address allocation."""

from __future__ import annotations

from ipaddress import IPv4Address, IPv4Network
from typing import Mapping

from vbox_cluster.storage.exceptions import ConfigurationError

from .models import NodeRole, NodeSpec, RoleResources

# Roster order is provisioning order.
ROLE_ORDER = (NodeRole.CONTROLLER, NodeRole.WORKER, NodeRole.STORAGE)

DEFAULT_FIRST_HOST_OFFSET = 100


def node_names(role: NodeRole, count: int, prefix: str = "") -> list[str]:
    """Names for the nodes of one role.

    Example: worker x2 -> ["worker1", "worker2"]; controller x1 -> ["controller"]
    """
    if count == 1:
        names = [role.value]
    else:
        names = [f"{role.value}{index}" for index in range(1, count + 1)]
    if prefix:
        return [f"{prefix}-{name}" for name in names]
    return names


def allocate_address(
    network: IPv4Network, index: int, first_host_offset: int = DEFAULT_FIRST_HOST_OFFSET
) -> IPv4Address:
    """Deterministic address: network base + offset + roster index."""
    address = network.network_address + first_host_offset + index
    if address not in network or address in (
        network.network_address,
        network.broadcast_address,
    ):
        raise ConfigurationError(
            "first_host_offset",
            f"node {index} would get {address}, outside usable range of {network}",
        )
    return address


def build_roster(
    resources: Mapping[NodeRole, RoleResources],
    network: IPv4Network,
    gateway: IPv4Address,
    *,
    prefix: str = "",
    first_host_offset: int = DEFAULT_FIRST_HOST_OFFSET,
) -> tuple[NodeSpec, ...]:
    """Build the immutable, ordered roster of nodes.

    Raises:
        ConfigurationError: If a role is missing or an address collides
            with the gateway or falls outside the network
    """
    roster: list[NodeSpec] = []
    for role in ROLE_ORDER:
        if role not in resources:
            raise ConfigurationError(f"roles.{role.value}", "missing role definition")
        allocation = resources[role]
        for name in node_names(role, allocation.count, prefix):
            address = allocate_address(network, len(roster), first_host_offset)
            if address == gateway:
                raise ConfigurationError(
                    "first_host_offset", f"{name} would reuse gateway address {gateway}"
                )
            roster.append(
                NodeSpec(
                    role=role,
                    name=name,
                    memory_mb=allocation.memory_mb,
                    cpus=allocation.cpus,
                    disk_mb=allocation.disk_mb,
                    address=address,
                    packages=allocation.packages,
                )
            )
    return tuple(roster)
