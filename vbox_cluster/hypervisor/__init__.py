"""VirtualBox access and cluster provisioning."""

from .provisioner import BOOT_ORDER, ClusterProvisioner, ProvisionedNode
from .virtualbox import VBoxManage


__all__ = ["BOOT_ORDER", "ClusterProvisioner", "ProvisionedNode", "VBoxManage"]
