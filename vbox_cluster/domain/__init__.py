"""Domain models for cluster provisioning.

This package contains the immutable records passed between the image
pipeline, the node configuration generator and the provisioner.
"""

from __future__ import annotations

from .models import (
    AnswerFileDelivery,
    BaseImage,
    BootParameters,
    BuildResult,
    ClusterNetwork,
    InstallerLayout,
    NodeRole,
    NodeSpec,
    RoleResources,
)
from .roster import ROLE_ORDER, allocate_address, build_roster, node_names


__all__ = [
    "AnswerFileDelivery",
    "BaseImage",
    "BootParameters",
    "BuildResult",
    "ClusterNetwork",
    "InstallerLayout",
    "NodeRole",
    "NodeSpec",
    "ROLE_ORDER",
    "RoleResources",
    "allocate_address",
    "build_roster",
    "node_names",
]
