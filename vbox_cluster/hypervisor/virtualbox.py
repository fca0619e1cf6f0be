"""Thin VBoxManage wrapper.

Every call goes through ``VBoxManage.run``, which turns a non-zero exit into
a ``VirtualBoxError`` carrying the first ``VBoxManage: error:`` line and the
VirtualBox result code from ``Details: code ...`` when present.
"""

from __future__ import annotations

import re
import subprocess
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path
from typing import Optional, Sequence

from vbox_cluster.logging import LoggerFactory
from vbox_cluster.storage.commands import find_tool
from vbox_cluster.storage.exceptions import DependencyMissingError, VirtualBoxError

log = LoggerFactory.for_vbox()

ERROR_PREFIX = "VBoxManage: error: "
_CODE_PATTERN = re.compile(r"Details: code (\w+)")
_CREATED_INTERFACE_PATTERN = re.compile(r"Interface '([^']+)' was successfully created")

STORAGE_BUS = "sata"
STORAGE_CONTROLLER_CHIPSET = "IntelAhci"


def parse_error(stderr: str) -> VirtualBoxError:
    """Build a VirtualBoxError from VBoxManage stderr."""
    lines = [line for line in stderr.splitlines() if line.startswith(ERROR_PREFIX)]
    if not lines:
        return VirtualBoxError(stderr.strip() or "VBoxManage failed", stderr=stderr)
    message = lines[0][len(ERROR_PREFIX):]
    match = _CODE_PATTERN.search(stderr)
    return VirtualBoxError(message, code=match.group(1) if match else None, stderr=stderr)


def parse_list_output(output: str) -> list[dict[str, str]]:
    """Parse ``VBoxManage list`` output into one dict per blank-line block."""
    result = []
    for block in output.strip().split("\n\n"):
        properties = {}
        for line in block.splitlines():
            if not line.strip():
                continue
            name, _, value = line.partition(":")
            properties[name.strip()] = value.strip()
        if properties:
            result.append(properties)
    return result


class VBoxManage:
    """Runs VBoxManage subcommands."""

    def __init__(self, executable: Optional[str] = None):
        executable = executable or find_tool("VBoxManage")
        if not executable:
            raise DependencyMissingError(["VBoxManage"])
        self.executable = executable

    def run(self, args: Sequence[str]) -> str:
        command = [self.executable, *args]
        log.debug(f"VBoxManage {' '.join(args)}")
        result = subprocess.run(command, capture_output=True, text=True)
        if result.stdout:
            log.bind(tags=["stdout"]).trace(result.stdout.strip())
        if result.returncode == 0:
            return result.stdout.strip()
        error = parse_error(result.stderr)
        log.debug(f"VirtualBox error:\n{result.stderr}")
        raise error

    def list(self, entity: str) -> list[dict[str, str]]:
        output = self.run(["list", entity])
        if not output:
            return []
        return parse_list_output(output)

    # Network

    def create_host_only_network(self, network: IPv4Network, gateway: IPv4Address) -> str:
        """Create a host-only interface and give the host the gateway address.

        Returns:
            Name of the created interface, e.g. "vboxnet0"
        """
        log.info(f"Creating host-only network with CIDR {network}")
        output = self.run(["hostonlyif", "create"])
        match = _CREATED_INTERFACE_PATTERN.search(output)
        if match:
            name = match.group(1)
        else:
            interfaces = self.list("hostonlyifs")
            if not interfaces or not interfaces[-1].get("Name"):
                raise VirtualBoxError("Failed to retrieve the name of the host-only network")
            name = interfaces[-1]["Name"]
        log.info(f"Configuring network {name} with gateway IP {gateway}")
        self.run(
            [
                "hostonlyif",
                "ipconfig",
                name,
                "--ip",
                str(gateway),
                "--netmask",
                str(network.netmask),
            ]
        )
        log.info(f"Host-only network '{name}' created successfully")
        return name

    # Machines

    def create_vm(self, name: str, os_type: str, base_folder: Path) -> None:
        self.run(
            [
                "createvm",
                "--name",
                name,
                "--ostype",
                os_type,
                "--basefolder",
                str(base_folder),
                "--register",
            ]
        )

    def modify_vm(self, name: str, memory_mb: int, cpus: int, host_only_adapter: str) -> None:
        self.run(
            [
                "modifyvm",
                name,
                "--memory",
                str(memory_mb),
                "--cpus",
                str(cpus),
                "--nic1",
                "nat",
                "--nic2",
                "hostonly",
                "--hostonlyadapter2",
                host_only_adapter,
            ]
        )

    def add_storage_controller(self, vm_name: str, controller: str) -> None:
        self.run(
            [
                "storagectl",
                vm_name,
                "--name",
                controller,
                "--add",
                STORAGE_BUS,
                "--controller",
                STORAGE_CONTROLLER_CHIPSET,
            ]
        )

    def create_disk(self, path: Path, size_mb: int) -> None:
        self.run(["createmedium", "disk", "--filename", str(path), "--size", str(size_mb)])

    def attach_medium(
        self, vm_name: str, controller: str, port: int, medium_type: str, medium: Path
    ) -> None:
        """Attach medium to device 0 of the given controller port.

        medium_type is "hdd" or "dvddrive".
        """
        self.run(
            [
                "storageattach",
                vm_name,
                "--storagectl",
                controller,
                "--port",
                str(port),
                "--device",
                "0",
                "--type",
                medium_type,
                "--medium",
                str(medium),
            ]
        )

    def set_boot_order(self, vm_name: str, order: Sequence[str]) -> None:
        args = ["modifyvm", vm_name]
        for slot, device in enumerate(order, start=1):
            args += [f"--boot{slot}", device]
        self.run(args)
