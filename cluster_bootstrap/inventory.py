"""Ansible-style inventory export of planned nodes.

This module writes and reads the node plan as an Ansible inventory file
using ruamel.yaml for preserving comments and formatting.
"""

import shutil
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from cluster_bootstrap.exceptions import BootstrapError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import CONTROL_ROLE, WORKER_ROLE, NodeDescriptor

logger = get_logger(__name__)

GROUPS = {CONTROL_ROLE: "control_plane", WORKER_ROLE: "workers"}


class InventoryError(BootstrapError):
    """Base exception for inventory operations."""

    pass


class InventoryValidationError(InventoryError):
    """Exception raised when inventory validation fails."""

    pass


class InventoryManager:
    """Manager for the exported node inventory."""

    def __init__(self, inventory_path: str | Path):
        """Initialize inventory manager.

        Args:
            inventory_path: Path to the inventory file
        """
        self.inventory_path = Path(inventory_path)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)

    def read(self) -> dict:
        """Read inventory file and return parsed data.

        Raises:
            InventoryError: If file cannot be read or parsed
        """
        logger.debug(f"Reading inventory file: {self.inventory_path}")

        if not self.inventory_path.exists():
            raise InventoryError(
                f"Inventory file not found: {self.inventory_path}",
                f"Expected location: {self.inventory_path.absolute()}\n"
                "Generate one with: cluster-bootstrap plan --inventory PATH",
            )

        try:
            with open(self.inventory_path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read inventory file: {e}", exc_info=True)
            raise InventoryError(
                f"Failed to read inventory file: {e}",
                f"The file may have invalid YAML syntax. Check {self.inventory_path.absolute()}",
            )

        if data is None:
            raise InventoryError("Inventory file is empty")
        return data

    def write(self, data: dict) -> None:
        """Write inventory data to file, keeping a backup of the previous one.

        Raises:
            InventoryError: If file cannot be written
        """
        logger.debug(f"Writing inventory file: {self.inventory_path}")

        try:
            self.inventory_path.parent.mkdir(parents=True, exist_ok=True)

            if self.inventory_path.exists():
                backup_path = self.inventory_path.with_suffix(".yml.backup")
                logger.debug(f"Creating backup at: {backup_path}")
                shutil.copy2(self.inventory_path, backup_path)

            with open(self.inventory_path, "w") as f:
                self.yaml.dump(data, f)

            logger.info(f"Successfully wrote inventory file: {self.inventory_path}")

        except PermissionError as e:
            raise InventoryError(
                f"Permission denied writing inventory file: {self.inventory_path}",
                f"Check file permissions: {e}",
            )
        except OSError as e:
            raise InventoryError(f"Failed to write inventory file: {e}")

    def validate(self, data: dict) -> None:
        """Validate inventory structure.

        Raises:
            InventoryValidationError: If validation fails
        """
        if not isinstance(data, dict) or "all" not in data:
            raise InventoryValidationError("Inventory must have 'all' group")

        children = data["all"].get("children") if isinstance(data["all"], dict) else None
        if not isinstance(children, dict):
            raise InventoryValidationError("'all' group must have 'children'")

        for group in GROUPS.values():
            if group not in children:
                raise InventoryValidationError(f"Missing required group: {group}")
            hosts = (children[group] or {}).get("hosts") or {}
            if not isinstance(hosts, dict):
                raise InventoryValidationError(f"'hosts' in group '{group}' must be a dictionary")

    def export_nodes(self, spec: ClusterSpec, nodes: list[NodeDescriptor]) -> None:
        """Write ``nodes`` with cluster-wide variables to the inventory file."""
        data = CommentedMap()
        data["all"] = CommentedMap()
        data["all"]["vars"] = CommentedMap(
            [
                ("cluster_name", spec.cluster_name),
                ("kubernetes_version", spec.software.kubernetes),
                ("crio_version", spec.software.crio),
                ("pod_cidr", spec.network.pod_cidr),
                ("service_cidr", spec.network.service_cidr),
            ]
        )
        children = CommentedMap()
        for group in GROUPS.values():
            children[group] = CommentedMap([("hosts", CommentedMap())])
        for node in nodes:
            children[GROUPS[node.role]]["hosts"][node.hostname] = node.to_inventory_dict()
        data["all"]["children"] = children

        self.write(data)

    def get_nodes(self) -> list[NodeDescriptor]:
        """Read descriptors back from the inventory, control node first."""
        data = self.read()
        self.validate(data)

        nodes = []
        children = data["all"]["children"]
        for role, group in GROUPS.items():
            hosts = (children[group] or {}).get("hosts") or {}
            for hostname, host_data in hosts.items():
                try:
                    nodes.append(
                        NodeDescriptor.from_inventory_dict(hostname, {**host_data, "role": role})
                    )
                except Exception as e:
                    raise InventoryValidationError(
                        f"Host '{hostname}' in group '{group}' validation failed: {e}"
                    )
        return nodes
