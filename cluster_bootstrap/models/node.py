"""Data models for planned cluster nodes."""

import re
from ipaddress import IPv4Address

from pydantic import BaseModel, ConfigDict, field_validator

CONTROL_ROLE = "control"
WORKER_ROLE = "worker"

CONTROL_HOSTNAME = "controlplane"
WORKER_HOSTNAME_TEMPLATE = "worker{index}"

PUBLIC_IP_OFFSET = 10
PRIVATE_IP_OFFSET = 20


def worker_public_ip(prefix: str, index: int) -> str:
    """Public address of the 1-indexed worker ``index``."""
    return f"{prefix}.{index + PUBLIC_IP_OFFSET}"


def private_ip(prefix: str, index: int) -> str:
    """Private address of node ``index`` (0 is the control node)."""
    return f"{prefix}.{index + PRIVATE_IP_OFFSET}"


class NodeDescriptor(BaseModel):
    """One VM of the cluster. Immutable once planned."""

    model_config = ConfigDict(frozen=True)

    hostname: str
    role: str  # control or worker
    index: int  # 0 for the control node, 1-based for workers
    public_ip: IPv4Address
    private_ip: IPv4Address
    cpu: int
    memory: int  # MB
    disk_size: int  # MB

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Validate hostname follows DNS naming conventions."""
        if not v:
            raise ValueError("hostname cannot be empty")
        if len(v) > 253:
            raise ValueError("hostname cannot exceed 253 characters")
        # RFC 1123 hostname validation
        hostname_pattern = re.compile(
            r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$", re.IGNORECASE
        )
        if not hostname_pattern.match(v):
            raise ValueError(
                f"hostname '{v}' must contain only alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either control or worker."""
        allowed_roles = [CONTROL_ROLE, WORKER_ROLE]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @property
    def is_control(self) -> bool:
        return self.role == CONTROL_ROLE

    def to_inventory_dict(self) -> dict:
        """Convert to Ansible inventory format."""
        return {
            "ansible_host": str(self.public_ip),
            "private_ip": str(self.private_ip),
            "node_index": self.index,
            "cpu": self.cpu,
            "memory": self.memory,
            "disk_size": self.disk_size,
        }

    @classmethod
    def from_inventory_dict(cls, hostname: str, data: dict) -> "NodeDescriptor":
        """Parse from Ansible inventory format."""
        return cls(
            hostname=hostname,
            role=data.get("role", WORKER_ROLE),
            index=data["node_index"],
            public_ip=data["ansible_host"],
            private_ip=data["private_ip"],
            cpu=data["cpu"],
            memory=data["memory"],
            disk_size=data["disk_size"],
        )
