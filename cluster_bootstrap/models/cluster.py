"""Data models for the cluster settings document."""

import re
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cluster_bootstrap.models.node import (
    CONTROL_HOSTNAME,
    WORKER_HOSTNAME_TEMPLATE,
    private_ip,
    worker_public_ip,
)

IPV4_PATTERN = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
IP_PREFIX_PATTERN = re.compile(r"^\d{1,3}(\.\d{1,3}){2}$")
MINOR_VERSION_PATTERN = re.compile(r"^v\d+\.\d+$")


def _octets_in_range(address: str) -> bool:
    return all(0 <= int(octet) <= 255 for octet in address.split("."))


class NetworkSettings(BaseModel):
    """Network ranges and address assignment rules."""

    model_config = ConfigDict(frozen=True)

    dns_servers: list[str]
    pod_cidr: str = "10.244.0.0/16"
    service_cidr: str = "10.96.0.0/12"
    control_ip: str
    worker_ip_prefix: str
    private_ip_prefix: str
    bridge_interface: str = "eth0"
    netmask: str = "255.255.255.0"

    @field_validator("dns_servers", mode="before")
    @classmethod
    def split_dns_servers(cls, v):
        """Accept either a YAML list or a comma-separated string."""
        if isinstance(v, str):
            v = [server.strip() for server in v.split(",") if server.strip()]
        return v

    @field_validator("dns_servers")
    @classmethod
    def validate_dns_servers(cls, v: list[str]) -> list[str]:
        """Validate every DNS server is a dotted IPv4 address."""
        if not v:
            raise ValueError("dns_servers cannot be empty")
        for server in v:
            if not IPV4_PATTERN.match(server) or not _octets_in_range(server):
                raise ValueError(f"dns server '{server}' must be an IPv4 address (e.g., 1.1.1.1)")
        return v

    @field_validator("pod_cidr", "service_cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        """Validate the range is a proper IPv4 network."""
        try:
            IPv4Network(v, strict=True)
        except ValueError as e:
            raise ValueError(f"'{v}' must be a valid IPv4 CIDR (e.g., 10.244.0.0/16): {e}")
        return v

    @field_validator("control_ip")
    @classmethod
    def validate_control_ip(cls, v: str) -> str:
        """Validate control_ip is a dotted IPv4 address."""
        if not IPV4_PATTERN.match(v) or not _octets_in_range(v):
            raise ValueError(f"control_ip '{v}' must be an IPv4 address")
        return v

    @field_validator("worker_ip_prefix", "private_ip_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Validate an address prefix has exactly three octets."""
        if not IP_PREFIX_PATTERN.match(v) or not _octets_in_range(v):
            raise ValueError(f"ip prefix '{v}' must be three dotted octets (e.g., 192.168.1)")
        return v

    @model_validator(mode="after")
    def validate_ranges_disjoint(self) -> "NetworkSettings":
        """Pod and service ranges must not overlap."""
        if IPv4Network(self.pod_cidr).overlaps(IPv4Network(self.service_cidr)):
            raise ValueError(
                f"pod_cidr {self.pod_cidr} overlaps service_cidr {self.service_cidr}"
            )
        return self

    @property
    def dns_servers_csv(self) -> str:
        return ",".join(self.dns_servers)


class NodeResources(BaseModel):
    """CPU, memory (MB) and disk (MB) allocated to one VM."""

    model_config = ConfigDict(frozen=True)

    cpu: int = Field(gt=0)
    memory: int = Field(gt=0)
    disk_size: int = Field(gt=0)


class WorkerSettings(NodeResources):
    """Uniform resource spec applied to every worker."""

    count: int = Field(ge=0)


class NodesSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    control: NodeResources
    workers: WorkerSettings


class SoftwareVersions(BaseModel):
    """Version pins for everything installed on the nodes."""

    model_config = ConfigDict(frozen=True)

    box: str | None = None
    kubernetes: str
    crio: str
    os: str
    calico: str
    node_exporter: str = "1.8.2"
    containerd: str | None = None
    argocd: str = "v2.13.2"

    @field_validator("calico", "node_exporter", "containerd", "kubernetes", "crio", mode="before")
    @classmethod
    def coerce_version(cls, v):
        """YAML reads bare versions like 3.28 as floats."""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("kubernetes", "crio")
    @classmethod
    def validate_minor_version(cls, v: str) -> str:
        """Validate repository versions follow the vMAJOR.MINOR pattern."""
        if not v:
            raise ValueError("version cannot be empty")
        if not MINOR_VERSION_PATTERN.match(v):
            raise ValueError(f"version '{v}' must be in format vMAJOR.MINOR (e.g., v1.31)")
        return v

    @field_validator("os", "calico", "node_exporter")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v


class SharedFolder(BaseModel):
    """Host directory mounted into every VM."""

    model_config = ConfigDict(frozen=True)

    host_path: str
    vm_path: str
    owner: str = "vagrant"
    group: str = "vagrant"
    mount_options: list[str] = Field(default_factory=list)


class MonitoringSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enable_metrics_server: bool = True
    enable_node_exporter: bool = True
    enable_prometheus: bool = True
    retention_days: int = 15
    scrape_interval: str = "15s"


class DevopsToolsSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    install_argo: bool = False


DEFAULT_SHARED_FOLDER = SharedFolder(host_path="./configs", vm_path="/vagrant/configs")


class ClusterSpec(BaseModel):
    """Cluster settings, loaded once and immutable afterwards."""

    model_config = ConfigDict(frozen=True)

    cluster_name: str
    environment: str | None = None
    network: NetworkSettings
    nodes: NodesSettings
    software: SoftwareVersions
    shared_folders: list[SharedFolder] = Field(default_factory=lambda: [DEFAULT_SHARED_FOLDER])
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    devops_tools: DevopsToolsSettings = Field(default_factory=DevopsToolsSettings)

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is not empty."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_addresses(self) -> "ClusterSpec":
        """Every derived node address must be unique and outside reserved ranges."""
        reserved = [IPv4Network(self.network.pod_cidr), IPv4Network(self.network.service_cidr)]
        seen: dict[str, str] = {}
        for hostname, addresses in self.node_addresses().items():
            for address in addresses:
                if int(address.rsplit(".", 1)[1]) > 254:
                    raise ValueError(f"address {address} for {hostname} is outside the usable range")
                if address in seen:
                    raise ValueError(
                        f"address {address} is assigned to both {seen[address]} and {hostname}"
                    )
                for network in reserved:
                    if IPv4Address(address) in network:
                        raise ValueError(
                            f"address {address} for {hostname} falls inside reserved range {network}"
                        )
                seen[address] = hostname
        return self

    def node_addresses(self) -> dict[str, tuple[str, str]]:
        """Map each hostname to its (public, private) address pair."""
        addresses = {
            CONTROL_HOSTNAME: (
                self.network.control_ip,
                private_ip(self.network.private_ip_prefix, 0),
            )
        }
        for index in range(1, self.nodes.workers.count + 1):
            addresses[WORKER_HOSTNAME_TEMPLATE.format(index=index)] = (
                worker_public_ip(self.network.worker_ip_prefix, index),
                private_ip(self.network.private_ip_prefix, index),
            )
        return addresses

    @property
    def shared_folder(self) -> SharedFolder:
        """The folder that carries the join artifact and kubeconfig."""
        for folder in self.shared_folders:
            if folder.vm_path.rstrip("/").endswith("configs"):
                return folder
        return self.shared_folders[0] if self.shared_folders else DEFAULT_SHARED_FOLDER

    @classmethod
    def load(cls, path: str | Path) -> "ClusterSpec":
        """Load and validate settings from a YAML file.

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        import yaml
        from pydantic import ValidationError

        from cluster_bootstrap.exceptions import ConfigurationError

        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Settings file not found: {path}",
                f"Expected location: {path.absolute()}\n"
                "Create the file or specify a different path with --settings",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse settings file {path}", str(e))

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Settings file {path} is empty or not a mapping",
                "The settings document must be a YAML mapping with network, nodes "
                "and software sections.",
            )

        try:
            return cls(**data)
        except ValidationError as e:
            problems = "\n".join(
                f"- {'.'.join(str(x) for x in error['loc']) or 'settings'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(f"Invalid settings in {path}", problems)
