"""Data models for the observed Kubernetes cluster state."""

from pydantic import BaseModel, Field


class PodStatus(BaseModel):
    """Kubernetes pod status information."""

    name: str
    namespace: str
    node: str
    status: str
    restarts: int


class NodeStatus(BaseModel):
    """Kubernetes node status information."""

    name: str
    role: str
    status: str  # Ready, NotReady, Unknown
    internal_ip: str
    kubelet_version: str


class ClusterSnapshot(BaseModel):
    """Point-in-time view of nodes, pods and namespaces from the API server."""

    nodes: list[NodeStatus] = Field(default_factory=list)
    pods: list[PodStatus] = Field(default_factory=list)
    namespaces: list[str] = Field(default_factory=list)

    @classmethod
    def from_kubernetes_api(cls, api_client) -> "ClusterSnapshot":
        """Fetch current state from a ``CoreV1Api`` client."""
        nodes = []
        for node in api_client.list_node().items:
            status = "Unknown"
            for condition in node.status.conditions or []:
                if condition.type == "Ready":
                    status = "Ready" if condition.status == "True" else "NotReady"

            labels = node.metadata.labels or {}
            if (
                "node-role.kubernetes.io/control-plane" in labels
                or "node-role.kubernetes.io/master" in labels
            ):
                role = "control"
            else:
                role = "worker"

            addresses = node.status.addresses or []
            internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), "N/A")

            nodes.append(
                NodeStatus(
                    name=node.metadata.name,
                    role=role,
                    status=status,
                    internal_ip=internal_ip,
                    kubelet_version=node.status.node_info.kubelet_version,
                )
            )

        pods = []
        for pod in api_client.list_pod_for_all_namespaces().items:
            restarts = sum(cs.restart_count for cs in pod.status.container_statuses or [])
            pods.append(
                PodStatus(
                    name=pod.metadata.name,
                    namespace=pod.metadata.namespace,
                    node=pod.spec.node_name or "unscheduled",
                    status=pod.status.phase,
                    restarts=restarts,
                )
            )

        namespaces = [ns.metadata.name for ns in api_client.list_namespace().items]

        return cls(nodes=nodes, pods=pods, namespaces=namespaces)
