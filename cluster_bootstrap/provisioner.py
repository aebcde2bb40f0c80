"""Node planning: turns cluster settings into per-VM descriptors.

Planning is a pure function of the settings so it can be exercised without a
hypervisor. Address assignment:

- control node: public ``network.control_ip``, private ``<private_prefix>.20``
- worker ``i`` (1-indexed): public ``<worker_prefix>.(i + 10)``,
  private ``<private_prefix>.(i + 20)``
"""

from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import CONTROL_ROLE, WORKER_ROLE, NodeDescriptor


def plan_nodes(spec: ClusterSpec) -> list[NodeDescriptor]:
    """Return the control node followed by workers in index order."""
    addresses = spec.node_addresses()
    nodes = []
    for index, (hostname, (public_ip, private_ip)) in enumerate(addresses.items()):
        if index == 0:
            role, resources = CONTROL_ROLE, spec.nodes.control
        else:
            role, resources = WORKER_ROLE, spec.nodes.workers
        nodes.append(
            NodeDescriptor(
                hostname=hostname,
                role=role,
                index=index,
                public_ip=public_ip,
                private_ip=private_ip,
                cpu=resources.cpu,
                memory=resources.memory,
                disk_size=resources.disk_size,
            )
        )
    return nodes


def find_node(nodes: list[NodeDescriptor], hostname: str) -> NodeDescriptor | None:
    return next((n for n in nodes if n.hostname == hostname), None)
