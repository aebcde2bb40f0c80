"""Data models for cluster settings, planned nodes and observed state."""

from cluster_bootstrap.models.cluster import (
    ClusterSpec,
    NetworkSettings,
    NodeResources,
    SoftwareVersions,
    WorkerSettings,
)
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.models.stage import StageResult, StageStatus
from cluster_bootstrap.models.state import ClusterSnapshot, NodeStatus, PodStatus

__all__ = [
    "ClusterSpec",
    "NetworkSettings",
    "NodeResources",
    "SoftwareVersions",
    "WorkerSettings",
    "NodeDescriptor",
    "StageResult",
    "StageStatus",
    "ClusterSnapshot",
    "NodeStatus",
    "PodStatus",
]
