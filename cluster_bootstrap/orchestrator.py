"""Cluster-wide sequencing of node pipelines.

The control-plane pipeline runs to completion first, because workers consume
the join artifact it publishes. Worker pipelines are independent of each
other: they run one after another by default, or concurrently when
``parallel`` is greater than one. A failing worker halts only its own
pipeline.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from cluster_bootstrap.context import RunContext
from cluster_bootstrap.exceptions import ConfigurationError, FatalStageFailure
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.models.stage import StageResult
from cluster_bootstrap.pipeline import Stage, StageKind, run_pipeline
from cluster_bootstrap.provisioner import plan_nodes
from cluster_bootstrap.stages import common, control, worker

logger = get_logger(__name__)


def control_plane_stages(spec: ClusterSpec) -> list[Stage]:
    """Stages for the control node, in execution order."""
    stages = [
        Stage("runtime-prerequisites", common.prepare_node),
        Stage("container-runtime", common.install_container_runtime, StageKind.RETRYABLE),
        Stage("kubernetes-tooling", common.install_kubernetes_tooling, StageKind.RETRYABLE),
        Stage("control-plane-init", control.initialize_control_plane, StageKind.NON_IDEMPOTENT),
        Stage("api-server-ready", control.wait_for_api_server),
        Stage("pod-network", control.install_pod_network),
        Stage("join-token", control.generate_join_token),
    ]
    if spec.devops_tools.install_argo:
        stages.append(
            Stage("auxiliary-tooling", control.install_auxiliary_tooling, StageKind.BEST_EFFORT)
        )
    return stages


def worker_stages(spec: ClusterSpec) -> list[Stage]:
    """Stages for each worker node, in execution order."""
    stages = [
        Stage("runtime-prerequisites", worker.prepare_worker),
        Stage("container-runtime", common.install_container_runtime, StageKind.RETRYABLE),
        Stage("kubernetes-tooling", common.install_kubernetes_tooling, StageKind.RETRYABLE),
        Stage("system-optimization", worker.optimize_system),
        Stage(
            "cluster-join",
            worker.join_cluster,
            StageKind.NON_IDEMPOTENT,
            precondition=worker.require_join_artifact,
        ),
    ]
    if spec.monitoring.enable_node_exporter:
        stages.append(
            Stage("monitoring-agent", worker.install_monitoring_agent, StageKind.RETRYABLE)
        )
    stages.append(Stage("node-health", worker.wait_for_node_health))
    return stages


@dataclass
class NodeReport:
    """Stage results for one node, plus the failure that halted it, if any."""

    node: NodeDescriptor
    results: list[StageResult] = field(default_factory=list)
    failure: FatalStageFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@dataclass
class RunReport:
    cluster_name: str
    nodes: list[NodeReport] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def failures(self) -> list[FatalStageFailure]:
        return [report.failure for report in self.nodes if report.failure is not None]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        failures = self.failures
        return failures[0].exit_code if failures else 0


class BootstrapOrchestrator:
    """Takes freshly created VMs to a joined cluster."""

    def __init__(
        self,
        ctx: RunContext,
        nodes: list[NodeDescriptor] | None = None,
        parallel: int = 1,
    ):
        self.ctx = ctx
        self.nodes = nodes if nodes is not None else plan_nodes(ctx.spec)
        self.parallel = max(1, parallel)

    @property
    def control_node(self) -> NodeDescriptor:
        node = next((n for n in self.nodes if n.is_control), None)
        if node is None:
            raise ConfigurationError("No control node in the plan")
        return node

    @property
    def worker_nodes(self) -> list[NodeDescriptor]:
        return [n for n in self.nodes if not n.is_control]

    def _run_node(self, node: NodeDescriptor, stages: list[Stage]) -> NodeReport:
        logger.info(f"[{node.hostname}] pipeline starting ({len(stages)} stages)")
        try:
            results = run_pipeline(self.ctx, node, stages)
        except FatalStageFailure as failure:
            logger.error(f"[{node.hostname}] pipeline aborted at stage '{failure.stage}'")
            return NodeReport(node=node, results=failure.results, failure=failure)
        logger.info(f"[{node.hostname}] pipeline completed")
        return NodeReport(node=node, results=results)

    def run_control_plane(self) -> NodeReport:
        return self._run_node(self.control_node, control_plane_stages(self.ctx.spec))

    def run_worker(self, node: NodeDescriptor) -> NodeReport:
        return self._run_node(node, worker_stages(self.ctx.spec))

    def run_workers(self, nodes: list[NodeDescriptor] | None = None) -> list[NodeReport]:
        nodes = self.worker_nodes if nodes is None else nodes
        if self.parallel == 1 or len(nodes) <= 1:
            return [self.run_worker(node) for node in nodes]

        with ThreadPoolExecutor(
            max_workers=min(self.parallel, len(nodes)), thread_name_prefix="worker-pool"
        ) as executor:
            futures = [executor.submit(self.run_worker, node) for node in nodes]
            try:
                return [future.result() for future in futures]
            except KeyboardInterrupt:
                self.ctx.cancel()
                raise

    def run(self) -> RunReport:
        """Run the control plane, then every worker.

        Workers are not started if the control plane fails.
        """
        start = time.monotonic()
        report = RunReport(cluster_name=self.ctx.spec.cluster_name)
        try:
            control_report = self.run_control_plane()
            report.nodes.append(control_report)
            if control_report.succeeded:
                report.nodes.extend(self.run_workers())
            else:
                logger.error("Control plane failed; worker pipelines were not started")
        except KeyboardInterrupt:
            self.ctx.cancel()
            raise
        finally:
            report.elapsed = time.monotonic() - start
        return report
