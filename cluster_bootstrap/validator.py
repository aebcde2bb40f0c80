"""Cluster-wide checks once every node has joined."""

from pathlib import Path

from pydantic import BaseModel, Field

from cluster_bootstrap.exceptions import BootstrapError
from cluster_bootstrap.health import WaitOutcome, await_condition
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.models.state import ClusterSnapshot

logger = get_logger(__name__)

HEALTHY_POD_PHASES = {"Running", "Succeeded"}
SYSTEM_NAMESPACE = "kube-system"
ARGOCD_NAMESPACE = "argocd"


class CheckResult(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class ValidationReport(BaseModel):
    checks: list[CheckResult] = Field(default_factory=list)
    snapshot: ClusterSnapshot | None = None

    @property
    def passed(self) -> bool:
        return bool(self.checks) and all(check.passed for check in self.checks)

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 2


def check_nodes_registered(snapshot: ClusterSnapshot, expected: list[NodeDescriptor]) -> CheckResult:
    registered = {node.name for node in snapshot.nodes}
    missing = sorted(n.hostname for n in expected if n.hostname not in registered)
    if missing:
        return CheckResult(
            name="nodes registered", passed=False, detail=f"missing: {', '.join(missing)}"
        )
    return CheckResult(name="nodes registered", passed=True, detail=f"{len(expected)} expected")


def check_nodes_ready(snapshot: ClusterSnapshot) -> CheckResult:
    not_ready = sorted(node.name for node in snapshot.nodes if node.status != "Ready")
    if not snapshot.nodes:
        return CheckResult(name="nodes ready", passed=False, detail="no nodes registered")
    if not_ready:
        return CheckResult(
            name="nodes ready", passed=False, detail=f"not ready: {', '.join(not_ready)}"
        )
    return CheckResult(name="nodes ready", passed=True, detail=f"{len(snapshot.nodes)} ready")


def check_system_pods(snapshot: ClusterSnapshot) -> CheckResult:
    system_pods = [pod for pod in snapshot.pods if pod.namespace == SYSTEM_NAMESPACE]
    unhealthy = sorted(
        f"{pod.name} ({pod.status})" for pod in system_pods if pod.status not in HEALTHY_POD_PHASES
    )
    if not system_pods:
        return CheckResult(name="system pods", passed=False, detail="no kube-system pods found")
    if unhealthy:
        return CheckResult(name="system pods", passed=False, detail=", ".join(unhealthy))
    return CheckResult(name="system pods", passed=True, detail=f"{len(system_pods)} healthy")


def check_argocd_namespace(snapshot: ClusterSnapshot) -> CheckResult:
    present = ARGOCD_NAMESPACE in snapshot.namespaces
    return CheckResult(
        name="argocd installed",
        passed=present,
        detail="namespace present" if present else "namespace argocd not found",
    )


class PostJoinValidator:
    """Runs cluster-wide checks against the Kubernetes API."""

    def __init__(self, api_client, spec: ClusterSpec, nodes: list[NodeDescriptor]):
        """Initialize the validator.

        Args:
            api_client: A ``kubernetes.client.CoreV1Api``
            spec: Cluster settings
            nodes: Planned nodes expected to be registered
        """
        self.api_client = api_client
        self.spec = spec
        self.nodes = nodes

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: Path, spec: ClusterSpec, nodes: list[NodeDescriptor]
    ) -> "PostJoinValidator":
        """Build a validator from the kubeconfig published by the control node.

        Raises:
            BootstrapError: If the kubeconfig is missing or unusable
        """
        from kubernetes import client, config

        if not Path(kubeconfig).exists():
            raise BootstrapError(
                f"Kubeconfig not found: {kubeconfig}",
                "The control-plane pipeline copies admin.conf into the shared folder "
                "after kubeadm init. Run 'cluster-bootstrap control' first.",
            )
        try:
            api_client = config.new_client_from_config(config_file=str(kubeconfig))
        except Exception as e:
            raise BootstrapError(f"Failed to load kubeconfig {kubeconfig}", str(e))
        return cls(client.CoreV1Api(api_client), spec, nodes)

    def evaluate(self, snapshot: ClusterSnapshot) -> list[CheckResult]:
        checks = [
            check_nodes_registered(snapshot, self.nodes),
            check_nodes_ready(snapshot),
            check_system_pods(snapshot),
        ]
        if self.spec.devops_tools.install_argo:
            checks.append(check_argocd_namespace(snapshot))
        return checks

    def snapshot(self) -> ClusterSnapshot:
        return ClusterSnapshot.from_kubernetes_api(self.api_client)

    def validate(self, wait_timeout: float = 0, interval: float = 10) -> ValidationReport:
        """Run every check, optionally polling until they all pass.

        Args:
            wait_timeout: Seconds to keep re-checking; 0 checks once
            interval: Delay between polls
        """
        report = ValidationReport()

        def check() -> bool:
            try:
                report.snapshot = self.snapshot()
            except Exception as e:
                detail = getattr(e, "reason", None) or str(e)
                logger.warning(f"Kubernetes API error during validation: {detail}")
                report.checks = [CheckResult(name="api reachable", passed=False, detail=str(detail))]
                return False
            report.checks = self.evaluate(report.snapshot)
            return report.passed

        outcome = await_condition(check, wait_timeout, interval)
        if outcome is not WaitOutcome.SUCCESS:
            failed = [c.name for c in report.checks if not c.passed]
            logger.error(f"Post-join validation failed: {', '.join(failed) or 'no checks ran'}")
        else:
            logger.info("Post-join validation passed")
        return report
