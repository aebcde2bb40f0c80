"""Run context threaded through every stage of an orchestration run."""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from cluster_bootstrap.exceptions import ReadinessTimeout, RunCancelled
from cluster_bootstrap.health import WaitOutcome, await_condition
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.runner import CommandRunner

logger = get_logger(__name__)

JOIN_ARTIFACT_NAME = "join.sh"
KUBECONFIG_NAME = "config"


@dataclass(frozen=True)
class Timings:
    """Retry and readiness-wait bounds, in seconds."""

    max_attempts: int = 5
    retry_backoff: float = 10
    api_server_timeout: float = 180
    api_server_interval: float = 5
    pod_timeout: float = 300
    pod_interval: float = 10
    node_health_timeout: float = 300
    node_health_interval: float = 10
    node_health_settle: float = 30


class RunContext:
    """Configuration, shared-folder locations and cancellation for one run.

    ``shared_dir`` is the shared folder as seen by this process;
    ``node_shared_dir`` is the same folder as seen from inside the nodes.
    """

    def __init__(
        self,
        spec: ClusterSpec,
        runner_factory: Callable[[NodeDescriptor], CommandRunner],
        shared_dir: Path,
        node_shared_dir: str,
        deadline: float | None = None,
        timings: Timings | None = None,
    ):
        self.spec = spec
        self.runner_factory = runner_factory
        self.shared_dir = Path(shared_dir)
        self.node_shared_dir = node_shared_dir.rstrip("/")
        self.timings = timings or Timings()
        self.deadline = time.monotonic() + deadline if deadline is not None else None
        self.cancel_event = threading.Event()

    def runner_for(self, node: NodeDescriptor) -> CommandRunner:
        return self.runner_factory(node)

    @property
    def join_artifact_path(self) -> Path:
        return self.shared_dir / JOIN_ARTIFACT_NAME

    @property
    def kubeconfig_path(self) -> Path:
        return self.shared_dir / KUBECONFIG_NAME

    def node_path(self, name: str) -> str:
        """Path of a shared-folder file as seen from inside a node."""
        return f"{self.node_shared_dir}/{name}"

    def cancel(self) -> None:
        """Abort the run: in-flight waits return promptly, no new stage starts."""
        logger.warning("Run cancellation requested")
        self.cancel_event.set()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set() or self.remaining() == 0.0

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled("Run cancelled by operator")
        if self.remaining() == 0.0:
            raise RunCancelled("Run deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep without outliving a cancellation or the run deadline."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self.cancel_event.wait(seconds)
        self.check_cancelled()

    def await_condition(self, check: Callable[[], bool], timeout: float, interval: float) -> WaitOutcome:
        """``await_condition`` bounded by the run deadline and cancel signal."""
        remaining = self.remaining()
        bounded = timeout if remaining is None else min(timeout, remaining)
        outcome = await_condition(check, bounded, interval, cancel_event=self.cancel_event)
        if outcome is WaitOutcome.TIMEOUT and bounded < timeout:
            return WaitOutcome.CANCELLED
        return outcome

    def require(
        self,
        check: Callable[[], bool],
        condition: str,
        timeout: float,
        interval: float,
        diagnostics: Callable[[], str] | None = None,
    ) -> None:
        """Wait for ``check`` and turn a non-success outcome into an exception.

        Raises:
            ReadinessTimeout: The wait exceeded ``timeout``; carries diagnostics
            RunCancelled: The run was cancelled or hit its deadline
        """
        logger.info(f"Waiting for {condition} (timeout {timeout:g}s, interval {interval:g}s)")
        outcome = self.await_condition(check, timeout, interval)
        if outcome is WaitOutcome.SUCCESS:
            logger.info(f"{condition} is ready")
            return
        if outcome is WaitOutcome.CANCELLED:
            self.check_cancelled()
            raise RunCancelled(f"Run deadline exceeded while waiting for {condition}")

        snapshot = None
        if diagnostics is not None:
            try:
                snapshot = diagnostics()
            except Exception as e:
                snapshot = f"diagnostics unavailable: {e}"
        raise ReadinessTimeout(condition, timeout, snapshot)
