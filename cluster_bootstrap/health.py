"""Readiness polling and the readiness predicates used between stages.

``await_condition`` is the single waiting primitive: every readiness gate in a
pipeline is expressed as a side-effect-free predicate polled at a fixed
interval until it holds, the timeout elapses, or the run is cancelled. It
never raises; callers decide what a timeout means.
"""

import json
import threading
import time
from collections.abc import Callable
from enum import Enum

from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.runner import CommandRunner

logger = get_logger(__name__)

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
KUBECTL = f"kubectl --kubeconfig={ADMIN_KUBECONFIG}"
KUBELET_HEALTH_URL = "http://localhost:10248/healthz"


class WaitOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


def await_condition(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    cancel_event: threading.Event | None = None,
) -> WaitOutcome:
    """Poll ``check`` every ``interval`` seconds for at most ``timeout`` seconds.

    A predicate that raises counts as not yet satisfied.

    Args:
        check: Side-effect-free predicate
        timeout: Upper bound on the wait
        interval: Delay between polls
        cancel_event: Set to abandon the wait early

    Returns:
        SUCCESS on the first true result, TIMEOUT once ``timeout`` has elapsed,
        CANCELLED if ``cancel_event`` was set
    """
    deadline = time.monotonic() + timeout
    while True:
        if cancel_event is not None and cancel_event.is_set():
            return WaitOutcome.CANCELLED
        try:
            if check():
                return WaitOutcome.SUCCESS
        except Exception as e:
            logger.debug(f"Readiness check raised, treating as not ready: {e}")

        now = time.monotonic()
        if now >= deadline:
            return WaitOutcome.TIMEOUT
        pause = min(interval, deadline - now)
        if cancel_event is not None:
            if cancel_event.wait(pause):
                return WaitOutcome.CANCELLED
        else:
            time.sleep(pause)


def pods_ready(ready: int, total: int) -> bool:
    """All matched pods are ready. A selector matching nothing is never ready."""
    return total > 0 and ready == total


def _pod_is_ready(pod: dict) -> bool:
    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    return bool(statuses) and all(status.get("ready") for status in statuses)


def count_ready_pods(pod_list: dict) -> tuple[int, int]:
    """Count (ready, total) pods in ``kubectl get pods -o json`` output."""
    items = pod_list.get("items") or []
    ready = sum(1 for pod in items if _pod_is_ready(pod))
    return ready, len(items)


def api_server_check(runner: CommandRunner) -> Callable[[], bool]:
    """The API server answers ``kubectl get nodes``."""

    def check() -> bool:
        return runner.run(f"{KUBECTL} get nodes", check=False, timeout=30).ok

    return check


def pod_label_check(runner: CommandRunner, namespace: str, label: str) -> Callable[[], bool]:
    """Every pod matching ``label`` in ``namespace`` is ready."""

    def check() -> bool:
        result = runner.run(
            f"{KUBECTL} get pods -n {namespace} -l {label} -o json", check=False, timeout=30
        )
        if not result.ok:
            return False
        ready, total = count_ready_pods(json.loads(result.stdout))
        logger.info(f"[{runner.name}] pods {label}: {ready}/{total} ready")
        return pods_ready(ready, total)

    return check


def pod_listing(runner: CommandRunner, namespace: str, label: str) -> Callable[[], str]:
    """Diagnostic snapshot of the pods behind a failed readiness wait."""

    def snapshot() -> str:
        result = runner.run(
            f"{KUBECTL} get pods -n {namespace} -l {label} -o wide", check=False, timeout=30
        )
        return result.stdout or result.stderr

    return snapshot


def kubelet_health_check(runner: CommandRunner, url: str = KUBELET_HEALTH_URL) -> Callable[[], bool]:
    """The node-local kubelet health endpoint returns 200."""

    def check() -> bool:
        return runner.run(f"curl -sSf {url}", check=False, timeout=15).ok

    return check
