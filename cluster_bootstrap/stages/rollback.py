"""Best-effort node cleanup after a fatal stage failure."""

from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.runner import CommandRunner

logger = get_logger(__name__)

CNI_INTERFACES = ["cni0", "flannel.1", "calico.1"]
RUNTIME_SERVICES = ["containerd", "crio"]

ROLLBACK_ACTIONS = [
    ("reset kubernetes agent", "if command -v kubeadm >/dev/null 2>&1; then kubeadm reset -f; fi"),
    ("flush iptables filter rules", "iptables -F"),
    ("flush iptables nat rules", "iptables -t nat -F"),
    ("remove CNI configuration", "rm -rf /etc/cni/net.d/*"),
    *[
        (
            f"delete interface {iface}",
            f"if ip link show {iface} >/dev/null 2>&1; then ip link delete {iface}; fi",
        )
        for iface in CNI_INTERFACES
    ],
    *[
        (
            f"stop {service}",
            f"if systemctl is-active {service} >/dev/null 2>&1; then systemctl stop {service}; fi",
        )
        for service in RUNTIME_SERVICES
    ],
]


def cleanup_on_failure(runner: CommandRunner) -> list[str]:
    """Undo local Kubernetes state on a node. Never raises.

    Every action is attempted regardless of earlier ones failing.

    Returns:
        Descriptions of the actions that failed
    """
    logger.info(f"[{runner.name}] Performing cleanup after failure...")
    failed = []
    for description, command in ROLLBACK_ACTIONS:
        try:
            result = runner.run(command, check=False, timeout=120)
            if not result.ok:
                failed.append(description)
                logger.warning(
                    f"[{runner.name}] cleanup step '{description}' exited with {result.returncode}"
                )
        except Exception as e:
            failed.append(description)
            logger.warning(f"[{runner.name}] cleanup step '{description}' failed: {e}")

    if failed:
        logger.warning(f"[{runner.name}] cleanup finished with {len(failed)} failed step(s)")
    else:
        logger.info(f"[{runner.name}] cleanup finished")
    return failed
