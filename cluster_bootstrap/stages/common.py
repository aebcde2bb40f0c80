"""Stages shared by every node: OS prerequisites, CRI-O and Kubernetes packages."""

from cluster_bootstrap.context import RunContext
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.runner import CommandRunner

logger = get_logger(__name__)

APT_INSTALL = "export DEBIAN_FRONTEND=noninteractive && apt-get update && apt-get install -y"
KEYRING_DIR = "/etc/apt/keyrings"

CRIO_MODULES = ["overlay", "br_netfilter"]

CRIO_SYSCTL = """net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1
"""

CRIO_CONFIG_PATH = "/etc/crio/crio.conf.d/02-crio.conf"
CRIO_CONFIG = """[crio.runtime]
conmon_cgroup = "pod"
cgroup_manager = "systemd"
default_capabilities = [
    "CHOWN",
    "DAC_OVERRIDE",
    "FSETID",
    "FOWNER",
    "SETGID",
    "SETUID",
    "SETPCAP",
    "NET_BIND_SERVICE",
    "KILL"
]
default_ulimits = [
    "nofile=1048576:1048576"
]

[crio.image]
pause_image = "registry.k8s.io/pause:3.9"
max_parallel_pulls = 5

[crio.network]
network_dir = "/etc/cni/net.d/"
plugin_dirs = ["/opt/cni/bin"]

[crio.metrics]
enable_metrics = true
metrics_port = 9537
"""

KUBERNETES_PACKAGES = ["kubelet", "kubeadm", "kubectl"]


def disable_swap(runner: CommandRunner) -> None:
    runner.run("swapoff -a")
    runner.run(
        "(crontab -l 2>/dev/null | grep -v swapoff; echo '@reboot /sbin/swapoff -a') | crontab -"
    )


def configure_dns(ctx: RunContext, runner: CommandRunner) -> None:
    logger.info(f"[{runner.name}] Configuring DNS servers {ctx.spec.network.dns_servers_csv}")
    runner.write_file(
        "/etc/systemd/resolved.conf.d/dns_servers.conf",
        f"[Resolve]\nDNS={ctx.spec.network.dns_servers_csv}\nDNSStubListener=no\n",
    )
    runner.run("systemctl restart systemd-resolved")


def load_kernel_modules(runner: CommandRunner, modules: list[str], persist_as: str | None = None) -> None:
    if persist_as:
        runner.write_file(f"/etc/modules-load.d/{persist_as}", "\n".join(modules) + "\n")
    for module in modules:
        runner.run(f"lsmod | grep -q '^{module}' || modprobe {module}")


def apply_sysctl(runner: CommandRunner, name: str, settings: str) -> None:
    runner.write_file(f"/etc/sysctl.d/{name}", settings)
    runner.run("sysctl --system")


def append_environment(ctx: RunContext, runner: CommandRunner, path: str) -> None:
    if ctx.spec.environment:
        runner.write_file(path, f"ENVIRONMENT={ctx.spec.environment}\n", append=True)


def add_apt_repository(runner: CommandRunner, name: str, url: str) -> None:
    """Trust the repository's release key and register it with apt."""
    keyring = f"{KEYRING_DIR}/{name}-apt-keyring.gpg"
    runner.run(f"mkdir -p {KEYRING_DIR}")
    runner.run(f"curl -fsSL {url}Release.key | gpg --dearmor --yes -o {keyring}")
    runner.write_file(
        f"/etc/apt/sources.list.d/{name}.list", f"deb [signed-by={keyring}] {url} /\n"
    )


def prepare_node(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Disable swap, set DNS, load kernel modules and apply sysctl tuning."""
    disable_swap(runner)
    configure_dns(ctx, runner)
    load_kernel_modules(runner, CRIO_MODULES, persist_as="crio.conf")
    apply_sysctl(runner, "99-kubernetes-cri.conf", CRIO_SYSCTL)


def install_container_runtime(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Install, configure and start CRI-O."""
    version = ctx.spec.software.crio
    logger.info(f"[{node.hostname}] Installing CRI-O {version}")
    add_apt_repository(
        runner, "cri-o", f"https://pkgs.k8s.io/addons:/cri-o:/stable:/{version}/deb/"
    )
    runner.run(f"{APT_INSTALL} cri-o")
    runner.write_file(CRIO_CONFIG_PATH, CRIO_CONFIG)
    append_environment(ctx, runner, "/etc/default/crio")
    runner.run("systemctl daemon-reload && systemctl enable --now crio")
    runner.run("systemctl is-active --quiet crio")


def install_kubernetes_tooling(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Install kubelet, kubeadm and kubectl pinned to the configured minor version."""
    version = ctx.spec.software.kubernetes
    logger.info(f"[{node.hostname}] Installing Kubernetes {version}")
    add_apt_repository(
        runner, "kubernetes", f"https://pkgs.k8s.io/core:/stable:/{version}/deb/"
    )
    packages = " ".join(KUBERNETES_PACKAGES)
    runner.run(f"{APT_INSTALL} {packages}")
    runner.run(f"apt-mark hold {packages}")
    runner.write_file("/etc/default/kubelet", f"KUBELET_EXTRA_ARGS=--node-ip={node.private_ip}\n")
    append_environment(ctx, runner, "/etc/default/kubelet")
