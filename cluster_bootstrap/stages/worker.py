"""Worker stages: requirement checks, tuning, cluster join, monitoring and health."""

from cluster_bootstrap.context import RunContext
from cluster_bootstrap.exceptions import (
    BootstrapError,
    JoinArtifactMissingError,
    NodeRequirementsError,
)
from cluster_bootstrap.health import kubelet_health_check
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.runner import CommandRunner
from cluster_bootstrap.stages.common import apply_sysctl, load_kernel_modules, prepare_node

logger = get_logger(__name__)

MIN_MEMORY_MB = 4096
MIN_CPUS = 2
MIN_DISK_GB = 20

WORKER_MODULES = ["br_netfilter", "overlay", "ip_vs", "ip_vs_rr", "ip_vs_wrr", "ip_vs_sh"]

WORKER_SYSCTL = """# Network optimizations
net.ipv4.tcp_tw_reuse = 1
net.ipv4.ip_local_port_range = 1024 65000
net.ipv4.tcp_max_syn_backlog = 8192
net.ipv4.tcp_max_tw_buckets = 500000
net.ipv4.tcp_fastopen = 3
net.core.somaxconn = 32768
net.core.netdev_max_backlog = 16384

# Memory optimizations
vm.swappiness = 0
vm.dirty_ratio = 30
vm.dirty_background_ratio = 5
vm.dirty_expire_centisecs = 500
vm.dirty_writeback_centisecs = 100
vm.max_map_count = 262144

# General Kubernetes requirements
net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1

# Performance optimizations
kernel.pid_max = 65535
fs.file-max = 2097152
fs.inotify.max_user_watches = 524288
fs.inotify.max_user_instances = 512
"""

WORKER_LIMITS = """* soft nofile 1048576
* hard nofile 1048576
* soft nproc 262144
* hard nproc 262144
* soft memlock unlimited
* hard memlock unlimited
root soft nofile 1048576
root hard nofile 1048576
"""

NODE_EXPORTER_URL = (
    "https://github.com/prometheus/node_exporter/releases/download/"
    "v{version}/node_exporter-{version}.linux-amd64.tar.gz"
)
NODE_EXPORTER_UNIT = """[Unit]
Description=Node Exporter
After=network.target

[Service]
User=node_exporter
Group=node_exporter
Type=simple
ExecStart=/usr/local/bin/node_exporter

[Install]
WantedBy=multi-user.target
"""


def _read_int(runner: CommandRunner, command: str) -> int:
    output = runner.run(command).stdout.strip()
    try:
        return int(output)
    except ValueError:
        raise BootstrapError(f"Could not read a number from '{command}'", f"Output: {output!r}")


def verify_system_requirements(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Check memory, CPU and disk against the worker minimums.

    Raises:
        NodeRequirementsError: Listing every unmet requirement
    """
    memory = _read_int(runner, "free -m | awk '/^Mem:/{print $2}'")
    cpus = _read_int(runner, "nproc")
    disk = _read_int(runner, "df -BG / | awk 'NR==2 {print $4}' | sed 's/G//'")

    problems = []
    if memory < MIN_MEMORY_MB:
        problems.append(f"Insufficient memory: {memory}MB < {MIN_MEMORY_MB}MB required")
    if cpus < MIN_CPUS:
        problems.append(f"Insufficient CPU cores: {cpus} < {MIN_CPUS} required")
    if disk < MIN_DISK_GB:
        problems.append(f"Insufficient disk space: {disk}GB < {MIN_DISK_GB}GB required")
    if problems:
        raise NodeRequirementsError(
            f"{node.hostname} does not meet worker requirements", "\n".join(problems)
        )
    logger.info(f"[{node.hostname}] resources ok: {memory}MB memory, {cpus} CPUs, {disk}GB disk")


def prepare_worker(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    verify_system_requirements(ctx, node, runner)
    load_kernel_modules(runner, WORKER_MODULES)
    prepare_node(ctx, node, runner)


def optimize_system(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Kernel parameters, resource limits and transparent hugepages."""
    apply_sysctl(runner, "99-kubernetes-worker.conf", WORKER_SYSCTL)
    runner.write_file("/etc/security/limits.d/kubernetes.conf", WORKER_LIMITS)
    runner.run(
        "echo never > /sys/kernel/mm/transparent_hugepage/enabled "
        "&& echo never > /sys/kernel/mm/transparent_hugepage/defrag"
    )


def require_join_artifact(ctx: RunContext, node: NodeDescriptor) -> None:
    """Raises JoinArtifactMissingError unless the control plane has published it."""
    if not ctx.join_artifact_path.is_file():
        raise JoinArtifactMissingError(ctx.join_artifact_path)


def join_cluster(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    require_join_artifact(ctx, node)
    logger.info(f"[{node.hostname}] Joining the Kubernetes cluster")
    runner.run(f"bash {ctx.node_path('join.sh')}")
    logger.info(f"[{node.hostname}] Successfully joined the cluster")


def install_monitoring_agent(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Install node_exporter as a systemd service."""
    version = ctx.spec.software.node_exporter
    url = NODE_EXPORTER_URL.format(version=version)
    workdir = "/tmp/node_exporter"
    runner.run(
        f"rm -rf {workdir} && mkdir -p {workdir} "
        f"&& curl -fsSL {url} -o {workdir}/node_exporter.tar.gz "
        f"&& tar xf {workdir}/node_exporter.tar.gz -C {workdir} "
        f"&& install -m 755 {workdir}/node_exporter-{version}.linux-amd64/node_exporter "
        "/usr/local/bin/node_exporter"
    )
    runner.run("id node_exporter >/dev/null 2>&1 || useradd -rs /bin/false node_exporter")
    runner.write_file("/etc/systemd/system/node_exporter.service", NODE_EXPORTER_UNIT)
    runner.run("systemctl daemon-reload && systemctl enable --now node_exporter")


def wait_for_node_health(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    ctx.sleep(ctx.timings.node_health_settle)
    ctx.require(
        kubelet_health_check(runner),
        f"kubelet health on {node.hostname}",
        ctx.timings.node_health_timeout,
        ctx.timings.node_health_interval,
    )
