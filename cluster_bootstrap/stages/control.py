"""Control-plane stages: kubeadm init, Calico, join token and GitOps tooling."""

import re

import requests
import yaml

from cluster_bootstrap.context import RunContext
from cluster_bootstrap.exceptions import BootstrapError, CommandError, TransientCommandFailure
from cluster_bootstrap.health import (
    ADMIN_KUBECONFIG,
    KUBECTL,
    api_server_check,
    pod_label_check,
    pod_listing,
)
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.runner import CommandRunner

logger = get_logger(__name__)

API_SERVER_PORT = 6443
CRIO_SOCKET = "unix:///var/run/crio/crio.sock"
KUBEADM_CONFIG_PATH = "/etc/kubeadm/kubeadm-config.yaml"

CALICO_MANIFEST_URL = (
    "https://raw.githubusercontent.com/projectcalico/calico/v{version}/manifests/calico.yaml"
)
CALICO_DEFAULT_POOL = "192.168.0.0/16"
CALICO_INTERFACE = "eth1"
POOL_CIDR_LINE = re.compile(r"^(?P<indent>\s*)(?:#\s*)?- name: CALICO_IPV4POOL_CIDR\s*$")

# (namespace, label) pairs that must be fully ready once the CNI is applied
POD_NETWORK_READINESS = [
    ("kube-system", "k8s-app=kube-dns"),
    ("kube-system", "k8s-app=calico-node"),
]

HELM_INSTALLER_URL = "https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3"
ARGOCD_CLI_URL = (
    "https://github.com/argoproj/argo-cd/releases/download/{version}/argocd-linux-amd64"
)
ARGOCD_MANIFEST_URL = (
    "https://raw.githubusercontent.com/argoproj/argo-cd/{version}/manifests/install.yaml"
)
ARGOCD_NODE_PORTS = (30903, 30904)


def render_kubeadm_config(spec: ClusterSpec) -> str:
    """Render the InitConfiguration and ClusterConfiguration documents."""
    init_config = {
        "apiVersion": "kubeadm.k8s.io/v1beta4",
        "kind": "InitConfiguration",
        "localAPIEndpoint": {
            "advertiseAddress": spec.network.control_ip,
            "bindPort": API_SERVER_PORT,
        },
        "nodeRegistration": {"criSocket": CRIO_SOCKET, "imagePullPolicy": "IfNotPresent"},
    }
    cluster_config = {
        "apiVersion": "kubeadm.k8s.io/v1beta4",
        "kind": "ClusterConfiguration",
        "networking": {
            "serviceSubnet": spec.network.service_cidr,
            "podSubnet": spec.network.pod_cidr,
            "dnsDomain": "cluster.local",
        },
        "apiServer": {
            "extraArgs": [
                {"name": "authorization-mode", "value": "Node,RBAC"},
                {"name": "enable-admission-plugins", "value": "NodeRestriction"},
            ]
        },
        "controllerManager": {"extraArgs": [{"name": "bind-address", "value": "0.0.0.0"}]},
        "scheduler": {"extraArgs": [{"name": "bind-address", "value": "0.0.0.0"}]},
    }
    return yaml.safe_dump_all([init_config, cluster_config], default_flow_style=False, sort_keys=False)


def initialize_control_plane(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Run ``kubeadm init`` and publish the admin kubeconfig."""
    logger.info(f"[{node.hostname}] Initializing control plane")
    runner.write_file(KUBEADM_CONFIG_PATH, render_kubeadm_config(ctx.spec))
    runner.run(f"kubeadm config images pull --config {KUBEADM_CONFIG_PATH}")
    runner.run(f"kubeadm init --config {KUBEADM_CONFIG_PATH} --upload-certs")

    user = ctx.spec.shared_folder.owner
    home = f"/home/{user}"
    runner.run(
        f"mkdir -p {home}/.kube && cp -f {ADMIN_KUBECONFIG} {home}/.kube/config "
        f"&& chown -R {user}:{user} {home}/.kube"
    )
    runner.run(f"cp -f {ADMIN_KUBECONFIG} {ctx.node_path('config')}")


def wait_for_api_server(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    ctx.require(
        api_server_check(runner),
        "API server",
        ctx.timings.api_server_timeout,
        ctx.timings.api_server_interval,
    )


def calico_autodetection_configmap() -> str:
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "calico-config", "namespace": "kube-system"},
            "data": {
                "calico_backend": "bird",
                "veth_mtu": "1440",
                "ip_autodetection_method": f"interface={CALICO_INTERFACE}",
            },
        },
        default_flow_style=False,
    )


def fetch_calico_manifest(version: str) -> str:
    """Download the upstream Calico manifest.

    Raises:
        TransientCommandFailure: If the download fails
    """
    url = CALICO_MANIFEST_URL.format(version=version)
    logger.info(f"Downloading Calico manifest from {url}")
    try:
        response = requests.get(url, timeout=60)
        response.raise_for_status()
    except requests.RequestException as e:
        status = getattr(getattr(e, "response", None), "status_code", None) or 1
        raise TransientCommandFailure(f"GET {url}", status, stderr=str(e))
    return response.text


def patch_calico_manifest(manifest: str, pod_cidr: str, interface: str = CALICO_INTERFACE) -> str:
    """Point the default IP pool at ``pod_cidr`` and pin IP autodetection.

    The ``CALICO_IPV4POOL_CIDR`` env entry (commented out upstream) is replaced
    by an active one, preceded by ``IP_AUTODETECTION_METHOD``. Remaining
    mentions of the stock pool are rewritten to ``pod_cidr``.
    """
    lines = manifest.splitlines()
    patched = []
    found = False
    i = 0
    while i < len(lines):
        match = POOL_CIDR_LINE.match(lines[i])
        if match and not found:
            indent = match.group("indent")
            patched.extend(
                [
                    f"{indent}- name: IP_AUTODETECTION_METHOD",
                    f'{indent}  value: "interface={interface}"',
                    f"{indent}- name: CALICO_IPV4POOL_CIDR",
                    f'{indent}  value: "{pod_cidr}"',
                ]
            )
            if i + 1 < len(lines) and "value:" in lines[i + 1]:
                i += 1
            found = True
        else:
            patched.append(lines[i].replace(CALICO_DEFAULT_POOL, pod_cidr))
        i += 1

    if not found:
        logger.warning("CALICO_IPV4POOL_CIDR not found in manifest; only the pool CIDR was rewritten")
    return "\n".join(patched) + "\n"


def install_pod_network(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Apply Calico once, then wait for DNS and Calico agents to become ready."""
    runner.write_file(ctx.node_path("calico-config.yaml"), calico_autodetection_configmap())
    runner.run(f"{KUBECTL} apply -f {ctx.node_path('calico-config.yaml')}")

    manifest = patch_calico_manifest(
        fetch_calico_manifest(ctx.spec.software.calico), ctx.spec.network.pod_cidr
    )
    ctx.shared_dir.mkdir(parents=True, exist_ok=True)
    (ctx.shared_dir / "calico.yaml").write_text(manifest)
    logger.info(f"[{node.hostname}] Applying Calico manifest")
    runner.run(f"{KUBECTL} apply -f {ctx.node_path('calico.yaml')}")

    for namespace, label in POD_NETWORK_READINESS:
        ctx.require(
            pod_label_check(runner, namespace, label),
            f"pods {label} in {namespace}",
            ctx.timings.pod_timeout,
            ctx.timings.pod_interval,
            diagnostics=pod_listing(runner, namespace, label),
        )

    for command in (f"{KUBECTL} get nodes -o wide", f"{KUBECTL} get pods --all-namespaces"):
        result = runner.run(command, check=False)
        logger.info(f"[{node.hostname}] {command}\n{result.stdout}")


def write_join_artifact(ctx: RunContext, join_command: str) -> None:
    """Persist the join command where every worker can read it."""
    path = ctx.join_artifact_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(join_command.strip() + "\n")
    path.chmod(0o755)
    logger.info(f"Join artifact written to {path}")


def generate_join_token(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    result = runner.run("kubeadm token create --print-join-command")
    join_command = result.stdout.strip()
    if not join_command.startswith("kubeadm join"):
        raise BootstrapError(
            "kubeadm did not print a join command",
            f"Unexpected output: {join_command or '<empty>'}",
        )
    write_join_artifact(ctx, join_command)


def _install_helm(ctx: RunContext, runner: CommandRunner) -> None:
    runner.run(
        f"curl -fsSL -o /tmp/get_helm.sh {HELM_INSTALLER_URL} && chmod 700 /tmp/get_helm.sh "
        "&& /tmp/get_helm.sh && rm -f /tmp/get_helm.sh"
    )


def _install_argocd_cli(ctx: RunContext, runner: CommandRunner) -> None:
    url = ARGOCD_CLI_URL.format(version=ctx.spec.software.argocd)
    runner.run(
        f"curl -fsSL -o /tmp/argocd-linux-amd64 {url} "
        "&& install -m 555 /tmp/argocd-linux-amd64 /usr/local/bin/argocd "
        "&& rm -f /tmp/argocd-linux-amd64"
    )


def _install_argocd(ctx: RunContext, runner: CommandRunner) -> None:
    manifest = ARGOCD_MANIFEST_URL.format(version=ctx.spec.software.argocd)
    http_port, https_port = ARGOCD_NODE_PORTS
    runner.run(f"{KUBECTL} create namespace argocd --dry-run=client -o yaml | {KUBECTL} apply -f -")
    runner.run(f"{KUBECTL} apply -n argocd -f {manifest}")
    runner.run(
        f"{KUBECTL} patch svc argocd-server -n argocd "
        """-p '{"spec":{"type":"NodePort"}}'"""
    )
    for index, port in enumerate((http_port, https_port)):
        runner.run(
            f"{KUBECTL} patch svc argocd-server -n argocd --type=json "
            f"""-p='[{{"op": "replace", "path": "/spec/ports/{index}/nodePort", "value": {port}}}]'"""
        )


AUXILIARY_STEPS = [
    ("helm", _install_helm),
    ("argocd cli", _install_argocd_cli),
    ("argo cd", _install_argocd),
]


def install_auxiliary_tooling(ctx: RunContext, node: NodeDescriptor, runner: CommandRunner) -> None:
    """Install helm and Argo CD. Each step runs even if an earlier one failed.

    Raises:
        CommandError: The first failed step, once every step has been attempted
    """
    failures = []
    for name, step in AUXILIARY_STEPS:
        try:
            step(ctx, runner)
            logger.info(f"[{node.hostname}] installed {name}")
        except CommandError as e:
            logger.warning(f"[{node.hostname}] failed to install {name}: {e.message}")
            failures.append(e)
    if failures:
        raise failures[0]
