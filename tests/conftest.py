"""Pytest configuration and shared fixtures."""

import json

import pytest
import yaml
from hypothesis import Verbosity, settings

from cluster_bootstrap.context import RunContext, Timings
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.runner import CommandResult, CommandRunner

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

JOIN_COMMAND = (
    "kubeadm join 192.168.1.100:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:deadbeef"
)

READY_PODS = json.dumps(
    {
        "items": [
            {"status": {"containerStatuses": [{"ready": True}]}},
            {"status": {"containerStatuses": [{"ready": True}, {"ready": True}]}},
        ]
    }
)


class FakeRunner(CommandRunner):
    """Records commands and answers them from substring rules.

    Rules are matched in the order they were added; a rule registered with
    ``times`` stops matching once used up. Unmatched commands succeed with
    empty output.
    """

    def __init__(self, name: str = "fake"):
        super().__init__(name)
        self.commands: list[str] = []
        self.rules: list[list] = []

    def respond(self, pattern: str, returncode: int = 0, stdout: str = "", stderr: str = "", times=None):
        self.rules.append([pattern, returncode, stdout, stderr, times])
        return self

    def _execute(self, command: str, timeout):
        self.commands.append(command)
        for rule in self.rules:
            pattern, returncode, stdout, stderr, times = rule
            if pattern in command and (times is None or times > 0):
                if times is not None:
                    rule[4] = times - 1
                return CommandResult(command, returncode, stdout, stderr)
        return CommandResult(command, 0, "", "")

    def ran(self, pattern: str) -> bool:
        return any(pattern in command for command in self.commands)

    def count(self, pattern: str) -> int:
        return sum(1 for command in self.commands if pattern in command)


def healthy_node_rules(runner: FakeRunner) -> FakeRunner:
    """Responses for a node that meets every requirement and readiness check."""
    runner.respond("free -m", stdout="8192\n")
    runner.respond("nproc", stdout="4\n")
    runner.respond("df -BG", stdout="50\n")
    runner.respond("token create", stdout=JOIN_COMMAND + "\n")
    runner.respond("-o json", stdout=READY_PODS)
    return runner


@pytest.fixture
def sample_settings_data():
    """Sample cluster settings for testing."""
    return {
        "cluster_name": "test-cluster",
        "environment": "testing",
        "network": {
            "dns_servers": ["9.9.9.11", "1.1.1.1"],
            "pod_cidr": "10.244.0.0/16",
            "service_cidr": "10.96.0.0/12",
            "control_ip": "192.168.1.100",
            "worker_ip_prefix": "192.168.1",
            "private_ip_prefix": "172.16.0",
        },
        "nodes": {
            "control": {"cpu": 4, "memory": 6144, "disk_size": 20480},
            "workers": {"count": 2, "cpu": 4, "memory": 6144, "disk_size": 20480},
        },
        "software": {
            "box": "bento/ubuntu-24.04",
            "calico": "3.28.2",
            "kubernetes": "v1.31",
            "os": "xUbuntu_24.04",
            "crio": "v1.30",
            "node_exporter": "1.8.2",
        },
        "shared_folders": [
            {"host_path": "./configs", "vm_path": "/vagrant/configs", "owner": "vagrant"}
        ],
        "devops_tools": {"install_argo": False},
    }


@pytest.fixture
def sample_spec(sample_settings_data):
    return ClusterSpec(**sample_settings_data)


@pytest.fixture
def settings_file(tmp_path, sample_settings_data):
    """Settings written to a temporary settings.yaml."""
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump(sample_settings_data))
    return path


@pytest.fixture
def fast_timings():
    """No backoff and single-poll readiness waits."""
    return Timings(
        max_attempts=5,
        retry_backoff=0,
        api_server_timeout=0,
        api_server_interval=0,
        pod_timeout=0,
        pod_interval=0,
        node_health_timeout=0,
        node_health_interval=0,
        node_health_settle=0,
    )


@pytest.fixture
def runners():
    """One FakeRunner per hostname, created on first use."""
    return {}


@pytest.fixture
def make_context(sample_spec, tmp_path, fast_timings, runners):
    """Build a RunContext whose nodes are FakeRunners with healthy responses.

    ``overrides`` maps a hostname to ``respond`` keyword sets that take
    precedence over the healthy defaults.
    """

    def factory(spec=None, overrides=None, **kwargs):
        overrides = overrides or {}

        def runner_for(node):
            if node.hostname not in runners:
                runner = FakeRunner(node.hostname)
                for rule in overrides.get(node.hostname, []):
                    runner.respond(**rule)
                runners[node.hostname] = healthy_node_rules(runner)
            return runners[node.hostname]

        return RunContext(
            spec or sample_spec,
            runner_for,
            tmp_path / "shared",
            "/vagrant/configs",
            timings=kwargs.pop("timings", fast_timings),
            **kwargs,
        )

    return factory


@pytest.fixture
def ctx(make_context):
    return make_context()


@pytest.fixture
def fake_runner():
    return FakeRunner("fake")
