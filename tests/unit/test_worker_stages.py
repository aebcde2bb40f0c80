"""Tests for worker stages and shared node preparation."""

import pytest

from cluster_bootstrap.exceptions import JoinArtifactMissingError, NodeRequirementsError, ReadinessTimeout
from cluster_bootstrap.provisioner import plan_nodes
from cluster_bootstrap.stages import common, worker


@pytest.fixture
def worker1(sample_spec):
    return plan_nodes(sample_spec)[1]


def test_requirements_met(ctx, worker1):
    worker.verify_system_requirements(ctx, worker1, ctx.runner_for(worker1))


def test_requirements_list_every_shortfall(make_context, worker1):
    ctx = make_context(
        overrides={
            "worker1": [
                {"pattern": "free -m", "stdout": "2048\n"},
                {"pattern": "nproc", "stdout": "1\n"},
            ]
        }
    )

    with pytest.raises(NodeRequirementsError) as exc_info:
        worker.verify_system_requirements(ctx, worker1, ctx.runner_for(worker1))

    assert "Insufficient memory: 2048MB < 4096MB" in exc_info.value.details
    assert "Insufficient CPU cores: 1 < 2" in exc_info.value.details
    assert "disk" not in exc_info.value.details


def test_prepare_worker_loads_ipvs_modules(ctx, worker1):
    runner = ctx.runner_for(worker1)

    worker.prepare_worker(ctx, worker1, runner)

    for module in ("ip_vs", "ip_vs_rr", "ip_vs_wrr", "ip_vs_sh", "br_netfilter", "overlay"):
        assert runner.ran(f"modprobe {module}")
    assert runner.ran("swapoff -a")
    assert runner.ran("DNS=9.9.9.11,1.1.1.1")
    assert runner.ran("sysctl --system")


def test_optimize_system(ctx, worker1):
    runner = ctx.runner_for(worker1)

    worker.optimize_system(ctx, worker1, runner)

    assert runner.ran("/etc/sysctl.d/99-kubernetes-worker.conf")
    assert runner.ran("/etc/security/limits.d/kubernetes.conf")
    assert runner.ran("transparent_hugepage/enabled")


def test_require_join_artifact(ctx, worker1):
    with pytest.raises(JoinArtifactMissingError):
        worker.require_join_artifact(ctx, worker1)

    ctx.shared_dir.mkdir(parents=True)
    ctx.join_artifact_path.write_text("kubeadm join ...\n")
    worker.require_join_artifact(ctx, worker1)


def test_join_cluster_runs_shared_artifact(ctx, worker1):
    ctx.shared_dir.mkdir(parents=True)
    ctx.join_artifact_path.write_text("kubeadm join ...\n")
    runner = ctx.runner_for(worker1)

    worker.join_cluster(ctx, worker1, runner)

    assert runner.commands == ["bash /vagrant/configs/join.sh"]


def test_install_monitoring_agent(ctx, worker1):
    runner = ctx.runner_for(worker1)

    worker.install_monitoring_agent(ctx, worker1, runner)

    assert runner.ran("node_exporter-1.8.2.linux-amd64.tar.gz")
    assert runner.ran("/etc/systemd/system/node_exporter.service")
    assert runner.ran("systemctl enable --now node_exporter")


def test_node_health_timeout(make_context, worker1):
    ctx = make_context(overrides={"worker1": [{"pattern": "healthz", "returncode": 22}]})

    with pytest.raises(ReadinessTimeout) as exc_info:
        worker.wait_for_node_health(ctx, worker1, ctx.runner_for(worker1))

    assert "worker1" in exc_info.value.condition


def test_kubernetes_tooling_pins_node_ip(ctx, worker1):
    runner = ctx.runner_for(worker1)

    common.install_kubernetes_tooling(ctx, worker1, runner)

    assert runner.ran("core:/stable:/v1.31/deb/")
    assert runner.ran("apt-mark hold kubelet kubeadm kubectl")
    assert runner.ran("--node-ip=172.16.0.21")
    assert runner.ran("ENVIRONMENT=testing")


def test_container_runtime_install(ctx, worker1):
    runner = ctx.runner_for(worker1)

    common.install_container_runtime(ctx, worker1, runner)

    assert runner.ran("cri-o:/stable:/v1.30/deb/")
    assert runner.ran("/etc/crio/crio.conf.d/02-crio.conf")
    assert runner.ran("systemctl is-active --quiet crio")


def test_environment_not_written_when_unset(make_context, sample_settings_data, worker1):
    from cluster_bootstrap.models.cluster import ClusterSpec

    del sample_settings_data["environment"]
    ctx = make_context(spec=ClusterSpec(**sample_settings_data))
    runner = ctx.runner_for(worker1)

    common.install_kubernetes_tooling(ctx, worker1, runner)

    assert not runner.ran("ENVIRONMENT=")
