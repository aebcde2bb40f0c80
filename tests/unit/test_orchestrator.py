"""End-to-end orchestration tests against fake nodes."""

import pytest

from cluster_bootstrap.exceptions import ConfigurationError, RunCancelled
from cluster_bootstrap.models.cluster import ClusterSpec
from cluster_bootstrap.models.stage import StageStatus
from cluster_bootstrap.orchestrator import (
    BootstrapOrchestrator,
    control_plane_stages,
    worker_stages,
)
from cluster_bootstrap.pipeline import StageKind
from cluster_bootstrap.stages import control

MANIFEST = """env:
  # - name: CALICO_IPV4POOL_CIDR
  #   value: "192.168.0.0/16"
"""


@pytest.fixture(autouse=True)
def offline_calico(monkeypatch):
    monkeypatch.setattr(control, "fetch_calico_manifest", lambda version: MANIFEST)


def stage_names(node_report):
    return [result.stage for result in node_report.results]


def test_full_run_succeeds(ctx, runners):
    report = BootstrapOrchestrator(ctx).run()

    assert report.succeeded
    assert report.exit_code == 0
    assert [n.node.hostname for n in report.nodes] == ["controlplane", "worker1", "worker2"]
    assert stage_names(report.nodes[0]) == [s.name for s in control_plane_stages(ctx.spec)]
    for worker_report in report.nodes[1:]:
        assert stage_names(worker_report) == [s.name for s in worker_stages(ctx.spec)]
        assert all(r.status is StageStatus.SUCCESS for r in worker_report.results)

    assert ctx.join_artifact_path.is_file()
    assert runners["worker1"].ran("bash /vagrant/configs/join.sh")
    assert runners["worker2"].ran("bash /vagrant/configs/join.sh")
    assert not any(runner.ran("kubeadm reset") for runner in runners.values())


def test_control_plane_runs_before_workers(ctx, runners):
    BootstrapOrchestrator(ctx).run()

    assert runners["controlplane"].ran("kubeadm init")
    assert not runners["worker1"].ran("kubeadm init")
    assert not runners["controlplane"].ran("join.sh")


def test_control_failure_skips_workers(make_context, runners):
    ctx = make_context(overrides={"controlplane": [{"pattern": "kubeadm init", "returncode": 1}]})

    report = BootstrapOrchestrator(ctx).run()

    assert not report.succeeded
    assert report.exit_code == 2
    assert len(report.nodes) == 1
    failure = report.failures[0]
    assert failure.node == "controlplane"
    assert failure.stage == "control-plane-init"
    assert failure.attempts == 1
    assert runners["controlplane"].ran("kubeadm reset -f")
    assert "worker1" not in runners


@pytest.mark.parametrize("parallel", [1, 2])
def test_worker_failure_does_not_stop_other_workers(make_context, runners, parallel):
    ctx = make_context(
        overrides={"worker1": [{"pattern": "bash /vagrant/configs/join.sh", "returncode": 1}]}
    )

    report = BootstrapOrchestrator(ctx, parallel=parallel).run()

    by_host = {n.node.hostname: n for n in report.nodes}
    assert by_host["controlplane"].succeeded
    assert by_host["worker2"].succeeded
    assert by_host["worker1"].failure.stage == "cluster-join"
    assert runners["worker1"].ran("kubeadm reset -f")
    assert not runners["worker2"].ran("kubeadm reset")
    assert report.exit_code == 2


def test_transient_failures_are_retried(make_context):
    ctx = make_context(
        overrides={"worker1": [{"pattern": "apt-get install -y cri-o", "returncode": 100, "times": 2}]}
    )

    report = BootstrapOrchestrator(ctx).run()

    assert report.succeeded
    result = next(r for r in report.nodes[1].results if r.stage == "container-runtime")
    assert result.status is StageStatus.RETRIED_THEN_SUCCESS
    assert result.attempts == 3


def test_node_health_timeout_exit_code(make_context):
    ctx = make_context(overrides={"worker2": [{"pattern": "healthz", "returncode": 7}]})

    report = BootstrapOrchestrator(ctx).run()

    assert report.exit_code == 3
    assert report.failures[0].stage == "node-health"


def test_cancelled_run(ctx):
    ctx.cancel()

    report = BootstrapOrchestrator(ctx).run()

    assert report.exit_code == 130
    assert isinstance(report.failures[0].cause, RunCancelled)


def test_keyboard_interrupt_cancels_run(ctx, monkeypatch):
    orchestrator = BootstrapOrchestrator(ctx)

    def interrupted():
        raise KeyboardInterrupt

    monkeypatch.setattr(orchestrator, "run_control_plane", interrupted)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.run()
    assert ctx.cancelled


def test_worker_alone_needs_join_artifact(ctx, runners):
    orchestrator = BootstrapOrchestrator(ctx)

    node_report = orchestrator.run_worker(orchestrator.worker_nodes[0])

    assert node_report.failure.stage == "cluster-join"
    assert node_report.failure.attempts == 0
    assert runners["worker1"].commands == []


def test_plan_without_control_node(ctx):
    orchestrator = BootstrapOrchestrator(ctx)
    orchestrator.nodes = orchestrator.worker_nodes

    with pytest.raises(ConfigurationError):
        orchestrator.control_node


def test_stage_lists_follow_settings(sample_settings_data):
    sample_settings_data["devops_tools"] = {"install_argo": True}
    sample_settings_data["monitoring"] = {"enable_node_exporter": False}
    spec = ClusterSpec(**sample_settings_data)

    control_stages = {s.name: s for s in control_plane_stages(spec)}
    worker_stage_list = {s.name: s for s in worker_stages(spec)}

    assert control_stages["auxiliary-tooling"].kind is StageKind.BEST_EFFORT
    assert control_stages["control-plane-init"].kind is StageKind.NON_IDEMPOTENT
    assert "monitoring-agent" not in worker_stage_list
    assert worker_stage_list["cluster-join"].precondition is not None


def test_best_effort_tooling_failure_keeps_cluster_going(make_context, sample_settings_data):
    sample_settings_data["devops_tools"] = {"install_argo": True}
    ctx = make_context(
        spec=ClusterSpec(**sample_settings_data),
        overrides={"controlplane": [{"pattern": "get_helm", "returncode": 1}]},
    )

    report = BootstrapOrchestrator(ctx).run()

    assert report.succeeded
    tooling = report.nodes[0].results[-1]
    assert tooling.stage == "auxiliary-tooling"
    assert tooling.status is StageStatus.FAILED
