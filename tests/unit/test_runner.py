"""Unit tests for command runners."""

import shlex
import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from cluster_bootstrap.exceptions import CommandError
from cluster_bootstrap.runner import (
    DEFAULT_COMMAND_TIMEOUT,
    CommandResult,
    LocalRunner,
    VagrantRunner,
    _run_process,
)


@pytest.fixture
def local():
    return LocalRunner("local", timeout=30)


def test_run_captures_stdout(local):
    result = local.run("echo controlplane")

    assert result.ok
    assert result.returncode == 0
    assert result.stdout == "controlplane\n"


def test_non_zero_exit_without_check(local):
    result = local.run("echo boom >&2; exit 3", check=False)

    assert not result.ok
    assert result.returncode == 3
    assert "boom" in result.stderr


def test_non_zero_exit_with_check_raises(local):
    with pytest.raises(CommandError) as exc_info:
        local.run("echo 'unable to connect' >&2; exit 1")

    error = exc_info.value
    assert error.returncode == 1
    assert "unable to connect" in error.stderr


def test_command_timeout_maps_to_124(local):
    result = local.run("sleep 5", check=False, timeout=0.2)

    assert result.returncode == 124
    assert "timed out" in result.stderr


def test_missing_binary_maps_to_127():
    returncode, stdout, stderr = _run_process(["no-such-binary-for-bootstrap"], None, 5)

    assert returncode == 127
    assert stdout == ""
    assert "no-such-binary-for-bootstrap" in stderr


def test_missing_command_inside_shell(local):
    assert local.run("no-such-binary-for-bootstrap", check=False).returncode == 127


def test_undecodable_output_is_replaced(local):
    result = local.run(r"printf '\377\376 kubelet'")

    assert result.ok
    assert "kubelet" in result.stdout
    assert "�" in result.stdout


def test_write_file_round_trip(local, tmp_path):
    path = tmp_path / "configs" / "join.sh"
    content = "kubeadm join 192.168.1.100:6443 --token 'a b' --cri-socket $SOCKET %s\n"

    local.write_file(str(path), content, mode=0o755)

    assert path.read_text() == content
    assert stat.S_IMODE(path.stat().st_mode) == 0o755


def test_write_file_append(local, tmp_path):
    path = tmp_path / "limits.conf"

    local.write_file(str(path), "* soft nofile 1048576\n")
    local.write_file(str(path), "* hard nofile 1048576\n", append=True)

    assert path.read_text().splitlines() == ["* soft nofile 1048576", "* hard nofile 1048576"]


def test_write_file_overwrites(local, tmp_path):
    path = tmp_path / "crio"
    local.write_file(str(path), "old\n")
    local.write_file(str(path), "ENVIRONMENT=testing\n")

    assert path.read_text() == "ENVIRONMENT=testing\n"


def test_vagrant_argv_uses_sudo_bash():
    command = "kubectl get nodes -o 'jsonpath={.items[*].metadata.name}'"

    argv = VagrantRunner("worker1").build_argv(command)

    assert argv == ["vagrant", "ssh", "worker1", "-c", f"sudo bash -c {shlex.quote(command)}"]
    assert shlex.split(argv[-1]) == ["sudo", "bash", "-c", command]


def test_vagrant_argv_without_sudo():
    argv = VagrantRunner("controlplane", sudo=False, vagrant_bin="/usr/local/bin/vagrant").build_argv(
        "hostname"
    )

    assert argv == ["/usr/local/bin/vagrant", "ssh", "controlplane", "-c", "bash -c hostname"]


def test_vagrant_runs_from_vagrant_dir(tmp_path):
    completed = MagicMock(returncode=0, stdout="Ready\n", stderr="")
    runner = VagrantRunner("worker2", vagrant_dir=tmp_path)

    with patch("cluster_bootstrap.runner.subprocess.run", return_value=completed) as run:
        result = runner.run("systemctl is-active kubelet")

    assert result == CommandResult("systemctl is-active kubelet", 0, "Ready\n", "")
    argv = run.call_args[0][0]
    assert argv[:4] == ["vagrant", "ssh", "worker2", "-c"]
    assert run.call_args.kwargs["cwd"] == Path(tmp_path)
    assert run.call_args.kwargs["timeout"] == DEFAULT_COMMAND_TIMEOUT
