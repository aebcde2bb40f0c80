"""Execution of external commands on cluster nodes.

Every provisioning stage talks to its node through a ``CommandRunner``. The
contract with the external tools is the exit code alone: 0 is success,
anything else is a failure. Output is captured and written to the log sink.
"""

import posixpath
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from cluster_bootstrap.exceptions import CommandError
from cluster_bootstrap.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 1800


@dataclass
class CommandResult:
    """Captured outcome of one external command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _run_process(argv: list[str], cwd: Path | None, timeout: float | None) -> tuple[int, str, str]:
    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=cwd,
            timeout=timeout,
            check=False,
        )
        return completed.returncode, completed.stdout, completed.stderr
    except subprocess.TimeoutExpired:
        return 124, "", f"timed out after {timeout} seconds"
    except FileNotFoundError:
        return 127, "", f"{argv[0]} not found in PATH"


class CommandRunner:
    """Runs shell commands on one node."""

    def __init__(self, name: str, timeout: float | None = DEFAULT_COMMAND_TIMEOUT):
        self.name = name
        self.timeout = timeout

    def _execute(self, command: str, timeout: float | None) -> CommandResult:
        raise NotImplementedError

    def run(self, command: str, check: bool = True, timeout: float | None = None) -> CommandResult:
        """Run a shell command.

        Args:
            command: Shell command line
            check: Raise CommandError on a non-zero exit code
            timeout: Seconds before the command is abandoned

        Returns:
            The captured result

        Raises:
            CommandError: If check is set and the command failed
        """
        logger.debug(f"[{self.name}] $ {command}")
        result = self._execute(command, timeout or self.timeout)
        if result.stdout:
            logger.debug(f"[{self.name}] stdout:\n{result.stdout.rstrip()}")
        if result.stderr:
            logger.debug(f"[{self.name}] stderr:\n{result.stderr.rstrip()}")
        if check and not result.ok:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result

    def write_file(self, path: str, content: str, mode: int | None = None, append: bool = False) -> None:
        """Write ``content`` to ``path`` on the node, creating parent directories."""
        redirect = ">>" if append else ">"
        command = (
            f"mkdir -p {shlex.quote(posixpath.dirname(path))} && "
            f"printf '%s' {shlex.quote(content)} {redirect} {shlex.quote(path)}"
        )
        if mode is not None:
            command += f" && chmod {mode:o} {shlex.quote(path)}"
        self.run(command)


class LocalRunner(CommandRunner):
    """Runs commands on this machine, for use from inside a node."""

    def _execute(self, command: str, timeout: float | None) -> CommandResult:
        returncode, stdout, stderr = _run_process(["bash", "-c", command], None, timeout)
        return CommandResult(command, returncode, stdout, stderr)


class VagrantRunner(CommandRunner):
    """Runs commands inside a Vagrant-managed VM through ``vagrant ssh``."""

    def __init__(
        self,
        name: str,
        vagrant_dir: Path | None = None,
        sudo: bool = True,
        vagrant_bin: str = "vagrant",
        timeout: float | None = DEFAULT_COMMAND_TIMEOUT,
    ):
        super().__init__(name, timeout)
        self.vagrant_dir = vagrant_dir
        self.sudo = sudo
        self.vagrant_bin = vagrant_bin

    def build_argv(self, command: str) -> list[str]:
        remote = f"bash -c {shlex.quote(command)}"
        if self.sudo:
            remote = f"sudo {remote}"
        return [self.vagrant_bin, "ssh", self.name, "-c", remote]

    def _execute(self, command: str, timeout: float | None) -> CommandResult:
        returncode, stdout, stderr = _run_process(self.build_argv(command), self.vagrant_dir, timeout)
        return CommandResult(command, returncode, stdout, stderr)
