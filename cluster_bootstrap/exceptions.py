"""Custom exceptions for cluster bootstrap."""


class BootstrapError(Exception):
    """Base exception for all cluster bootstrap errors."""

    exit_code = 1

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(BootstrapError):
    """Exception raised for missing or malformed settings."""

    exit_code = 1


class CommandError(BootstrapError):
    """Exception raised when an external command exits non-zero."""

    exit_code = 2

    def __init__(
        self,
        command: str,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        details: str = None,
    ):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        if details is None and stderr:
            details = stderr.strip()
        super().__init__(f"Command '{command}' exited with status {returncode}", details)


class TransientCommandFailure(CommandError):
    """A retryable command failed; recovered through bounded retry."""

    pass


class NonIdempotentOperationFailure(BootstrapError):
    """Cluster init or join failed. Never retried automatically."""

    exit_code = 2


class ReadinessTimeout(BootstrapError):
    """A readiness wait exceeded its bound."""

    exit_code = 3

    def __init__(self, condition: str, timeout: float, diagnostics: str = None):
        self.condition = condition
        self.timeout = timeout
        self.diagnostics = diagnostics
        super().__init__(f"Timed out after {timeout:g}s waiting for {condition}", diagnostics)


class JoinArtifactMissingError(BootstrapError):
    """The join command file produced by the control plane does not exist."""

    exit_code = 2

    def __init__(self, path):
        self.path = path
        super().__init__(
            f"Join artifact missing: {path}",
            "The control-plane pipeline must complete join-token generation "
            "before any worker joins. Run 'cluster-bootstrap control' first.",
        )


class RunCancelled(BootstrapError):
    """The run was aborted by the operator or exceeded its overall deadline."""

    exit_code = 130


class FatalStageFailure(BootstrapError):
    """A stage failed unrecoverably and halted its node's pipeline."""

    def __init__(self, node: str, stage: str, attempts: int, cause: Exception):
        self.node = node
        self.stage = stage
        self.attempts = attempts
        self.cause = cause
        self.result = None
        self.results = []
        details = getattr(cause, "details", None) or str(cause)
        super().__init__(
            f"Stage '{stage}' failed on {node} after {attempts} attempt(s): "
            f"{getattr(cause, 'message', cause)}",
            details,
        )

    @property
    def exit_code(self) -> int:
        if isinstance(self.cause, ReadinessTimeout):
            return ReadinessTimeout.exit_code
        if isinstance(self.cause, RunCancelled):
            return RunCancelled.exit_code
        return 2


class NodeRequirementsError(BootstrapError):
    """The node does not have the resources a worker needs."""

    exit_code = 2
