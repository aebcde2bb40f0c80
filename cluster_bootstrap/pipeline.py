"""Stage execution for a single node's provisioning pipeline.

A pipeline is an ordered list of stages run strictly in sequence; each
stage's postcondition is the next stage's precondition. How a stage reacts to
failure depends on its kind:

- ``FAIL_FAST``: no retry, any failure is fatal
- ``RETRYABLE``: idempotent, retried with a fixed backoff up to
  ``Timings.max_attempts``; fatal once attempts are exhausted
- ``NON_IDEMPOTENT``: cluster init/join, never retried, always fatal and
  arms rollback for the rest of the pipeline
- ``BEST_EFFORT``: failures are logged and the pipeline carries on
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from cluster_bootstrap.context import RunContext
from cluster_bootstrap.exceptions import (
    BootstrapError,
    CommandError,
    FatalStageFailure,
    NonIdempotentOperationFailure,
    RunCancelled,
    TransientCommandFailure,
)
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import NodeDescriptor
from cluster_bootstrap.models.stage import StageResult, StageStatus
from cluster_bootstrap.runner import CommandRunner
from cluster_bootstrap.stages.rollback import cleanup_on_failure

logger = get_logger(__name__)

StageAction = Callable[[RunContext, NodeDescriptor, CommandRunner], None]
StagePrecondition = Callable[[RunContext, NodeDescriptor], None]


class StageKind(str, Enum):
    FAIL_FAST = "fail-fast"
    RETRYABLE = "retryable"
    NON_IDEMPOTENT = "non-idempotent"
    BEST_EFFORT = "best-effort"


@dataclass(frozen=True)
class Stage:
    """One ordered step of a node pipeline."""

    name: str
    action: StageAction
    kind: StageKind = StageKind.FAIL_FAST
    precondition: StagePrecondition | None = None


def execute_stage(
    ctx: RunContext, stage: Stage, node: NodeDescriptor, runner: CommandRunner
) -> StageResult:
    """Run one stage under its failure policy.

    Returns:
        The stage result; a failed best-effort stage returns a FAILED result

    Raises:
        FatalStageFailure: The stage failed unrecoverably
    """
    tag = f"[{node.hostname}/{stage.name}]"
    max_attempts = ctx.timings.max_attempts if stage.kind is StageKind.RETRYABLE else 1
    start = time.monotonic()
    attempt = 0

    logger.info(f"{tag} starting ({stage.kind.value})")
    while True:
        attempt += 1
        try:
            ctx.check_cancelled()
            stage.action(ctx, node, runner)
        except CommandError as e:
            if stage.kind is StageKind.RETRYABLE and attempt < max_attempts:
                logger.warning(
                    f"{tag} attempt {attempt}/{max_attempts} failed: {e.message}. "
                    f"Retrying in {ctx.timings.retry_backoff:g}s..."
                )
                try:
                    ctx.sleep(ctx.timings.retry_backoff)
                except RunCancelled as cancelled:
                    return _fail(ctx, stage, node, attempt, start, cancelled)
                continue
            if stage.kind is StageKind.RETRYABLE:
                cause = TransientCommandFailure(e.command, e.returncode, e.stdout, e.stderr)
            elif stage.kind is StageKind.NON_IDEMPOTENT:
                cause = NonIdempotentOperationFailure(
                    f"Non-idempotent operation '{stage.name}' failed: {e.message}",
                    e.details,
                )
                cause.__cause__ = e
            else:
                cause = e
            return _fail(ctx, stage, node, attempt, start, cause)
        except (BootstrapError, OSError) as e:
            return _fail(ctx, stage, node, attempt, start, e)
        except Exception as e:
            logger.exception(f"{tag} unexpected error")
            return _fail(ctx, stage, node, attempt, start, e)

        elapsed = time.monotonic() - start
        status = StageStatus.SUCCESS if attempt == 1 else StageStatus.RETRIED_THEN_SUCCESS
        logger.info(f"{tag} {status.value} after {attempt} attempt(s) in {elapsed:.1f}s")
        return StageResult(
            node=node.hostname,
            stage=stage.name,
            status=status,
            attempts=attempt,
            elapsed=elapsed,
        )


def _fail(
    ctx: RunContext,
    stage: Stage,
    node: NodeDescriptor,
    attempts: int,
    start: float,
    cause: Exception,
) -> StageResult:
    tag = f"[{node.hostname}/{stage.name}]"
    result = StageResult(
        node=node.hostname,
        stage=stage.name,
        status=StageStatus.FAILED,
        attempts=attempts,
        elapsed=time.monotonic() - start,
        error=getattr(cause, "message", str(cause)),
    )
    if stage.kind is StageKind.BEST_EFFORT and not isinstance(cause, RunCancelled):
        logger.warning(f"{tag} best-effort stage failed, continuing: {result.error}")
        return result

    logger.error(f"{tag} failed after {attempts} attempt(s): {cause}")
    failure = FatalStageFailure(node.hostname, stage.name, attempts, cause)
    failure.result = result
    raise failure


def check_preconditions(ctx: RunContext, node: NodeDescriptor, stages: list[Stage]) -> None:
    """Fail fast, before any stage runs, on a missing precondition."""
    for stage in stages:
        if stage.precondition is None:
            continue
        try:
            stage.precondition(ctx, node)
        except BootstrapError as e:
            logger.error(f"[{node.hostname}/{stage.name}] precondition failed: {e.message}")
            raise FatalStageFailure(node.hostname, stage.name, 0, e)


def run_pipeline(
    ctx: RunContext,
    node: NodeDescriptor,
    stages: list[Stage],
    runner: CommandRunner | None = None,
) -> list[StageResult]:
    """Run ``stages`` in order on ``node``.

    Once a non-idempotent stage has been attempted, a fatal failure triggers
    the best-effort rollback of the node before the failure propagates.

    Raises:
        FatalStageFailure: With ``results`` holding every stage result so far
    """
    runner = runner or ctx.runner_for(node)
    check_preconditions(ctx, node, stages)

    results: list[StageResult] = []
    rollback_armed = False
    for stage in stages:
        if stage.kind is StageKind.NON_IDEMPOTENT:
            rollback_armed = True
        try:
            results.append(execute_stage(ctx, stage, node, runner))
        except FatalStageFailure as failure:
            results.append(failure.result)
            failure.results = results
            if rollback_armed and not isinstance(failure.cause, RunCancelled):
                cleanup_on_failure(runner)
            raise
    return results
