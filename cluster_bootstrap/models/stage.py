"""Data models for provisioning stage outcomes."""

from enum import Enum

from pydantic import BaseModel


class StageStatus(str, Enum):
    """Outcome of one provisioning stage."""

    SUCCESS = "success"
    RETRIED_THEN_SUCCESS = "retried-then-success"
    FAILED = "failed"


class StageResult(BaseModel):
    """Result of one stage within a single orchestration run. Not persisted."""

    node: str
    stage: str
    status: StageStatus
    attempts: int
    elapsed: float  # seconds
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status != StageStatus.FAILED
