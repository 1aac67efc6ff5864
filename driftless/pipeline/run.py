"""Pipeline run records."""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

__all__ = [
    "RunOutcome",
    "PipelineRun",
]


class RunOutcome(StrEnum):
    """Outcome of a pipeline run."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass(frozen=True)
class PipelineRun(DataClassDictMixin):
    """One build-and-push attempt.

    A run is created Pending and replaced exactly once by a terminal copy.
    Terminal runs are never modified.
    """

    run_id: str
    source_ref: str
    image_tag: str
    application: str | None = None
    outcome: RunOutcome = RunOutcome.PENDING
    digest: str | None = None
    error: str | None = None
    submitted_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def terminal(self) -> bool:
        return self.outcome != RunOutcome.PENDING

    def succeed(self, digest: str) -> "PipelineRun":
        """Return the Succeeded copy of a Pending run."""
        return replace(
            self,
            outcome=RunOutcome.SUCCEEDED,
            digest=digest,
            finished_at=datetime.now(timezone.utc),
        )

    def fail(self, error: str) -> "PipelineRun":
        """Return the Failed copy of a Pending run."""
        return replace(
            self,
            outcome=RunOutcome.FAILED,
            error=error,
            finished_at=datetime.now(timezone.utc),
        )

    def summary(self) -> str:
        """Return a one line summary of the run."""
        summary = f"{self.run_id} {self.outcome} {self.source_ref} -> {self.image_tag}"
        if self.digest:
            return f"{summary} {self.digest}"
        if self.error:
            return f"{summary}: {self.error}"
        return summary

    class Config(BaseConfig):
        omit_none = True
