"""Status information for an application."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum

from mashumaro.config import BaseConfig

from driftless.manifest import BaseManifest

__all__ = [
    "ReconcileState",
    "Health",
    "SyncState",
    "Action",
    "ObjectResult",
    "ObjectOutcome",
    "HistoryEntry",
    "SyncStatus",
]

MAX_HISTORY = 20


class ReconcileState(StrEnum):
    """Phase of the per-application reconciliation state machine."""

    IDLE = "Idle"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    CONFLICT_RETRY = "ConflictRetry"
    SETTLED = "Settled"
    FAILED = "Failed"


class Health(StrEnum):
    """Health classification of an application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class SyncState(StrEnum):
    """Whether the live objects match the last desired snapshot."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class Action(StrEnum):
    """What a pass did (or would do) with one object."""

    CREATE = "Create"
    UPDATE = "Update"
    PRUNE = "Prune"
    UNCHANGED = "Unchanged"
    ORPHANED = "Orphaned"


class ObjectResult(StrEnum):
    """Outcome of the action on one object."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class ObjectOutcome(BaseManifest):
    """Per-object diff and apply outcome."""

    resource: str
    action: Action
    result: ObjectResult = ObjectResult.SUCCEEDED
    attempts: int = 0
    error: str | None = None
    error_kind: str | None = None
    health: Health | None = None


@dataclass
class HistoryEntry(BaseManifest):
    """A past reconciliation attempt."""

    phase: ReconcileState
    health: Health
    at: datetime
    fingerprint: str | None = None
    """Unset when the revision could not be resolved."""
    error_kind: str | None = None


@dataclass
class SyncStatus(BaseManifest):
    """The current sync status of one application."""

    application: str
    phase: ReconcileState = ReconcileState.IDLE
    health: Health = Health.UNKNOWN
    sync: SyncState = SyncState.UNKNOWN
    last_attempted_fingerprint: str | None = None
    last_synced_fingerprint: str | None = None
    objects: list[ObjectOutcome] = field(default_factory=list)
    error_kind: str | None = None
    error: str | None = None
    message: str | None = None
    updated_at: datetime | None = None
    history: list[HistoryEntry] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        """True if the last attempt ended with an error."""
        return self.phase == ReconcileState.FAILED or any(
            outcome.result == ObjectResult.FAILED for outcome in self.objects
        )

    def record(self, previous: "SyncStatus | None") -> "SyncStatus":
        """Carry over the history of the previous status and append this attempt.

        The last synced fingerprint is also carried over when this attempt did
        not reach a synced state.
        """
        if self.updated_at is None:
            self.updated_at = datetime.now(timezone.utc)
        history: list[HistoryEntry] = []
        if previous is not None:
            history = list(previous.history)
            if self.last_synced_fingerprint is None:
                self.last_synced_fingerprint = previous.last_synced_fingerprint
        history.append(
            HistoryEntry(
                fingerprint=self.last_attempted_fingerprint,
                phase=self.phase,
                health=self.health,
                at=self.updated_at,
                error_kind=self.error_kind,
            )
        )
        self.history = history[-MAX_HISTORY:]
        return self

    def __str__(self) -> str:
        """Return a one line summary of the status."""
        summary = f"{self.health} ({self.sync}, {self.phase})"
        if self.error:
            return f"{summary}: {self.error_kind}: {self.error}"
        return summary

    class Config(BaseConfig):
        omit_none = True
