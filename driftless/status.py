"""Status Reporter.

Answers "what is the state of this application" from persisted records only,
so it never triggers reconciliation and works while an application is
failing, halted or has never been synced.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .applications import ApplicationStore
from .manifest import Application
from .pipeline import PipelineRun
from .store import Health, ReconcileState, SyncState, SyncStatus

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ApplicationStatus",
    "StatusReporter",
]


@dataclass
class ApplicationStatus(DataClassDictMixin):
    """The reported state of one Application."""

    application: Application
    status: SyncStatus
    latest_run: PipelineRun | None = None
    synced: bool = field(default=False)
    """True once any pass has written a status."""

    @property
    def name(self) -> str:
        return self.application.name

    def summary(self) -> dict[str, Any]:
        """Return the fields printed by the command line tool."""
        result: dict[str, Any] = {
            "name": self.name,
            "health": str(self.status.health),
            "sync": str(self.status.sync),
            "phase": str(self.status.phase),
            "revision": self.application.target_revision,
            "fingerprint": self.status.last_attempted_fingerprint or "",
            "syncedFingerprint": self.status.last_synced_fingerprint or "",
        }
        if self.status.error:
            result["error"] = f"{self.status.error_kind}: {self.status.error}"
        elif self.status.message:
            result["message"] = self.status.message
        if self.latest_run is not None:
            result["pipeline"] = self.latest_run.summary()
        return result

    class Config(BaseConfig):
        omit_none = True


class StatusReporter:
    """Reads the status of Applications."""

    def __init__(self, applications: ApplicationStore) -> None:
        self._applications = applications

    async def get_status(self, name: str) -> ApplicationStatus:
        """Return the status of an Application.

        Before the first pass the status is Unknown.

        Raises:
            ObjectNotFoundError: If the Application does not exist.
        """
        app = await self._applications.get(name)
        status = await self._applications.read_status(name)
        synced = status is not None
        if status is None:
            status = SyncStatus(
                application=name,
                phase=ReconcileState.IDLE,
                health=Health.UNKNOWN,
                sync=SyncState.UNKNOWN,
                message="Not synced yet",
            )
        runs = await self._applications.list_runs(name)
        return ApplicationStatus(
            application=app,
            status=status,
            latest_run=runs[-1] if runs else None,
            synced=synced,
        )

    async def list_status(self) -> list[ApplicationStatus]:
        """Return the status of every Application, sorted by name."""
        return [
            await self.get_status(app.name)
            for app in await self._applications.list()
        ]
