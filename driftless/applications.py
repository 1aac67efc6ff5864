"""Persistence of Applications, their SyncStatus and pipeline runs.

Application definitions, their sync status and the history of pipeline runs
are stored as objects of kind `Application`, `SyncStatus` and `PipelineRun`
in the control namespace, so no separate database is needed. Applications
and SyncStatus are read-modify-write records protected by the
store's optimistic concurrency.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any

from mashumaro.exceptions import InvalidFieldValue, MissingField

from .config import DEFAULT_CONTROL_NAMESPACE
from .exceptions import ConflictError, ObjectNotFoundError, ValidationError
from .manifest import (
    API_VERSION,
    APPLICATION_KIND,
    PIPELINE_RUN_KIND,
    SYNC_STATUS_KIND,
    Application,
    NamedResource,
)
from .pipeline.run import PipelineRun
from .store import LiveObject, Store, SyncStatus

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ApplicationStore",
]

# Attempts of a read-modify-write before giving up on a conflict
MAX_WRITE_ATTEMPTS = 10

# Key holding the record in a SyncStatus object
RECORD_KEY = "record"


class ApplicationStore:
    """Reads and writes Application and SyncStatus records."""

    def __init__(
        self, store: Store, namespace: str = DEFAULT_CONTROL_NAMESPACE
    ) -> None:
        self._store = store
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    def _app_id(self, name: str) -> NamedResource:
        return NamedResource(APPLICATION_KIND, self._namespace, name)

    def _status_id(self, name: str) -> NamedResource:
        return NamedResource(SYNC_STATUS_KIND, self._namespace, name)

    def _app_body(self, app: Application) -> dict[str, Any]:
        spec = app.to_dict()
        del spec["name"]
        return {
            "apiVersion": API_VERSION,
            "kind": APPLICATION_KIND,
            "metadata": {"name": app.name, "namespace": self._namespace},
            "spec": spec,
        }

    def _parse_app(self, obj: LiveObject) -> Application:
        try:
            return Application.from_dict({**obj.spec, "name": obj.name})
        except (InvalidFieldValue, MissingField) as err:
            raise ValidationError(f"Invalid Application {obj.name}: {err}") from err

    async def create(self, app: Application) -> Application:
        """Persist a new Application.

        Raises:
            ValidationError: If the Application is invalid or already exists.
        """
        app.validate()
        try:
            await self._store.apply(self._app_body(app), None)
        except ConflictError as err:
            raise ValidationError(f"Application {app.name} already exists") from err
        _LOGGER.info("Created application %s", app.name)
        return app

    async def get(self, name: str) -> Application:
        """Return an Application or raise ObjectNotFoundError."""
        try:
            obj = await self._store.get(self._app_id(name))
        except ObjectNotFoundError as err:
            raise ObjectNotFoundError(f"Application {name} not found") from err
        return self._parse_app(obj)

    async def list(self) -> list[Application]:
        """Return all Applications sorted by name."""
        objects = await self._store.list(
            kind=APPLICATION_KIND, namespace=self._namespace
        )
        return sorted(
            (self._parse_app(obj) for obj in objects), key=lambda app: app.name
        )

    async def update(
        self, name: str, mutate: Callable[[Application], None]
    ) -> Application:
        """Apply a change to an Application, retrying on conflicts."""
        for attempt in range(MAX_WRITE_ATTEMPTS):
            try:
                obj = await self._store.get(self._app_id(name))
            except ObjectNotFoundError as err:
                raise ObjectNotFoundError(f"Application {name} not found") from err
            app = self._parse_app(obj)
            mutate(app)
            app.validate()
            try:
                await self._store.apply(self._app_body(app), obj.resource_version)
            except ConflictError:
                _LOGGER.debug("Conflict updating %s (attempt %d)", name, attempt + 1)
                continue
            return app
        raise ConflictError(str(self._app_id(name)), None, None)

    async def delete(self, name: str) -> None:
        """Delete an Application and its SyncStatus."""
        for resource_id in (self._status_id(name), self._app_id(name)):
            for _ in range(MAX_WRITE_ATTEMPTS):
                try:
                    obj = await self._store.get(resource_id)
                    await self._store.delete(resource_id, obj.resource_version)
                except ObjectNotFoundError:
                    break
                except ConflictError:
                    continue
                break
        _LOGGER.info("Deleted application %s", name)

    async def read_status(self, name: str) -> SyncStatus | None:
        """Return the SyncStatus of an Application, None before the first pass."""
        try:
            obj = await self._store.get(self._status_id(name))
        except ObjectNotFoundError:
            return None
        return SyncStatus.from_dict(obj.spec[RECORD_KEY])

    async def write_status(self, status: SyncStatus, record: bool = True) -> None:
        """Write the SyncStatus of an Application.

        When `record` is set the status is a new attempt: the history of the
        previous status is carried over with this attempt appended. Otherwise
        the status replaces the current one in place, e.g. after a health
        refresh.
        """
        resource_id = self._status_id(status.application)
        for attempt in range(MAX_WRITE_ATTEMPTS):
            try:
                current = await self._store.get(resource_id)
            except ObjectNotFoundError:
                current = None
            previous = (
                SyncStatus.from_dict(current.spec[RECORD_KEY]) if current else None
            )
            to_write = SyncStatus.from_dict(status.to_dict())
            if record:
                to_write.record(previous)
            elif previous is not None:
                to_write.history = previous.history
            body = {
                "apiVersion": API_VERSION,
                "kind": SYNC_STATUS_KIND,
                "metadata": {
                    "name": status.application,
                    "namespace": self._namespace,
                },
                "spec": {RECORD_KEY: to_write.to_dict()},
            }
            try:
                await self._store.apply(
                    body, current.resource_version if current else None
                )
            except ConflictError:
                _LOGGER.debug(
                    "Conflict writing status of %s (attempt %d)",
                    status.application,
                    attempt + 1,
                )
                continue
            status.history = to_write.history
            status.last_synced_fingerprint = to_write.last_synced_fingerprint
            status.updated_at = to_write.updated_at
            return
        raise ConflictError(str(resource_id), None, None)

    def _run_id(self, run_id: str) -> NamedResource:
        return NamedResource(PIPELINE_RUN_KIND, self._namespace, run_id)

    async def write_run(self, run: PipelineRun) -> None:
        """Record a pipeline run.

        A terminal run that was already recorded is never replaced.
        """
        resource_id = self._run_id(run.run_id)
        try:
            current = await self._store.get(resource_id)
        except ObjectNotFoundError:
            current = None
        if current is not None and PipelineRun.from_dict(current.spec).terminal:
            _LOGGER.debug("Run %s is already terminal", run.run_id)
            return
        body = {
            "apiVersion": API_VERSION,
            "kind": PIPELINE_RUN_KIND,
            "metadata": {"name": run.run_id, "namespace": self._namespace},
            "spec": run.to_dict(),
        }
        await self._store.apply(body, current.resource_version if current else None)

    async def list_runs(self, application: str | None = None) -> list[PipelineRun]:
        """Return recorded pipeline runs in submission order."""
        objects = await self._store.list(
            kind=PIPELINE_RUN_KIND, namespace=self._namespace
        )
        runs = [PipelineRun.from_dict(obj.spec) for obj in objects]
        if application is not None:
            runs = [run for run in runs if run.application == application]
        return sorted(
            runs,
            key=lambda run: run.submitted_at.isoformat() if run.submitted_at else "",
        )
