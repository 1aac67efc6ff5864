"""Orchestrator for driftless.

This module wires the object store, the source watcher, the application
controller, the pipeline trigger and the status reporter together and
provides the operations of the control surface.
"""

import asyncio
import logging
from pathlib import Path
import random

from driftless.applications import ApplicationStore
from driftless.config import DriftlessConfig
from driftless.exceptions import ObjectNotFoundError, ValidationError
from driftless.images import parse_image
from driftless.manifest import Application, ImageOverride
from driftless.pipeline import (
    BuildExecutor,
    CommandBuildExecutor,
    PipelineRun,
    PipelineTrigger,
    RunOutcome,
)
from driftless.reconciler import ApplicationController, SyncResult
from driftless.source import FingerprintChanged, GitSource, Source, SourceWatcher
from driftless.status import ApplicationStatus, StatusReporter
from driftless.store import FileStore, Store

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Orchestrator",
]


class Orchestrator:
    """Orchestrator for coordinating the components of driftless.

    The orchestrator is responsible for:
    - Loading the persisted Applications and handing them to the controller
    - Forwarding new source fingerprints to the controller
    - Submitting pipeline runs and promoting their images
    - Providing a unified interface for starting/stopping the system
    """

    def __init__(
        self,
        store: Store,
        source: Source,
        config: DriftlessConfig | None = None,
        executor: BuildExecutor | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Object store holding live objects and Application records
            source: Transport for deployment repositories
            config: Settings of every component
            executor: Builds images, pipeline runs are rejected without one
            rng: Random source for backoff jitter
        """
        self.store = store
        self.config = config or DriftlessConfig()
        self.controller = ApplicationController(
            store,
            source,
            self.config.controller,
            self.config.reconciler,
            rng=rng,
        )
        self.watcher = SourceWatcher(
            source, self._on_fingerprint_changed, self.config.source, rng=rng
        )
        self.controller.watcher = self.watcher
        self.trigger: PipelineTrigger | None = None
        if executor is not None:
            self.trigger = PipelineTrigger(
                executor, self.config.pipeline, recorder=self.applications
            )
            self.trigger.add_listener(self._on_run_finished)
        self.reporter = StatusReporter(self.applications)
        self._started = False

    @classmethod
    async def open(
        cls, config: DriftlessConfig, state_file: Path | None = None
    ) -> "Orchestrator":
        """Create an orchestrator backed by the state file and git."""
        store = await FileStore.open(state_file or Path(config.state_file))
        executor = None
        if config.pipeline.build_command:
            executor = CommandBuildExecutor(config.pipeline.build_command)
        return cls(store, GitSource(), config, executor)

    @property
    def applications(self) -> ApplicationStore:
        return self.controller.applications

    async def start(self, watch: bool = False) -> None:
        """Start a worker for every persisted Application.

        With `watch` the source repositories are also polled for changes.
        """
        if not self._started:
            _LOGGER.info("Starting orchestrator")
            self._started = True
            for app in await self.applications.list():
                await self._track(app)
        if watch:
            self.watcher.start()

    async def _track(self, app: Application) -> None:
        if app.name in self.controller.names():
            await self.controller.update(app)
        else:
            await self.controller.add(app)
        self.watcher.track(app)

    async def close(self) -> None:
        """Stop the source watcher and the controller."""
        _LOGGER.info("Stopping orchestrator")
        await self.watcher.close()
        await self.controller.close()
        self._started = False

    async def serve(self) -> None:
        """Run the controller loop until cancelled."""
        await self.start(watch=True)
        for name in self.controller.names():
            app = await self.applications.get(name)
            if app.policy.automated:
                self.controller.request_sync(name)
        try:
            await asyncio.Event().wait()
        finally:
            await self.close()

    async def _on_fingerprint_changed(self, event: FingerprintChanged) -> None:
        await self.controller.on_fingerprint_changed(
            event.application, event.fingerprint
        )

    async def create_application(self, app: Application) -> Application:
        """Persist a new Application and start reconciling it if running."""
        await self.applications.create(app)
        if self._started:
            await self._track(app)
            if app.policy.automated:
                self.controller.request_sync(app.name)
        return app

    async def delete_application(self, name: str, cascade: bool = False) -> None:
        """Stop tracking an Application and delete its records.

        With `cascade` the live objects owned by the Application are deleted
        too, otherwise they are left in place.
        """
        await self.applications.get(name)
        self.watcher.untrack(name)
        if name in self.controller.names():
            await self.controller.remove(name, cascade=cascade)
        elif cascade:
            await self.controller.delete_owned(name)
        await self.applications.delete(name)

    async def list_applications(self) -> list[Application]:
        return await self.applications.list()

    async def get_status(self, name: str) -> ApplicationStatus:
        return await self.reporter.get_status(name)

    async def sync(
        self, name: str, prune: bool = False, dry_run: bool = False
    ) -> SyncResult:
        """Run an explicit reconciliation pass of an Application."""
        app = await self.applications.get(name)
        if name not in self.controller.names():
            await self.controller.add(app)
        return await self.controller.sync(name, prune=prune, dry_run=dry_run)

    async def build(
        self,
        name: str,
        source_ref: str,
        image_tag: str,
        timeout: float | None = None,
        promote: bool = False,
    ) -> PipelineRun:
        """Run the pipeline for an Application and wait for the outcome.

        A run still Pending when the timeout expires is returned as is.
        """
        if self.trigger is None:
            raise ValidationError(
                "No build executor configured, set pipeline.build_command"
            )
        await self.applications.get(name)
        run = await self.trigger.submit(source_ref, image_tag, application=name)
        run = await self.trigger.await_run(run.run_id, timeout)
        if promote and run.outcome == RunOutcome.SUCCEEDED:
            await self.promote(name, run.run_id)
        return run

    async def _find_run(self, run_id: str) -> PipelineRun:
        if self.trigger is not None:
            try:
                return self.trigger.get(run_id)
            except ObjectNotFoundError:
                pass
        for run in await self.applications.list_runs():
            if run.run_id == run_id:
                return run
        raise ObjectNotFoundError(f"Pipeline run {run_id} not found")

    async def promote(self, name: str, run_id: str) -> Application:
        """Deploy the image built by a run to an Application.

        The digest of the run is recorded as an image override, so the next
        render of the Application references the built image.
        """
        run = await self._find_run(run_id)
        if run.outcome != RunOutcome.SUCCEEDED or not run.digest:
            raise ValidationError(
                f"Pipeline run {run_id} did not succeed: {run.outcome}"
            )
        image_name, _, _ = parse_image(run.image_tag)
        override = ImageOverride(name=image_name, digest=run.digest)
        app = await self.applications.update(
            name, lambda app: app.set_image(override)
        )
        _LOGGER.info("Promoted %s@%s to %s", image_name, run.digest, name)
        if name in self.controller.names():
            await self.controller.update(app)
        return app

    async def _on_run_finished(self, run: PipelineRun) -> None:
        """Promote successful runs to automated Applications of the image."""
        if run.outcome != RunOutcome.SUCCEEDED:
            return
        repository, _, _ = parse_image(run.image_tag)
        for app in await self.applications.list():
            if app.image_repository != repository or not app.policy.automated:
                continue
            await self.promote(app.name, run.run_id)
