"""Pipeline Trigger module.

Submits build-and-push runs and lets callers wait for their outcome.

Example usage:
```python
trigger = PipelineTrigger(RegistryBuildExecutor(registry))
run = await trigger.submit("main", "demo-app:latest")
run = await trigger.await_run(run.run_id, timeout=60)
if run.outcome == RunOutcome.SUCCEEDED:
    print(f"Built {run.digest}")
```

Waiting never blocks anything but the caller: each run is its own task and
`await_run` suspends on an event that is set when the run finishes. A wait
that times out returns the Pending run as it is, so it is safe to wait again.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
import inspect
import logging
from typing import TYPE_CHECKING
import uuid

from driftless.config import PipelineConfig
from driftless.exceptions import (
    DriftlessException,
    ObjectNotFoundError,
    ValidationError,
)
from driftless.task import get_task_service

from .executor import BuildExecutor
from .run import PipelineRun

if TYPE_CHECKING:
    from driftless.applications import ApplicationStore

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "PipelineTrigger",
]

RunListener = Callable[[PipelineRun], Awaitable[None] | None]


class PipelineTrigger:
    """Submits pipeline runs and tracks their outcome."""

    def __init__(
        self,
        executor: BuildExecutor,
        config: PipelineConfig | None = None,
        recorder: "ApplicationStore | None" = None,
    ) -> None:
        """Initialize the PipelineTrigger.

        Args:
            executor: Performs the build and push
            config: Build timeout
            recorder: Persists the run history, if set
        """
        self._executor = executor
        self._config = config or PipelineConfig()
        self._recorder = recorder
        self._runs: dict[str, PipelineRun] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._listeners: list[RunListener] = []
        self._task_service = get_task_service()

    def add_listener(self, listener: RunListener) -> Callable[[], None]:
        """Call the listener with every run that finishes.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            self._listeners.remove(listener)

        return remove

    async def submit(
        self, source_ref: str, image_tag: str, application: str | None = None
    ) -> PipelineRun:
        """Start a build and return the Pending run."""
        if not source_ref:
            raise ValidationError("A source reference is required")
        if not image_tag:
            raise ValidationError("An image tag is required")
        run = PipelineRun(
            run_id=f"run-{uuid.uuid4().hex[:12]}",
            source_ref=source_ref,
            image_tag=image_tag,
            application=application,
            submitted_at=datetime.now(timezone.utc),
        )
        self._runs[run.run_id] = run
        self._done[run.run_id] = asyncio.Event()
        if self._recorder is not None:
            await self._recorder.write_run(run)
        _LOGGER.info("Submitted %s: %s -> %s", run.run_id, source_ref, image_tag)
        self._task_service.create_task(self._execute(run), name=run.run_id)
        return run

    async def _execute(self, run: PipelineRun) -> None:
        try:
            digest = await asyncio.wait_for(
                self._executor.build(run.source_ref, run.image_tag),
                self._config.timeout,
            )
        except asyncio.TimeoutError:
            finished = run.fail(f"Build timed out after {self._config.timeout}s")
        except DriftlessException as err:
            finished = run.fail(str(err))
        else:
            finished = run.succeed(digest)
        await self._finish(finished)

    async def _finish(self, run: PipelineRun) -> None:
        if self._runs[run.run_id].terminal:
            return
        self._runs[run.run_id] = run
        self._done[run.run_id].set()
        _LOGGER.info("Pipeline %s", run.summary())
        if self._recorder is not None:
            await self._recorder.write_run(run)
        for listener in list(self._listeners):
            try:
                result = listener(run)
                if inspect.isawaitable(result):
                    await result
            except DriftlessException as err:
                _LOGGER.error("Run listener failed for %s: %s", run.run_id, err)

    def get(self, run_id: str) -> PipelineRun:
        """Return the current state of a run."""
        if (run := self._runs.get(run_id)) is None:
            raise ObjectNotFoundError(f"Pipeline run {run_id} not found")
        return run

    async def await_run(self, run_id: str, timeout: float | None = None) -> PipelineRun:
        """Wait for a run to finish.

        Returns the terminal run, or the unchanged Pending run if the timeout
        expires first. Waiting on a terminal run returns the same object.
        """
        run = self.get(run_id)
        if run.terminal:
            return run
        try:
            await asyncio.wait_for(self._done[run_id].wait(), timeout)
        except asyncio.TimeoutError:
            _LOGGER.debug("Timed out waiting for %s", run_id)
        return self._runs[run_id]

    def runs(self, application: str | None = None) -> list[PipelineRun]:
        """Return the runs submitted by this trigger in submission order."""
        return [
            run
            for run in self._runs.values()
            if application is None or run.application == application
        ]

    def latest(self, application: str) -> PipelineRun | None:
        """Return the most recently submitted run of an application."""
        if runs := self.runs(application):
            return runs[-1]
        return None
