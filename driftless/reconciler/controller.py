"""Application Controller module.

This controller runs one worker task per Application. Each worker consumes a
bounded queue of events (sync requests, new source fingerprints and changes
to owned live objects) and runs reconciliation passes one at a time, guarded
by a per-Application lock.

Key Concepts:
    - Last fingerprint wins: The most recently observed fingerprint is
      honored. A pass for an older fingerprint stops at its next step
      boundary and never writes its status.
    - Self-heal: A live object that diverges from the last applied desired
      object (or is deleted) outside of a pass triggers a new pass when the
      Application enables self-heal.
    - Health refresh: Status-only changes of owned objects re-assess health,
      so an Application turns Healthy once its workloads report ready.
    - Fatal errors halt automated processing of one Application until an
      explicit sync, other Applications are not affected.

Watch streams run as separate tasks per (kind, namespace) and route events
to Applications by the owner label.
"""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
import logging
import random
from typing import Any

from driftless.applications import ApplicationStore
from driftless.config import ControllerConfig, ReconcilerConfig
from driftless.exceptions import (
    ConflictError,
    FatalError,
    ObjectNotFoundError,
    PassSuperseded,
    RenderError,
    TransientIOError,
    ValidationError,
    error_kind,
)
from driftless.health import aggregate
from driftless.manifest import (
    OWNER_LABEL,
    Application,
    DesiredStateSnapshot,
    NamedResource,
)
from driftless.renderer import ManifestRenderer
from driftless.resource_diff import normalize
from driftless.retry import FullJitter, log_retry, retrying
from driftless.source import Source, SourceWatcher
from driftless.store import (
    Action,
    BoundedEventQueue,
    EventType,
    Health,
    ObjectResult,
    ReconcileState,
    Store,
    SyncState,
    SyncStatus,
    WatchEvent,
)
from driftless.task import get_task_service

from .reconciler import Reconciler, SyncResult
from .state import StateMachine

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ApplicationController",
    "AppEvent",
    "AppEventType",
]


class AppEventType(StrEnum):
    """Events consumed by an Application worker."""

    SYNC = "Sync"
    SOURCE_CHANGED = "SourceChanged"
    OBJECT_CHANGED = "ObjectChanged"


@dataclass(frozen=True)
class AppEvent:
    """An event queued for an Application worker."""

    type: AppEventType
    fingerprint: str | None = None
    watch_event: WatchEvent | None = None


@dataclass
class _Worker:
    """Runtime state of one Application."""

    app: Application
    queue: BoundedEventQueue[AppEvent]
    machine: StateMachine
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None

    latest_fingerprint: str | None = None
    """The most recently observed source fingerprint."""

    generation: int = 0
    """Incremented when the Application definition changes."""

    last_applied: dict[NamedResource, dict[str, Any]] = field(default_factory=dict)
    """Normalized desired objects of the last completed pass."""

    watermark: int = 0
    """Highest resourceVersion of owned objects seen after the last pass."""

    halted: bool = False
    """Set after a FatalError, cleared by an explicit sync."""


class ApplicationController:
    """Controller running reconciliation for a set of Applications."""

    def __init__(
        self,
        store: Store,
        source: Source,
        config: ControllerConfig | None = None,
        reconciler_config: ReconcilerConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the ApplicationController.

        Args:
            store: Object store holding live objects and Application records
            source: Transport used to resolve and read deployment repositories
            config: Queue size and control namespace
            reconciler_config: Retry limits and backoff settings
            rng: Random source for backoff jitter
        """
        self._store = store
        self._source = source
        self._config = config or ControllerConfig()
        self._reconciler_config = reconciler_config or ReconcilerConfig()
        self._rng = rng or random.Random()
        self._applications = ApplicationStore(store, self._config.control_namespace)
        self._renderer = ManifestRenderer(source)
        self._reconciler = Reconciler(store, self._reconciler_config, self._rng)
        self._workers: dict[str, _Worker] = {}
        self._watches: dict[tuple[str, str | None], asyncio.Task[None]] = {}
        self._task_service = get_task_service()
        self.watcher: SourceWatcher | None = None

    @property
    def applications(self) -> ApplicationStore:
        return self._applications

    def names(self) -> list[str]:
        """Names of the Applications with a running worker."""
        return sorted(self._workers)

    def machine(self, name: str) -> StateMachine:
        """The state machine of an Application."""
        return self._get_worker(name).machine

    def _get_worker(self, name: str) -> _Worker:
        if (worker := self._workers.get(name)) is None:
            raise ObjectNotFoundError(f"Application {name} is not tracked")
        return worker

    async def add(self, app: Application) -> None:
        """Start a worker for an Application."""
        if app.name in self._workers:
            await self.update(app)
            return
        worker = _Worker(
            app=app,
            queue=BoundedEventQueue(self._config.queue_size, name=app.name),
            machine=StateMachine(app.name),
        )
        worker.idle.set()
        self._workers[app.name] = worker
        worker.task = self._task_service.create_background_task(
            self._run_worker(worker), name=f"worker-{app.name}"
        )
        # Resume watching objects applied by an earlier process
        if (status := await self._applications.read_status(app.name)) is not None:
            for outcome in status.objects:
                self._ensure_watch(NamedResource.parse(outcome.resource))
        _LOGGER.info("Tracking application %s", app.name)

    async def update(self, app: Application) -> None:
        """Replace the definition of a tracked Application.

        A pass for the previous definition is superseded.
        """
        worker = self._get_worker(app.name)
        worker.app = app
        worker.generation += 1
        if app.policy.automated:
            self._enqueue(worker, AppEvent(AppEventType.SYNC))

    async def remove(self, name: str, cascade: bool = False) -> None:
        """Stop the worker of an Application, cancelling any pass in progress.

        With `cascade` the live objects owned by the Application are deleted.
        """
        if (worker := self._workers.pop(name, None)) is None:
            raise ObjectNotFoundError(f"Application {name} is not tracked")
        if worker.task is not None:
            worker.task.cancel()
            await asyncio.gather(worker.task, return_exceptions=True)
        async with worker.lock:
            worker.machine.reset()
        if cascade:
            await self.delete_owned(name)
        _LOGGER.info("Stopped tracking application %s", name)

    async def delete_owned(self, name: str) -> list[NamedResource]:
        """Delete every live object owned by an Application."""
        deleted = []
        for obj in reversed(await self._reconciler.list_owned(name)):
            for _ in range(self._reconciler_config.max_retries + 1):
                try:
                    current = await self._store.get(obj.resource_id)
                    await self._store.delete(obj.resource_id, current.resource_version)
                except ObjectNotFoundError:
                    break
                except ConflictError:
                    continue
                deleted.append(obj.resource_id)
                _LOGGER.info("Deleted %s", obj.resource_id)
                break
        return deleted

    def request_sync(self, name: str) -> None:
        """Queue an automated pass for an Application."""
        self._enqueue(self._get_worker(name), AppEvent(AppEventType.SYNC))

    async def on_fingerprint_changed(self, name: str, fingerprint: str) -> None:
        """Record a newly observed source fingerprint.

        Any pass for an older fingerprint is superseded. Automated
        Applications get a new pass.
        """
        if (worker := self._workers.get(name)) is None:
            return
        worker.latest_fingerprint = fingerprint
        if worker.app.policy.automated:
            self._enqueue(
                worker, AppEvent(AppEventType.SOURCE_CHANGED, fingerprint=fingerprint)
            )

    async def sync(
        self, name: str, prune: bool = False, dry_run: bool = False
    ) -> SyncResult:
        """Run an explicit pass and return its result.

        The current head of the tracked revision is resolved first. An
        explicit sync clears a halt caused by a fatal error.
        """
        worker = self._get_worker(name)
        worker.halted = False
        while True:
            result = await self._pass(
                worker,
                prune=prune or worker.app.policy.prune,
                dry_run=dry_run,
                resolve=True,
            )
            if result is not None:
                return result
            _LOGGER.info("Explicit sync of %s was superseded, retrying", name)

    async def wait_idle(self, name: str) -> None:
        """Wait until the worker of an Application has no pending events."""
        worker = self._get_worker(name)
        while True:
            # Let watch streams deliver events for the last writes
            for _ in range(5):
                await asyncio.sleep(0)
            if worker.idle.is_set() and not len(worker.queue):
                return
            await worker.idle.wait()

    async def close(self) -> None:
        """Stop all workers and watch streams."""
        tasks = [w.task for w in self._workers.values() if w.task is not None]
        tasks += list(self._watches.values())
        self._workers.clear()
        self._watches.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _enqueue(self, worker: _Worker, event: AppEvent) -> None:
        worker.idle.clear()
        worker.queue.put_nowait(event)

    def _ensure_watch(self, resource_id: NamedResource) -> None:
        key = (resource_id.kind, resource_id.namespace)
        if key in self._watches:
            return
        _LOGGER.debug("Starting watch for %s in %s", *key)
        self._watches[key] = self._task_service.create_background_task(
            self._watch_loop(*key), name=f"watch-{key[0]}-{key[1]}"
        )

    async def _watch_loop(self, kind: str, namespace: str | None) -> None:
        async for event in self._store.watch(kind, namespace):
            owner = event.object.labels.get(OWNER_LABEL)
            if owner is None or (worker := self._workers.get(owner)) is None:
                continue
            self._enqueue(
                worker, AppEvent(AppEventType.OBJECT_CHANGED, watch_event=event)
            )

    async def _run_worker(self, worker: _Worker) -> None:
        """Consume the queue of one Application until cancelled."""
        while True:
            if not len(worker.queue):
                worker.idle.set()
            event = await worker.queue.get()
            worker.idle.clear()
            events = [event] + worker.queue.drain()
            try:
                await self._handle(worker, events)
            except asyncio.CancelledError:
                raise
            except Exception as err:
                _LOGGER.exception(
                    "Unexpected error handling %s: %s", worker.app.name, err
                )

    async def _handle(self, worker: _Worker, events: list[AppEvent]) -> None:
        """Handle a batch of events, at most one pass is run for the batch."""
        name = worker.app.name
        run_pass = False
        refresh = False
        drifted = False
        async with worker.lock:
            for event in events:
                if event.type != AppEventType.OBJECT_CHANGED:
                    run_pass = True
                    continue
                if (watch_event := event.watch_event) is None:
                    _LOGGER.warning("Ignoring change of %s without an event", name)
                    continue
                change = self._classify(worker, watch_event)
                if change == "drift":
                    drifted = True
                    if worker.app.policy.automated and worker.app.policy.self_heal:
                        _LOGGER.info(
                            "Drift of %s detected, self-healing %s",
                            watch_event.object.resource_id,
                            name,
                        )
                        run_pass = True
                    refresh = True
                elif change == "health":
                    refresh = True
        if run_pass:
            if worker.halted:
                _LOGGER.warning(
                    "Application %s is halted after a fatal error, "
                    "an explicit sync is required",
                    name,
                )
                return
            await self._pass(
                worker, prune=worker.app.policy.prune, dry_run=False, resolve=False
            )
        elif refresh:
            await self._refresh_health(worker, drifted)

    def _classify(self, worker: _Worker, event: WatchEvent) -> str | None:
        """Classify a change of an owned object as drift, health or noise."""
        resource_id = event.object.resource_id
        if (applied := worker.last_applied.get(resource_id)) is None:
            return None
        if event.type == EventType.DELETED:
            return "drift"
        if event.object.resource_version <= worker.watermark:
            return None
        if normalize(event.object.body) != applied:
            return "drift"
        return "health"

    async def _resolve(self, worker: _Worker) -> str:
        """Resolve the tracked revision, retrying transient errors."""
        app = worker.app
        policy = retrying(
            FullJitter(
                self._reconciler_config.backoff_base,
                self._reconciler_config.backoff_cap,
                rng=self._rng,
            ),
            TransientIOError,
            max_retries=self._reconciler_config.max_retries,
            before_sleep=log_retry(
                _LOGGER, logging.WARNING, f"Fetching source of {app.name}"
            ),
        )
        async for attempt in policy:
            with attempt:
                fingerprint = await self._source.resolve(
                    app.repo_url, app.target_revision, app.path
                )
        return fingerprint

    async def _pass(
        self, worker: _Worker, prune: bool, dry_run: bool, resolve: bool
    ) -> SyncResult | None:
        """Render and reconcile one Application.

        Returns None when the pass was superseded by a newer fingerprint.
        """
        async with worker.lock:
            app = worker.app
            generation = worker.generation
            try:
                if resolve or worker.latest_fingerprint is None:
                    fingerprint = await self._resolve(worker)
                    worker.latest_fingerprint = fingerprint
                    if self.watcher is not None:
                        self.watcher.mark_seen(app.name, fingerprint)
                else:
                    fingerprint = worker.latest_fingerprint
                snapshot = await self._renderer.render(
                    app.repo_url,
                    app.target_revision,
                    app.path,
                    images=app.images,
                    fingerprint=fingerprint,
                )
            except (RenderError, ValidationError, TransientIOError) as err:
                _LOGGER.error("Unable to render %s: %s", app.name, err)
                worker.machine.reset()
                worker.machine.fail()
                status = SyncStatus(
                    application=app.name,
                    phase=worker.machine.state,
                    health=(
                        Health.DEGRADED
                        if isinstance(err, TransientIOError)
                        else Health.UNKNOWN
                    ),
                    sync=SyncState.UNKNOWN,
                    last_attempted_fingerprint=worker.latest_fingerprint,
                    error_kind=error_kind(err),
                    error=str(err),
                )
                if not dry_run:
                    await self._applications.write_status(status)
                return SyncResult(status=status, dry_run=dry_run)

            def superseded() -> bool:
                return (
                    worker.latest_fingerprint != fingerprint
                    or worker.generation != generation
                )

            try:
                result = await self._reconciler.reconcile(
                    app,
                    snapshot,
                    prune=prune,
                    dry_run=dry_run,
                    superseded=superseded,
                    machine=worker.machine,
                )
            except PassSuperseded:
                _LOGGER.info(
                    "Pass of %s at %s superseded by %s",
                    app.name,
                    fingerprint,
                    worker.latest_fingerprint,
                )
                return None
            if dry_run:
                return result
            if superseded():
                _LOGGER.info(
                    "Discarding stale status of %s at %s", app.name, fingerprint
                )
                return None

            await self._applications.write_status(result.status)
            if result.status.error_kind == FatalError.kind:
                _LOGGER.error(
                    "Halting automated reconciliation of %s: %s",
                    app.name,
                    result.status.error,
                )
                worker.halted = True
            if result.status.phase != ReconcileState.FAILED:
                await self._record_applied(worker, app, snapshot)
            return result

    async def _record_applied(
        self, worker: _Worker, app: Application, snapshot: DesiredStateSnapshot
    ) -> None:
        """Remember what was applied, for drift detection."""
        desired = self._reconciler.prepare(app, snapshot)
        worker.last_applied = {
            obj.resource_id: normalize(obj.body) for obj in desired
        }
        owned = await self._reconciler.list_owned(app.name)
        worker.watermark = max(
            [worker.watermark] + [obj.resource_version for obj in owned]
        )
        for obj in desired:
            self._ensure_watch(obj.resource_id)

    async def _refresh_health(self, worker: _Worker, drifted: bool) -> None:
        """Re-assess health after owned objects changed outside a pass."""
        async with worker.lock:
            name = worker.app.name
            status = await self._applications.read_status(name)
            if status is None or status.phase == ReconcileState.FAILED:
                return
            healths = await self._reconciler.assess(list(worker.last_applied))
            for outcome in status.objects:
                resource_id = NamedResource.parse(outcome.resource)
                if (health := healths.get(resource_id)) is not None:
                    outcome.health = health
            failed = any(o.result == ObjectResult.FAILED for o in status.objects)
            orphaned = any(o.action == Action.ORPHANED for o in status.objects)
            owned = {obj.resource_id for obj in await self._reconciler.list_owned(name)}
            missing = any(rid not in owned for rid in worker.last_applied)
            if failed or orphaned or missing:
                health = Health.DEGRADED
            else:
                health = aggregate(healths.values())
            sync = status.sync
            if drifted or missing:
                sync = SyncState.OUT_OF_SYNC
            if health == status.health and sync == status.sync:
                return
            _LOGGER.info("Health of %s changed: %s -> %s", name, status.health, health)
            status.health = health
            status.sync = sync
            await self._applications.write_status(status, record=False)
