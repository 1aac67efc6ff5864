"""A single reconciliation pass of one Application.

A pass converges the live objects owned by an Application towards a
DesiredStateSnapshot:

1. Desired objects are placed in the destination namespace, labelled as
   owned by the Application and validated. Nothing is written unless every
   object is valid.
2. Live objects carrying the owner label are listed and diffed against the
   desired objects.
3. Creates and updates are applied in canonical order, each with the
   resourceVersion that was read. A conflict or transient error re-reads
   only that object and retries it with backoff. Exhausting the retries
   marks the object as failed and the pass moves on.
4. Objects no longer desired are pruned in reverse order when pruning is
   enabled, and reported as orphaned otherwise.
5. The owned objects are re-read and their health is aggregated.

The pass checks whether it was superseded by a newer fingerprint at every
step boundary and stops with PassSuperseded when it was.

The Reconciler never writes the SyncStatus, that is left to the caller
which decides whether the result of the pass is still current.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import random

from tenacity import AsyncRetrying, RetryCallState

from driftless.config import ReconcilerConfig
from driftless.context import trace_context
from driftless.exceptions import (
    ConflictError,
    FatalError,
    ObjectNotFoundError,
    PassSuperseded,
    TransientIOError,
    ValidationError,
    error_kind,
)
from driftless.health import aggregate, assess
from driftless.manifest import (
    OWNER_LABEL,
    Application,
    DesiredStateSnapshot,
    ManagedObject,
    NamedResource,
)
from driftless.resource_diff import (
    SyncPlan,
    compute_plan,
    plan_diff,
    semantically_equal,
)
from driftless.retry import ExceptionTypes, FullJitter, log_retry, retrying
from driftless.store import (
    Action,
    Health,
    LiveObject,
    ObjectOutcome,
    ObjectResult,
    ReconcileState,
    Store,
    SyncState,
    SyncStatus,
)

from .state import StateMachine

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Reconciler",
    "SyncResult",
    "owner_labels",
]

Superseded = Callable[[], bool]


def owner_labels(application: str) -> dict[str, str]:
    """Labels marking an object as owned by an Application."""
    return {OWNER_LABEL: application}


@dataclass
class SyncResult:
    """The outcome of one reconciliation pass."""

    status: SyncStatus
    """Status to record for the Application (not yet persisted)."""

    snapshot: DesiredStateSnapshot | None = None
    """The snapshot the pass converged towards, None if rendering failed."""

    plan: SyncPlan | None = None
    """The plan computed at the start of the pass, if it got that far."""

    dry_run: bool = False

    diff: list[str] = field(default_factory=list)
    """Unified diff of the plan, only populated for a dry run."""

    history: list[ReconcileState] = field(default_factory=list)
    """States visited by the pass."""

    @property
    def failed(self) -> bool:
        return self.status.failed

    def changed(self) -> list[ObjectOutcome]:
        """Objects that were created, updated or pruned."""
        return [
            outcome
            for outcome in self.status.objects
            if outcome.result == ObjectResult.SUCCEEDED
            and outcome.action in (Action.CREATE, Action.UPDATE, Action.PRUNE)
        ]


class Reconciler:
    """Runs reconciliation passes against an object store."""

    def __init__(
        self,
        store: Store,
        config: ReconcilerConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the Reconciler.

        Args:
            store: The object store holding live objects
            config: Retry limits and backoff settings
            rng: Random source for backoff jitter
        """
        self._store = store
        self._config = config or ReconcilerConfig()
        self._rng = rng or random.Random()

    def _retrying(
        self,
        retry_on: ExceptionTypes,
        before_sleep: Callable[[RetryCallState], None],
    ) -> AsyncRetrying:
        wait = FullJitter(
            self._config.backoff_base,
            self._config.backoff_cap,
            rng=self._rng,
            immediate_first=True,
        )
        return retrying(
            wait,
            retry_on,
            max_retries=self._config.max_retries,
            before_sleep=before_sleep,
        )

    def prepare(
        self, app: Application, snapshot: DesiredStateSnapshot
    ) -> list[ManagedObject]:
        """Return the desired objects as they are written to the store.

        Raises:
            ValidationError: If any object would be rejected by the store.
        """
        labels = owner_labels(app.name)
        desired: dict[NamedResource, ManagedObject] = {}
        for obj in snapshot.objects:
            prepared = obj.with_defaults(app.destination_namespace, labels)
            self._store.validate(prepared.body)
            if prepared.resource_id in desired:
                raise ValidationError(
                    f"Duplicate object {prepared.resource_id} in {app.name}"
                )
            desired[prepared.resource_id] = prepared
        return sorted(desired.values(), key=lambda obj: obj.resource_id.sort_key)

    async def list_owned(self, application: str) -> list[LiveObject]:
        """List the live objects owned by an Application.

        Transient errors are retried with backoff.
        """
        log = log_retry(_LOGGER, logging.DEBUG, f"Listing {application}")
        async for attempt in self._retrying(TransientIOError, log):
            with attempt:
                live = await self._store.list(labels=owner_labels(application))
        return live

    async def _with_retries(
        self,
        resource_id: NamedResource,
        action: Action,
        write: Callable[[], Awaitable[None]],
        refresh: Callable[[], Awaitable[bool]],
        machine: StateMachine,
        check: Callable[[], None],
    ) -> ObjectOutcome:
        """Perform one write, retrying on conflicts and transient errors.

        The refresh callable re-reads the object and returns True when it
        already matches the intended result.
        """
        log = log_retry(_LOGGER, logging.DEBUG, f"Writing {resource_id}")

        def before_sleep(retry_state: RetryCallState) -> None:
            machine.transition(ReconcileState.CONFLICT_RETRY)
            log(retry_state)

        attempts = 0
        try:
            async for attempt in self._retrying(
                (ConflictError, TransientIOError), before_sleep
            ):
                if attempts:
                    check()
                    try:
                        converged = await refresh()
                    except TransientIOError as err:
                        _LOGGER.debug("Re-reading %s failed: %s", resource_id, err)
                        converged = False
                    machine.transition(ReconcileState.APPLYING)
                    if converged:
                        break
                attempts = attempt.retry_state.attempt_number
                with attempt:
                    await write()
        except ValidationError as err:
            _LOGGER.error("Store rejected %s: %s", resource_id, err)
            return ObjectOutcome(
                resource=str(resource_id),
                action=action,
                result=ObjectResult.FAILED,
                attempts=attempts,
                error=str(err),
                error_kind=err.kind,
            )
        except (ConflictError, TransientIOError) as err:
            _LOGGER.warning(
                "Giving up on %s after %d attempts: %s", resource_id, attempts, err
            )
            return ObjectOutcome(
                resource=str(resource_id),
                action=action,
                result=ObjectResult.FAILED,
                attempts=attempts,
                error=str(err),
                error_kind=error_kind(err),
            )
        return ObjectOutcome(
            resource=str(resource_id), action=action, attempts=attempts
        )

    async def _apply_object(
        self,
        obj: ManagedObject,
        live: LiveObject | None,
        machine: StateMachine,
        check: Callable[[], None],
    ) -> ObjectOutcome:
        action = Action.CREATE if live is None else Action.UPDATE
        expected: list[int | None] = [live.resource_version if live else None]

        async def write() -> None:
            version = await self._store.apply(obj.body, expected[0])
            _LOGGER.debug("Applied %s at version %d", obj.resource_id, version)

        async def refresh() -> bool:
            try:
                current = await self._store.get(obj.resource_id)
            except ObjectNotFoundError:
                expected[0] = None
                return False
            expected[0] = current.resource_version
            return semantically_equal(obj.body, current.body)

        return await self._with_retries(
            obj.resource_id, action, write, refresh, machine, check
        )

    async def _prune_object(
        self,
        live: LiveObject,
        machine: StateMachine,
        check: Callable[[], None],
    ) -> ObjectOutcome:
        expected = [live.resource_version]

        async def write() -> None:
            try:
                await self._store.delete(live.resource_id, expected[0])
            except ObjectNotFoundError:
                _LOGGER.debug("Object %s already deleted", live.resource_id)

        async def refresh() -> bool:
            try:
                current = await self._store.get(live.resource_id)
            except ObjectNotFoundError:
                return True
            expected[0] = current.resource_version
            return False

        return await self._with_retries(
            live.resource_id, Action.PRUNE, write, refresh, machine, check
        )

    async def assess(
        self, resource_ids: list[NamedResource]
    ) -> dict[NamedResource, Health]:
        """Re-read objects and return the health of each one that exists."""
        healths: dict[NamedResource, Health] = {}
        for resource_id in resource_ids:
            try:
                live = await self._store.get(resource_id)
            except ObjectNotFoundError:
                healths[resource_id] = Health.PROGRESSING
                continue
            healths[resource_id] = assess(live)
        return healths

    async def reconcile(
        self,
        app: Application,
        snapshot: DesiredStateSnapshot,
        *,
        prune: bool = False,
        dry_run: bool = False,
        superseded: Superseded | None = None,
        machine: StateMachine | None = None,
    ) -> SyncResult:
        """Run one reconciliation pass.

        Returns the result with a SyncStatus for the caller to record. Errors
        that abort the pass (ValidationError, FatalError, exhausted transient
        errors while listing) are reported in a Failed status.

        Raises:
            PassSuperseded: A newer fingerprint superseded this pass.
        """
        machine = machine or StateMachine(app.name)
        machine.reset()
        result = SyncResult(
            status=SyncStatus(
                application=app.name,
                last_attempted_fingerprint=snapshot.fingerprint,
            ),
            snapshot=snapshot,
            dry_run=dry_run,
        )

        def check() -> None:
            if superseded is not None and superseded():
                raise PassSuperseded(app.name, snapshot.fingerprint)

        try:
            with trace_context(f"Reconcile {app.name}@{snapshot.fingerprint}"):
                await self._run_pass(
                    app, snapshot, prune, dry_run, machine, check, result
                )
        except (PassSuperseded, asyncio.CancelledError):
            _LOGGER.info("Pass for %s at %s stopped", app.name, snapshot.fingerprint)
            machine.reset()
            raise
        except (ValidationError, FatalError, TransientIOError) as err:
            _LOGGER.error("Reconciliation of %s failed: %s", app.name, err)
            machine.fail()
            status = result.status
            status.phase = ReconcileState.FAILED
            status.health = (
                Health.UNKNOWN if isinstance(err, ValidationError) else Health.DEGRADED
            )
            status.sync = SyncState.OUT_OF_SYNC
            status.error_kind = error_kind(err)
            status.error = str(err)
        result.history = list(machine.history)
        result.status.updated_at = datetime.now(timezone.utc)
        return result

    async def _run_pass(
        self,
        app: Application,
        snapshot: DesiredStateSnapshot,
        prune: bool,
        dry_run: bool,
        machine: StateMachine,
        check: Callable[[], None],
        result: SyncResult,
    ) -> None:
        status = result.status
        machine.transition(ReconcileState.DIFFING)
        desired = self.prepare(app, snapshot)
        check()
        live = await self.list_owned(app.name)
        plan = compute_plan(desired, live)
        result.plan = plan
        check()

        if dry_run:
            result.diff = list(plan_diff(plan, prune))
            status.objects = [
                ObjectOutcome(
                    resource=str(resource_id),
                    action=action,
                    result=(
                        ObjectResult.SUCCEEDED
                        if action == Action.UNCHANGED
                        else ObjectResult.SKIPPED
                    ),
                )
                for resource_id, action in plan.actions(prune)
            ]
            status.sync = (
                SyncState.OUT_OF_SYNC if plan.has_changes else SyncState.SYNCED
            )
            status.message = "Dry run"
            machine.transition(ReconcileState.SETTLED)
            status.phase = machine.state
            return

        outcomes: dict[NamedResource, ObjectOutcome] = {
            obj.resource_id: ObjectOutcome(
                resource=str(obj.resource_id), action=Action.UNCHANGED
            )
            for obj, _ in plan.unchanged
        }
        to_apply: list[tuple[ManagedObject, LiveObject | None]] = [
            (obj, None) for obj in plan.to_create
        ] + list(plan.to_update)
        to_apply.sort(key=lambda item: item[0].resource_id.sort_key)
        if to_apply or (prune and plan.to_prune):
            machine.transition(ReconcileState.APPLYING)

        for obj, live_obj in to_apply:
            check()
            outcomes[obj.resource_id] = await self._apply_object(
                obj, live_obj, machine, check
            )

        orphans: list[LiveObject] = []
        if prune:
            for live_obj in plan.to_prune:
                check()
                outcomes[live_obj.resource_id] = await self._prune_object(
                    live_obj, machine, check
                )
        else:
            orphans = plan.to_prune
            for live_obj in orphans:
                _LOGGER.info("Leaving orphaned object %s", live_obj.resource_id)
                outcomes[live_obj.resource_id] = ObjectOutcome(
                    resource=str(live_obj.resource_id),
                    action=Action.ORPHANED,
                    result=ObjectResult.SKIPPED,
                )
        check()

        desired_ids = [obj.resource_id for obj in desired]
        healths = await self.assess(desired_ids)
        for resource_id, health in healths.items():
            if (outcome := outcomes.get(resource_id)) is not None:
                outcome.health = health

        ordered = [outcomes[resource_id] for resource_id in desired_ids]
        ordered += [outcomes[obj.resource_id] for obj in plan.to_prune]
        status.objects = ordered
        failed = [o for o in ordered if o.result == ObjectResult.FAILED]

        if failed or orphans:
            status.health = Health.DEGRADED
        else:
            status.health = aggregate(healths.values())
        if failed:
            status.sync = SyncState.OUT_OF_SYNC
            status.error_kind = failed[-1].error_kind
            status.error = f"{failed[-1].resource}: {failed[-1].error}"
        else:
            status.sync = SyncState.OUT_OF_SYNC if orphans else SyncState.SYNCED
            status.last_synced_fingerprint = snapshot.fingerprint
        status.message = _summary(ordered)
        machine.transition(ReconcileState.SETTLED)
        status.phase = machine.state
        _LOGGER.info(
            "Reconciled %s at %s: %s (%s)",
            app.name,
            snapshot.fingerprint,
            status.health,
            status.message,
        )


def _summary(outcomes: list[ObjectOutcome]) -> str:
    counts = {action: 0 for action in Action}
    failed = 0
    for outcome in outcomes:
        if outcome.result == ObjectResult.FAILED:
            failed += 1
        else:
            counts[outcome.action] += 1
    return (
        f"{counts[Action.CREATE]} created, {counts[Action.UPDATE]} updated, "
        f"{counts[Action.PRUNE]} pruned, {counts[Action.UNCHANGED]} unchanged, "
        f"{counts[Action.ORPHANED]} orphaned, {failed} failed"
    )
