"""Tests for the application controller."""

from collections.abc import AsyncGenerator, Callable
import random
from typing import Any

import pytest

from driftless.config import ControllerConfig, ReconcilerConfig
from driftless.exceptions import ObjectNotFoundError, PermissionDeniedError
from driftless.manifest import Application, NamedResource
from driftless.reconciler import ApplicationController
from driftless.source import MemorySource
from driftless.store import (
    Health,
    InMemoryStore,
    ReconcileState,
    SyncState,
)
from driftless.store.store import resource_id_of

DEPLOYMENT = NamedResource("Deployment", "demo", "demo-app")
SERVICE = NamedResource("Service", "demo", "demo-app")
READY = {"readyReplicas": 1, "replicas": 1, "observedGeneration": 1}


class LockedStore(InMemoryStore):
    """An InMemoryStore that denies writes of Deployments while locked."""

    def __init__(self) -> None:
        super().__init__()
        self.locked = False

    async def apply(self, body: dict[str, Any], expected_version: int | None) -> int:
        if self.locked and resource_id_of(body).kind == "Deployment":
            raise PermissionDeniedError("Deployments are locked")
        return await super().apply(body, expected_version)


@pytest.fixture(name="locked_store")
def locked_store_fixture() -> LockedStore:
    return LockedStore()


@pytest.fixture(name="controller")
async def controller_fixture(
    locked_store: LockedStore, source: MemorySource, rng: random.Random
) -> AsyncGenerator[ApplicationController, None]:
    controller = ApplicationController(
        locked_store,
        source,
        ControllerConfig(),
        ReconcilerConfig(backoff_base=0.001, backoff_cap=0.01),
        rng=rng,
    )
    yield controller
    await controller.close()


async def settle(controller: ApplicationController, name: str) -> None:
    """Wait for the worker and for watch streams to catch up."""
    await controller.wait_idle(name)
    await controller.wait_idle(name)


async def track(controller: ApplicationController, app: Application) -> None:
    await controller.applications.create(app)
    await controller.add(app)


async def test_sync_and_become_healthy(
    controller: ApplicationController,
    locked_store: LockedStore,
    demo_app: Application,
) -> None:
    """Test an explicit sync and the health refresh once the workload is ready."""
    await track(controller, demo_app)
    assert controller.names() == ["demo-app"]

    result = await controller.sync("demo-app")
    assert result.snapshot is not None
    assert result.status.phase == ReconcileState.SETTLED
    assert result.status.sync == SyncState.SYNCED
    assert result.status.health == Health.PROGRESSING
    await settle(controller, "demo-app")

    await locked_store.update_status(DEPLOYMENT, READY)
    await settle(controller, "demo-app")

    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.health == Health.HEALTHY
    assert status.sync == SyncState.SYNCED
    assert status.last_synced_fingerprint == result.snapshot.fingerprint
    # A health refresh is not a new attempt
    assert len(status.history) == 1
    assert controller.machine("demo-app").state == ReconcileState.SETTLED


async def test_manual_application_reports_drift(
    controller: ApplicationController,
    locked_store: LockedStore,
    demo_app: Application,
) -> None:
    await track(controller, demo_app)
    await controller.sync("demo-app")
    await settle(controller, "demo-app")

    live = await locked_store.get(DEPLOYMENT)
    live.body["spec"]["replicas"] = 3
    await locked_store.apply(live.body, live.resource_version)
    await settle(controller, "demo-app")

    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.sync == SyncState.OUT_OF_SYNC
    # Manual applications are not healed
    live = await locked_store.get(DEPLOYMENT)
    assert live.body["spec"]["replicas"] == 3


async def test_self_heal(
    controller: ApplicationController,
    locked_store: LockedStore,
    automated_app: Application,
) -> None:
    """Test drift and deletion of owned objects are reverted."""
    await track(controller, automated_app)
    controller.request_sync("demo-app")
    await settle(controller, "demo-app")
    assert await locked_store.get(SERVICE)

    live = await locked_store.get(DEPLOYMENT)
    live.body["spec"]["replicas"] = 3
    await locked_store.apply(live.body, live.resource_version)
    await settle(controller, "demo-app")
    live = await locked_store.get(DEPLOYMENT)
    assert live.body["spec"]["replicas"] == 1

    service = await locked_store.get(SERVICE)
    await locked_store.delete(SERVICE, service.resource_version)
    await settle(controller, "demo-app")
    assert await locked_store.get(SERVICE)

    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.sync == SyncState.SYNCED
    assert len(status.history) == 3


async def test_latest_fingerprint_wins(
    controller: ApplicationController,
    locked_store: LockedStore,
    source: MemorySource,
    automated_app: Application,
    make_files: Callable[..., dict[str, str]],
) -> None:
    """Test fingerprints observed while a worker is busy result in one pass."""
    await track(controller, automated_app)
    controller.request_sync("demo-app")
    await settle(controller, "demo-app")

    fingerprints = []
    for tag in ("v2", "v3"):
        source.set_revision(automated_app.repo_url, "main", make_files(tag=tag))
        fingerprints.append(
            await source.resolve(automated_app.repo_url, "main", automated_app.path)
        )
    for fingerprint in fingerprints:
        await controller.on_fingerprint_changed("demo-app", fingerprint)
    await settle(controller, "demo-app")

    live = await locked_store.get(DEPLOYMENT)
    container = live.body["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == "registry.example.com/demo-app:v3"
    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.last_synced_fingerprint == fingerprints[-1]
    assert [entry.fingerprint for entry in status.history][1:] == [fingerprints[-1]]


async def test_fatal_error_halts_application(
    controller: ApplicationController,
    locked_store: LockedStore,
    automated_app: Application,
) -> None:
    """Test automated passes stop after a fatal error until an explicit sync."""
    locked_store.locked = True
    await track(controller, automated_app)
    controller.request_sync("demo-app")
    await settle(controller, "demo-app")

    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.phase == ReconcileState.FAILED
    assert status.error_kind == "Fatal"

    controller.request_sync("demo-app")
    await settle(controller, "demo-app")
    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert len(status.history) == 1

    locked_store.locked = False
    result = await controller.sync("demo-app")
    assert result.status.phase == ReconcileState.SETTLED
    assert result.status.sync == SyncState.SYNCED


async def test_render_failure_recorded(
    controller: ApplicationController, demo_app: Application
) -> None:
    demo_app.path = "apps/missing"
    await track(controller, demo_app)
    result = await controller.sync("demo-app")
    assert result.status.phase == ReconcileState.FAILED
    assert result.status.error_kind == "RenderError/NotFound"
    assert result.snapshot is None
    status = await controller.applications.read_status("demo-app")
    assert status is not None
    assert status.error_kind == "RenderError/NotFound"


async def test_dry_run_writes_nothing(
    controller: ApplicationController,
    locked_store: LockedStore,
    demo_app: Application,
) -> None:
    await track(controller, demo_app)
    result = await controller.sync("demo-app", dry_run=True)
    assert result.dry_run
    assert result.diff
    assert await controller.applications.read_status("demo-app") is None
    with pytest.raises(ObjectNotFoundError):
        await locked_store.get(DEPLOYMENT)


async def test_remove_with_cascade(
    controller: ApplicationController,
    locked_store: LockedStore,
    demo_app: Application,
) -> None:
    await track(controller, demo_app)
    await controller.sync("demo-app")
    await controller.remove("demo-app", cascade=True)
    assert controller.names() == []
    with pytest.raises(ObjectNotFoundError):
        await locked_store.get(DEPLOYMENT)
    with pytest.raises(ObjectNotFoundError):
        controller.request_sync("demo-app")
    with pytest.raises(ObjectNotFoundError):
        await controller.remove("demo-app")
