"""Tests for the pipeline trigger."""

import asyncio

import pytest

from driftless.applications import ApplicationStore
from driftless.config import PipelineConfig
from driftless.exceptions import (
    BuildException,
    ObjectNotFoundError,
    ValidationError,
)
from driftless.pipeline import (
    BuildExecutor,
    InMemoryRegistry,
    PipelineRun,
    PipelineTrigger,
    RegistryBuildExecutor,
    RunOutcome,
)
from driftless.store import InMemoryStore


class FailingExecutor(BuildExecutor):
    async def build(self, source_ref: str, image_tag: str) -> str:
        raise BuildException(f"Unable to build {source_ref}")


@pytest.fixture(name="registry")
def registry_fixture() -> InMemoryRegistry:
    return InMemoryRegistry()


async def test_build_and_await(registry: InMemoryRegistry) -> None:
    trigger = PipelineTrigger(RegistryBuildExecutor(registry))
    run = await trigger.submit("main", "demo-app:latest", application="demo-app")
    assert run.outcome == RunOutcome.PENDING
    assert run.run_id.startswith("run-")
    assert run.submitted_at is not None

    finished = await trigger.await_run(run.run_id, timeout=5)
    assert finished.outcome == RunOutcome.SUCCEEDED
    assert finished.digest == registry.resolve("demo-app:latest")
    assert finished.finished_at is not None
    assert finished.summary() == (
        f"{run.run_id} Succeeded main -> demo-app:latest {finished.digest}"
    )
    # Waiting on a finished run returns it as is
    assert await trigger.await_run(run.run_id) is finished
    assert trigger.get(run.run_id) is finished
    assert trigger.latest("demo-app") is finished
    assert trigger.latest("other-app") is None


async def test_await_timeout_returns_pending(registry: InMemoryRegistry) -> None:
    trigger = PipelineTrigger(RegistryBuildExecutor(registry, delay=0.2))
    run = await trigger.submit("main", "demo-app:latest")
    pending = await trigger.await_run(run.run_id, timeout=0.01)
    assert pending.outcome == RunOutcome.PENDING
    assert pending == run

    finished = await trigger.await_run(run.run_id, timeout=5)
    assert finished.outcome == RunOutcome.SUCCEEDED


async def test_build_failure() -> None:
    trigger = PipelineTrigger(FailingExecutor())
    run = await trigger.submit("broken", "demo-app:latest")
    finished = await trigger.await_run(run.run_id, timeout=5)
    assert finished.outcome == RunOutcome.FAILED
    assert finished.digest is None
    assert finished.error == "Unable to build broken"
    assert finished.summary().endswith(": Unable to build broken")


async def test_build_timeout(registry: InMemoryRegistry) -> None:
    trigger = PipelineTrigger(
        RegistryBuildExecutor(registry, delay=5), PipelineConfig(timeout=0.01)
    )
    run = await trigger.submit("main", "demo-app:latest")
    finished = await trigger.await_run(run.run_id, timeout=5)
    assert finished.outcome == RunOutcome.FAILED
    assert "timed out" in (finished.error or "")


@pytest.mark.parametrize(
    ("source_ref", "image_tag", "match"),
    [
        ("", "demo-app:latest", "source reference"),
        ("main", "", "image tag"),
    ],
)
async def test_submit_invalid(source_ref: str, image_tag: str, match: str) -> None:
    trigger = PipelineTrigger(RegistryBuildExecutor(InMemoryRegistry()))
    with pytest.raises(ValidationError, match=match):
        await trigger.submit(source_ref, image_tag)
    assert trigger.runs() == []


async def test_unknown_run() -> None:
    trigger = PipelineTrigger(RegistryBuildExecutor(InMemoryRegistry()))
    with pytest.raises(ObjectNotFoundError):
        trigger.get("run-missing")
    with pytest.raises(ObjectNotFoundError):
        await trigger.await_run("run-missing")


async def test_listeners(registry: InMemoryRegistry) -> None:
    """Test listeners see each finished run once, failing listeners are logged."""
    trigger = PipelineTrigger(RegistryBuildExecutor(registry))
    seen: list[PipelineRun] = []
    notified = asyncio.Event()

    def failing(run: PipelineRun) -> None:
        raise ValidationError("listener failed")

    async def record(run: PipelineRun) -> None:
        seen.append(run)
        notified.set()

    trigger.add_listener(failing)
    remove = trigger.add_listener(record)
    run = await trigger.submit("main", "demo-app:latest")
    async with asyncio.timeout(5):
        await notified.wait()
    assert [r.run_id for r in seen] == [run.run_id]
    assert seen[0].outcome == RunOutcome.SUCCEEDED

    remove()
    second = await trigger.submit("main", "demo-app:v2")
    await trigger.await_run(second.run_id, timeout=5)
    await asyncio.sleep(0)
    assert len(seen) == 1


async def test_runs_are_recorded(registry: InMemoryRegistry) -> None:
    applications = ApplicationStore(InMemoryStore())
    trigger = PipelineTrigger(RegistryBuildExecutor(registry), recorder=applications)
    run = await trigger.submit("main", "demo-app:latest", application="demo-app")
    (recorded,) = await applications.list_runs("demo-app")
    assert recorded.run_id == run.run_id

    finished = await trigger.await_run(run.run_id, timeout=5)
    (recorded,) = await applications.list_runs("demo-app")
    assert recorded == finished
    assert await applications.list_runs("other-app") == []
