"""Tests for the task service."""

import asyncio

import pytest

from driftless.task import TaskService, get_task_service, task_service_context


@pytest.fixture(name="task_service")
def task_service_fixture() -> TaskService:
    return TaskService()


async def test_block_till_done(task_service: TaskService) -> None:
    results: list[str] = []

    async def work(name: str) -> None:
        await asyncio.sleep(0.01)
        results.append(name)

    task_service.create_task(work("run-1"), name="run-1")
    task_service.create_task(work("run-2"), name="run-2")
    assert task_service.pending() == ["run-1", "run-2"]
    await task_service.block_till_done()
    assert sorted(results) == ["run-1", "run-2"]
    assert task_service.pending() == []


async def test_failed_task_is_untracked(task_service: TaskService) -> None:
    async def fail() -> None:
        raise ValueError("boom")

    task = task_service.create_task(fail(), name="run-1")
    await task_service.block_till_done()
    assert task.done()
    assert isinstance(task.exception(), ValueError)
    assert task_service.pending() == []


async def test_background_tasks_are_not_waited(task_service: TaskService) -> None:
    """Test long running loops only end when cancelled."""
    loop = task_service.create_background_task(asyncio.sleep(60), name="poller")
    await task_service.block_till_done()
    assert not loop.done()
    assert task_service.pending() == []
    assert task_service.pending(background=True) == ["poller"]

    await task_service.cancel_all()
    assert loop.cancelled()
    assert task_service.pending(background=True) == []


async def test_task_service_context() -> None:
    service = TaskService()
    with task_service_context(service) as current:
        assert current is service
        assert get_task_service() is service
    assert get_task_service() is not service

    with task_service_context() as fresh:
        assert get_task_service() is fresh
