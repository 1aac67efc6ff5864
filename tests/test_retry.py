"""Tests for retry policies."""

import logging
import random

import pytest

from driftless.exceptions import ConflictError, TransientIOError, ValidationError
from driftless.retry import FullJitter, log_retry, retrying


async def no_sleep(delay: float) -> None:
    pass


def test_ceilings() -> None:
    wait = FullJitter(base=1.0, cap=30.0)
    assert [wait.ceiling(n) for n in range(1, 8)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        30.0,
        30.0,
    ]

    immediate = FullJitter(base=1.0, cap=30.0, immediate_first=True)
    assert [immediate.ceiling(n) for n in range(1, 6)] == [0.0, 1.0, 2.0, 4.0, 8.0]


async def test_seeded_delays_are_reproducible() -> None:
    schedules = []
    for _ in range(2):
        delays: list[float] = []

        async def record(delay: float) -> None:
            delays.append(delay)

        policy = retrying(
            FullJitter(5.0, 300.0, rng=random.Random(7)),
            TransientIOError,
            max_retries=4,
            sleep=record,
        )
        with pytest.raises(TransientIOError):
            async for attempt in policy:
                with attempt:
                    raise TransientIOError("connection reset")
        schedules.append(delays)

    assert len(schedules[0]) == 4
    assert schedules[0] == schedules[1]
    assert all(0 <= delay <= 5.0 * 2**n for n, delay in enumerate(schedules[0]))


async def test_retries_until_success(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG)
    delays: list[float] = []

    async def record(delay: float) -> None:
        delays.append(delay)

    calls = 0
    policy = retrying(
        FullJitter(1.0, 30.0, rng=random.Random(1), immediate_first=True),
        (ConflictError, TransientIOError),
        max_retries=5,
        before_sleep=log_retry(logging.getLogger(__name__), logging.DEBUG, "Write"),
        sleep=record,
    )
    async for attempt in policy:
        with attempt:
            calls += 1
            if calls < 3:
                raise ConflictError("ConfigMap/demo/web", 1, 2)

    assert calls == 3
    assert delays[0] == 0.0
    assert 0 <= delays[1] <= 1.0
    messages = [record.getMessage() for record in caplog.records]
    assert messages[0].startswith("Write failed (attempt 1), retrying in 0.00s")


async def test_other_errors_are_not_retried() -> None:
    calls = 0
    policy = retrying(
        FullJitter(1.0, 30.0), TransientIOError, max_retries=5, sleep=no_sleep
    )
    with pytest.raises(ValidationError):
        async for attempt in policy:
            with attempt:
                calls += 1
                raise ValidationError("missing metadata.name")
    assert calls == 1


async def test_unbounded_retries() -> None:
    calls = 0
    policy = retrying(FullJitter(5.0, 300.0), TransientIOError, sleep=no_sleep)
    async for attempt in policy:
        with attempt:
            calls += 1
            if calls < 20:
                raise TransientIOError("connection reset")
    assert calls == 20
