"""Source Watcher module.

The watcher polls the deployment repository of every tracked Application and
emits a FingerprintChanged event when the revision the Application tracks
moves to a new commit.

Key Concepts:
    - Fingerprint: The commit hash a revision currently resolves to
    - Deduplication: An event is emitted exactly once per observed change,
      keyed by the last seen fingerprint of each Application
    - Push notifications: `notify` polls every Application on a repository
      immediately, e.g. from a webhook

Transient fetch failures are retried with exponential backoff and full
jitter. The poll loop never gives up, so a later revision is still detected
once the repository becomes reachable again.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import random

from driftless.config import SourceWatcherConfig
from driftless.exceptions import SourceNotFoundError, TransientIOError
from driftless.manifest import Application
from driftless.retry import FullJitter, log_retry, retrying
from driftless.task import get_task_service

from .source import Source

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "FingerprintChanged",
    "SourceWatcher",
]


@dataclass(frozen=True)
class FingerprintChanged:
    """Emitted when the tracked revision of an Application moves."""

    application: str
    fingerprint: str
    previous: str | None = None


@dataclass(frozen=True)
class _Target:
    """The repository location watched for one Application."""

    repo_url: str
    revision: str
    path: str


FingerprintCallback = Callable[[FingerprintChanged], Awaitable[None]]


class SourceWatcher:
    """Watches deployment repositories for new revisions."""

    def __init__(
        self,
        source: Source,
        callback: FingerprintCallback,
        config: SourceWatcherConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the SourceWatcher.

        Args:
            source: Transport used to resolve revisions
            callback: Invoked once for every observed fingerprint change
            config: Poll interval and backoff settings
            rng: Random source for backoff jitter
        """
        self._source = source
        self._callback = callback
        self._config = config or SourceWatcherConfig()
        self._rng = rng or random.Random()
        self._targets: dict[str, _Target] = {}
        self._last_seen: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False
        self._task_service = get_task_service()

    def track(self, app: Application) -> None:
        """Start (or update) watching the source of an Application."""
        target = _Target(app.repo_url, app.target_revision, app.path)
        if (existing := self._targets.get(app.name)) == target:
            return
        if existing is not None:
            _LOGGER.debug("Source of %s changed, resetting last seen", app.name)
            self._last_seen.pop(app.name, None)
        self._targets[app.name] = target
        self._locks.setdefault(app.name, asyncio.Lock())
        if self._running and app.name not in self._tasks:
            self._start_loop(app.name)

    def untrack(self, name: str) -> None:
        """Stop watching an Application."""
        self._targets.pop(name, None)
        self._last_seen.pop(name, None)
        self._locks.pop(name, None)
        if (task := self._tasks.pop(name, None)) is not None:
            task.cancel()

    def tracked(self) -> list[str]:
        """Names of the tracked Applications."""
        return sorted(self._targets)

    def last_seen(self, name: str) -> str | None:
        """The last fingerprint observed for an Application."""
        return self._last_seen.get(name)

    def mark_seen(self, name: str, fingerprint: str) -> None:
        """Record a fingerprint observed elsewhere, e.g. by an explicit sync."""
        if name in self._targets:
            self._last_seen[name] = fingerprint

    async def poll_once(self, name: str) -> FingerprintChanged | None:
        """Resolve the tracked revision of one Application.

        Returns the emitted event, or None when the fingerprint is unchanged.

        Raises:
            TransientIOError: The repository could not be fetched.
            SourceNotFoundError: The revision or path does not exist.
        """
        if (target := self._targets.get(name)) is None:
            return None
        async with self._locks.setdefault(name, asyncio.Lock()):
            fingerprint = await self._source.resolve(
                target.repo_url, target.revision, target.path
            )
            if self._targets.get(name) != target:
                # Untracked or changed while resolving
                return None
            previous = self._last_seen.get(name)
            if fingerprint == previous:
                return None
            self._last_seen[name] = fingerprint
        event = FingerprintChanged(name, fingerprint, previous)
        _LOGGER.info(
            "Source of %s changed: %s -> %s", name, previous or "<none>", fingerprint
        )
        await self._callback(event)
        return event

    async def notify(self, repo_url: str) -> list[FingerprintChanged]:
        """Handle a push notification for a repository.

        Every Application on the repository is polled at once. Failures for
        one Application are logged and do not prevent the others from being
        polled, the regular poll loop picks them up later.
        """
        names = [
            name
            for name, target in self._targets.items()
            if target.repo_url == repo_url
        ]
        _LOGGER.debug("Push notification for %s: polling %s", repo_url, names)
        events = []
        for name in names:
            try:
                event = await self.poll_once(name)
            except (TransientIOError, SourceNotFoundError) as err:
                _LOGGER.warning("Unable to poll source of %s: %s", name, err)
                continue
            if event is not None:
                events.append(event)
        return events

    async def _run(self, name: str) -> None:
        """Poll loop for one Application, runs until cancelled."""
        wait = FullJitter(
            self._config.backoff_base, self._config.backoff_cap, rng=self._rng
        )
        log = log_retry(_LOGGER, logging.WARNING, f"Fetching source of {name}")
        while name in self._targets:
            try:
                async for attempt in retrying(wait, TransientIOError, before_sleep=log):
                    with attempt:
                        await self.poll_once(name)
            except SourceNotFoundError as err:
                _LOGGER.warning("Source of %s not found: %s", name, err)
            await asyncio.sleep(self._config.interval)

    def _start_loop(
self, name: str) -> None:
        self._tasks[name] = self._task_service.create_background_task(
            self._run(name), name=f"source-watcher-{name}"
        )

    def start(self) -> None:
        """Start the poll loops of all tracked Applications."""
        self._running = True
        for name in self._targets:
            if name not in self._tasks:
                self._start_loop(name)

    async def close(self) -> None:
        """Stop all poll loops."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
