"""Module for in memory object store."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncGenerator
import itertools
import logging
from typing import Any
import uuid

from driftless.manifest import NamedResource, strip_server_fields
from driftless.exceptions import ConflictError, ObjectNotFoundError

from .store import EventType, LiveObject, Store, WatchEvent, resource_id_of


_LOGGER = logging.getLogger(__name__)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are kept as raw documents keyed by NamedResource. A single
    store-wide counter provides monotonically increasing resourceVersions and
    every change is fanned out to the queues of active watches.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, LiveObject] = {}
        self._version = itertools.count(1)
        self._last_version = 0
        self._watchers: list[
            tuple[str | None, str | None, asyncio.Queue[WatchEvent]]
        ] = []

    def _next_version(self) -> int:
        self._last_version = next(self._version)
        return self._last_version

    async def get(self, resource_id: NamedResource) -> LiveObject:
        """Return the object or raise ObjectNotFoundError."""
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return _copy(obj)

    async def list(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[LiveObject]:
        """List objects, optionally filtered by kind, namespace and labels."""
        results = []
        for resource_id in sorted(self._objects, key=_sort_key):
            obj = self._objects[resource_id]
            if kind is not None and obj.kind != kind:
                continue
            if namespace is not None and obj.namespace != namespace:
                continue
            if labels and any(obj.labels.get(k) != v for k, v in labels.items()):
                continue
            results.append(_copy(obj))
        return results

    async def apply(self, body: dict[str, Any], expected_version: int | None) -> int:
        """Create or update an object and return its new resourceVersion."""
        self.validate(body)
        resource_id = resource_id_of(body)
        existing = self._objects.get(resource_id)
        current_version = existing.resource_version if existing else None
        if existing is not None and expected_version is None:
            raise ConflictError(str(resource_id), expected_version, current_version)
        if existing is not None and strip_server_fields(
            existing.body
        ) == strip_server_fields(body):
            _LOGGER.debug("Object %s is unchanged, skipping", resource_id)
            return existing.resource_version
        if expected_version != current_version:
            raise ConflictError(str(resource_id), expected_version, current_version)

        version = self._next_version()
        new_body = strip_server_fields(body)
        metadata = new_body.setdefault("metadata", {})
        if existing is None:
            metadata["uid"] = str(uuid.uuid4())
            metadata["generation"] = 1
        else:
            old_metadata = existing.body["metadata"]
            metadata["uid"] = old_metadata["uid"]
            metadata["generation"] = old_metadata.get("generation", 1) + 1
            if "status" in existing.body:
                new_body["status"] = copy.deepcopy(existing.body["status"])
        metadata["resourceVersion"] = str(version)
        obj = LiveObject(
            kind=resource_id.kind,
            namespace=resource_id.namespace,
            name=resource_id.name,
            body=new_body,
            resource_version=version,
        )
        self._objects[resource_id] = obj
        _LOGGER.debug("Stored %s at version %d", resource_id, version)
        self._fire_event(
            EventType.ADDED if existing is None else EventType.MODIFIED, obj
        )
        return version

    async def update_status(
        self, resource_id: NamedResource, status: dict[str, Any]
    ) -> int:
        """Replace the status of an object, as written by the cluster."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        version = self._next_version()
        body = copy.deepcopy(existing.body)
        body["status"] = copy.deepcopy(status)
        body["metadata"]["resourceVersion"] = str(version)
        obj = LiveObject(
            kind=existing.kind,
            namespace=existing.namespace,
            name=existing.name,
            body=body,
            resource_version=version,
        )
        self._objects[resource_id] = obj
        self._fire_event(EventType.MODIFIED, obj)
        return version

    async def delete(self, resource_id: NamedResource, expected_version: int) -> None:
        """Delete an object."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        if existing.resource_version != expected_version:
            raise ConflictError(
                str(resource_id), expected_version, existing.resource_version
            )
        del self._objects[resource_id]
        _LOGGER.debug("Deleted %s", resource_id)
        self._fire_event(EventType.DELETED, existing)

    def _fire_event(self, event_type: EventType, obj: LiveObject) -> None:
        for kind, namespace, queue in list(self._watchers):
            if kind is not None and obj.kind != kind:
                continue
            if namespace is not None and obj.namespace != namespace:
                continue
            queue.put_nowait(WatchEvent(type=event_type, object=_copy(obj)))

    async def watch(
        self, kind: str | None = None, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent, None]:
        """Yield change events for matching objects until cancelled."""
        queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        entry = (kind, namespace, queue)
        self._watchers.append(entry)
        _LOGGER.debug("Started watch for kind=%s namespace=%s", kind, namespace)
        try:
            while True:
                yield await queue.get()
        finally:
            _LOGGER.debug("Stopped watch for kind=%s namespace=%s", kind, namespace)
            self._watchers.remove(entry)

    @property
    def resource_version(self) -> int:
        """The most recent resourceVersion handed out by the store."""
        return self._last_version

    def dump(self) -> list[dict[str, Any]]:
        """Return a copy of every object document, in identifier order."""
        return [
            copy.deepcopy(self._objects[resource_id].body)
            for resource_id in sorted(self._objects, key=_sort_key)
        ]

    def load(self, docs: list[dict[str, Any]], resource_version: int) -> None:
        """Replace the contents of the store without firing events."""
        self._objects.clear()
        for doc in docs:
            resource_id = resource_id_of(doc)
            self._objects[resource_id] = LiveObject(
                kind=resource_id.kind,
                namespace=resource_id.namespace,
                name=resource_id.name,
                body=copy.deepcopy(doc),
                resource_version=int(doc["metadata"]["resourceVersion"]),
            )
        self._last_version = resource_version
        self._version = itertools.count(resource_version + 1)


def _copy(obj: LiveObject) -> LiveObject:
    """Return a copy so callers never mutate the stored document."""
    return LiveObject(
        kind=obj.kind,
        namespace=obj.namespace,
        name=obj.name,
        body=copy.deepcopy(obj.body),
        resource_version=obj.resource_version,
    )


def _sort_key(resource_id: NamedResource) -> tuple[str, str, str]:
    return (resource_id.kind, resource_id.namespace or "", resource_id.name)
