"""Object store interface modelled after a cluster resource API."""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TYPE_CHECKING

from driftless.manifest import NamedResource, is_dns_subdomain

from driftless.exceptions import ValidationError


class EventType(StrEnum):
    """Type of a change event delivered by `Store.watch`."""

    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"


@dataclass(frozen=True)
class LiveObject:
    """Observed state of one object in the store."""

    kind: str
    namespace: str | None
    name: str
    body: dict[str, Any] = field(compare=False, hash=False)
    resource_version: int = 0

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return dict(self.body.get("metadata", {}).get("labels") or {})

    @property
    def spec(self) -> dict[str, Any]:
        return self.body.get("spec") or {}

    @property
    def status(self) -> dict[str, Any]:
        return self.body.get("status") or {}


@dataclass(frozen=True)
class WatchEvent:
    """A change to an object in the store."""

    type: EventType
    object: LiveObject


def resource_id_of(body: dict[str, Any]) -> NamedResource:
    """Return the identity of a raw object document."""
    metadata = body.get("metadata") or {}
    return NamedResource(body["kind"], metadata.get("namespace"), metadata["name"])


def validate_object(body: Any) -> None:
    """Check that a raw object can be written to the store."""
    if not isinstance(body, dict):
        raise ValidationError(f"Invalid object, expected a mapping: {body}")
    if not body.get("apiVersion"):
        raise ValidationError(f"Invalid object missing apiVersion: {body}")
    if not (kind := body.get("kind")):
        raise ValidationError(f"Invalid object missing kind: {body}")
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        raise ValidationError(f"Invalid {kind} missing metadata")
    if not (name := metadata.get("name")) or not isinstance(name, str):
        raise ValidationError(f"Invalid {kind} missing metadata.name")
    if not is_dns_subdomain(name):
        raise ValidationError(f"Invalid {kind} name '{name}': must be DNS-1123")
    if (namespace := metadata.get("namespace")) is not None and not is_dns_subdomain(
        str(namespace)
    ):
        raise ValidationError(f"Invalid {kind} {name} namespace '{namespace}'")
    labels = metadata.get("labels")
    if labels is not None and (
        not isinstance(labels, dict)
        or not all(isinstance(v, str) for v in labels.values())
    ):
        raise ValidationError(f"Invalid {kind} {name} labels must be a string map")


class Store(ABC):
    """Abstract base class for a declarative object store.

    Objects are identified by (kind, namespace, name). Every write carries an
    expected resourceVersion and fails with ConflictError when the object was
    modified in the meantime.
    """

    def validate(self, body: dict[str, Any]) -> None:
        """Raise ValidationError if the object would be rejected by `apply`."""
        validate_object(body)

    @abstractmethod
    async def get(self, resource_id: NamedResource) -> LiveObject:
        """Return the object or raise ObjectNotFoundError."""

    @abstractmethod
    async def list(
        self,
        kind: str | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[LiveObject]:
        """List objects, optionally filtered by kind, namespace and labels."""

    @abstractmethod
    async def apply(self, body: dict[str, Any], expected_version: int | None) -> int:
        """Create or update an object and return its new resourceVersion.

        An `expected_version` of None creates the object. Writing an unchanged
        payload is a no-op that returns the current version.

        Raises:
            ConflictError: If the expected version does not match.
            ValidationError: If the object is malformed.
        """

    @abstractmethod
    async def update_status(
        self, resource_id: NamedResource, status: dict[str, Any]
    ) -> int:
        """Replace the status of an object, as written by the cluster."""

    @abstractmethod
    async def delete(self, resource_id: NamedResource, expected_version: int) -> None:
        """Delete an object.

        Raises:
            ConflictError: If the expected version does not match.
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def watch(
        self, kind: str | None = None, namespace: str | None = None
    ) -> AsyncGenerator[WatchEvent, None]:
        """Yield change events for matching objects until cancelled.

        Events for objects created before the watch started are not replayed.
        """
        if TYPE_CHECKING:
            yield None  # type: ignore[misc]
