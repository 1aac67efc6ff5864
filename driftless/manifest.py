"""Representation of applications and the objects they manage.

An `Application` maps a path in a deployment repository onto a destination
namespace. Rendering that path at a fixed source fingerprint yields a
`DesiredStateSnapshot`, an ordered, immutable list of `ManagedObject`s that
the reconciler converges the object store towards.
"""

import copy
from dataclasses import dataclass, field
from enum import StrEnum
import hashlib
import json
import logging
import re
from typing import Any, ClassVar

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import ValidationError

__all__ = [
    "NamedResource",
    "BaseManifest",
    "SyncMode",
    "SyncPolicy",
    "ImageOverride",
    "Application",
    "ManagedObject",
    "DesiredStateSnapshot",
    "kind_order",
    "is_namespaced",
]

_LOGGER = logging.getLogger(__name__)


API_GROUP = "driftless.io"
API_VERSION = f"{API_GROUP}/v1"
APPLICATION_KIND = "Application"
SYNC_STATUS_KIND = "SyncStatus"
PIPELINE_RUN_KIND = "PipelineRun"
OWNER_LABEL = f"app.{API_GROUP}/instance"
DEFAULT_REVISION = "HEAD"

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"

# Canonical apply order. Objects other objects depend on come first so that a
# namespace exists before anything is created inside it and a workload's
# service account and config exist before the workload.
KIND_ORDER: list[str] = [
    NAMESPACE_KIND,
    CRD_KIND,
    # RBAC
    "ServiceAccount",
    "ClusterRole",
    "Role",
    "ClusterRoleBinding",
    "RoleBinding",
    # Configuration
    "ConfigMap",
    "Secret",
    "PersistentVolumeClaim",
    # Workloads
    "Deployment",
    "StatefulSet",
    "DaemonSet",
    "ReplicaSet",
    "Job",
    "CronJob",
    "Pod",
    # Network exposure
    "Service",
    "Ingress",
    "Route",
    "NetworkPolicy",
]
_KIND_RANK = {kind: rank for rank, kind in enumerate(KIND_ORDER)}

CLUSTER_SCOPED_KINDS = {
    NAMESPACE_KIND,
    CRD_KIND,
    "ClusterRole",
    "ClusterRoleBinding",
    "PersistentVolume",
    "StorageClass",
}

# Fields written by the object store that never take part in a comparison.
SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
)

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


def kind_order(kind: str) -> tuple[int, str]:
    """Sort key for a kind in canonical apply order."""
    return (_KIND_RANK.get(kind, len(KIND_ORDER)), kind)


def is_namespaced(kind: str) -> bool:
    """Return True if objects of this kind live inside a namespace."""
    return kind not in CLUSTER_SCOPED_KINDS


def is_dns_label(value: str) -> bool:
    """Return True if the value is a valid DNS-1123 label."""
    return len(value) <= 63 and bool(_DNS_LABEL.match(value))


def is_dns_subdomain(value: str) -> bool:
    """Return True if the value is a valid DNS-1123 subdomain."""
    return len(value) <= 253 and bool(_DNS_SUBDOMAIN.match(value))


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all serialized model objects."""

    def compact_dict(self) -> dict[str, Any]:
        """Return a compact dictionary representation of the object."""
        return self.to_dict()

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for an object in the store."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def sort_key(self) -> tuple[tuple[int, str], str, str]:
        """Key for canonical apply order."""
        return (kind_order(self.kind), self.namespace or "", self.name)

    @classmethod
    def parse(cls, value: str) -> "NamedResource":
        """Parse a `Kind/namespace/name` or `Kind/name` string."""
        parts = value.split("/")
        if len(parts) == 3:
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        if len(parts) == 2:
            return cls(kind=parts[0], namespace=None, name=parts[1])
        raise ValueError(f"Invalid resource identifier: {value}")

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


class SyncMode(StrEnum):
    """How reconciliation of an application is triggered."""

    MANUAL = "manual"
    AUTOMATED = "automated"


@dataclass
class SyncPolicy(BaseManifest):
    """Policy controlling automated reconciliation of an application."""

    mode: SyncMode = SyncMode.MANUAL
    """Manual applications only sync when asked to."""

    self_heal: bool = field(metadata=field_options(alias="selfHeal"), default=False)
    """Revert drift of live objects detected outside a reconciliation pass."""

    prune: bool = False
    """Delete live objects that are no longer part of the desired state."""

    @property
    def automated(self) -> bool:
        return self.mode == SyncMode.AUTOMATED

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class ImageOverride(BaseManifest):
    """Replaces the image reference of matching containers when rendering."""

    name: str
    """Image name to match, without tag or digest."""

    new_name: str | None = field(
        metadata=field_options(alias="newName"), default=None
    )
    """Replacement image name."""

    new_tag: str | None = field(metadata=field_options(alias="newTag"), default=None)
    """Replacement tag."""

    digest: str | None = None
    """Replacement digest, takes precedence over the tag."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ImageOverride":
        """Parse an image override from a kustomization `images` entry."""
        if not isinstance(doc, dict) or not (name := doc.get("name")):
            raise ValidationError(f"Invalid image override missing name: {doc}")
        return cls(
            name=name,
            new_name=doc.get("newName"),
            new_tag=doc.get("newTag"),
            digest=doc.get("digest"),
        )

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class Application(BaseManifest):
    """A tracked mapping from a deployment repository path to a namespace."""

    kind: ClassVar[str] = APPLICATION_KIND

    name: str
    """The unique name of the application."""

    repo_url: str = field(metadata=field_options(alias="repoURL"))
    """URL (or local path) of the deployment repository."""

    path: str
    """Path within the repository holding the manifests."""

    destination_namespace: str = field(
        metadata=field_options(alias="destinationNamespace")
    )
    """Namespace namespaced objects are placed in unless they name one."""

    target_revision: str = field(
        metadata=field_options(alias="targetRevision"), default=DEFAULT_REVISION
    )
    """Branch, tag or commit to track."""

    policy: SyncPolicy = field(default_factory=SyncPolicy)
    """The sync policy for the application."""

    images: list[ImageOverride] = field(default_factory=list)
    """Image overrides applied on top of the rendered manifests."""

    image_repository: str | None = field(
        metadata=field_options(alias="imageRepository"), default=None
    )
    """Image repository whose pipeline runs belong to this application."""

    def validate(self) -> None:
        """Check the application definition is usable."""
        if not is_dns_label(self.name):
            raise ValidationError(
                f"Invalid application name '{self.name}': must be a DNS-1123 label"
            )
        if not is_dns_label(self.destination_namespace):
            raise ValidationError(
                f"Invalid destination namespace '{self.destination_namespace}'"
            )
        if not self.repo_url:
            raise ValidationError(f"Application {self.name} is missing a repo URL")
        if not self.target_revision:
            raise ValidationError(
                f"Application {self.name} is missing a target revision"
            )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(APPLICATION_KIND, None, self.name)

    def set_image(self, override: ImageOverride) -> None:
        """Add or replace the override for an image name."""
        self.images = [image for image in self.images if image.name != override.name]
        self.images.append(override)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True)
class ManagedObject:
    """A typed desired-state object rendered from the deployment repository."""

    kind: str
    api_version: str
    namespace: str | None
    name: str
    body: dict[str, Any] = field(compare=False, hash=False)

    @classmethod
    def parse_doc(cls, doc: Any, source: str = "<input>") -> "ManagedObject":
        """Parse a ManagedObject from a raw document.

        Raises ValidationError when required fields are missing.
        """
        if not isinstance(doc, dict):
            raise ValidationError(f"Invalid object in {source}, expected a mapping")
        if not (api_version := doc.get("apiVersion")):
            raise ValidationError(f"Invalid object in {source} missing apiVersion")
        if not (kind := doc.get("kind")):
            raise ValidationError(f"Invalid object in {source} missing kind")
        metadata = doc.get("metadata")
        if not isinstance(metadata, dict):
            raise ValidationError(f"Invalid {kind} in {source} missing metadata")
        if not (name := metadata.get("name")):
            raise ValidationError(f"Invalid {kind} in {source} missing metadata.name")
        return cls(
            kind=kind,
            api_version=api_version,
            namespace=metadata.get("namespace"),
            name=name,
            body=doc,
        )

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return dict(self.body.get("metadata", {}).get("labels") or {})

    def with_defaults(self, namespace: str, labels: dict[str, str]) -> "ManagedObject":
        """Return a copy placed in the namespace (if namespaced) with extra labels."""
        body = copy.deepcopy(self.body)
        metadata = body.setdefault("metadata", {})
        obj_namespace = self.namespace
        if is_namespaced(self.kind):
            obj_namespace = obj_namespace or namespace
            metadata["namespace"] = obj_namespace
        else:
            obj_namespace = None
            metadata.pop("namespace", None)
        if labels:
            metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
        return ManagedObject(
            kind=self.kind,
            api_version=self.api_version,
            namespace=obj_namespace,
            name=self.name,
            body=body,
        )


@dataclass(frozen=True)
class DesiredStateSnapshot:
    """Immutable rendering of an application's manifests at a fingerprint."""

    repo_url: str
    path: str
    revision: str
    fingerprint: str
    objects: tuple[ManagedObject, ...] = ()

    @property
    def digest(self) -> str:
        """Content hash of the rendered objects."""
        content = canonical_json([obj.body for obj in self.objects])
        return hashlib.sha256(content.encode()).hexdigest()

    def resource_ids(self) -> list[NamedResource]:
        return [obj.resource_id for obj in self.objects]

    def to_yaml(self) -> str:
        """Return the objects as a canonical multi-document YAML string."""
        return yaml.dump_all(
            [obj.body for obj in self.objects],
            sort_keys=True,
            explicit_start=True,
            default_flow_style=False,
        )


def strip_server_fields(body: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the object without fields populated by the store.

    `status` is also removed since it is written by the cluster rather than
    declared in the desired state.
    """
    result = copy.deepcopy(body)
    result.pop("status", None)
    if isinstance(metadata := result.get("metadata"), dict):
        for key in SERVER_METADATA_FIELDS:
            metadata.pop(key, None)
    return result
