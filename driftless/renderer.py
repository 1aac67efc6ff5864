"""Library for rendering the desired state of an Application.

The renderer reads a path of a deployment repository at a fixed fingerprint
and produces a `DesiredStateSnapshot` of typed objects in canonical apply
order. A directory is rendered using its `kustomization.yaml` when present,
otherwise every YAML file in the directory is a resource.

A kustomization supports a small subset of the kustomize format:

```yaml
resources:       # files, or directories rendered recursively as bases
- ../base
- service.yaml
patches:         # merge patch files, applied in order after all resources
- replicas.yaml
namespace: demo  # set on every namespaced object
commonLabels:    # merged into the labels of every object
  team: web
images:          # image overrides
- name: demo-app
  newTag: v2
```

Example usage:
```python
from driftless.renderer import ManifestRenderer

renderer = ManifestRenderer(source)
snapshot = await renderer.render(repo_url, "main", "apps/demo")
for obj in snapshot.objects:
    print(f"Found {obj.resource_id}")
```

Rendering never partially succeeds: any error aborts the whole render.
"""

import copy
import logging
import posixpath
from typing import Any

import yaml

from .context import trace_context
from .exceptions import (
    PatchConflictError,
    RenderNotFoundError,
    RenderParseError,
    ValidationError,
)
from .images import apply_image_overrides, overrides_digest
from .manifest import (
    DesiredStateSnapshot,
    ImageOverride,
    ManagedObject,
    NamedResource,
    is_namespaced,
)
from .patch import apply_patches
from .source import Source, SourceTree, normalize_path

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "ManifestRenderer",
    "render_tree",
]

KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")
MANIFEST_SUFFIXES = (".yaml", ".yml")
KUSTOMIZATION_KEYS = {
    "apiVersion",
    "kind",
    "resources",
    "patches",
    "namespace",
    "commonLabels",
    "images",
}


def _join(base: str, ref: str) -> str:
    try:
        return normalize_path(posixpath.join(base, ref))
    except ValueError as err:
        raise RenderNotFoundError(f"Reference {ref} in {base or '/'}: {err}") from err


def _load_yaml(tree: SourceTree, path: str) -> list[Any]:
    """Read all documents of a YAML file, skipping empty documents."""
    if not tree.exists(path) or tree.is_dir(path):
        raise RenderNotFoundError(f"File {path} does not exist")
    content = tree.read_text(path)
    try:
        return [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as err:
        raise RenderParseError(f"Unable to parse {path}: {err}") from err


def _load_objects(tree: SourceTree, path: str) -> list[dict[str, Any]]:
    docs = []
    for doc in _load_yaml(tree, path):
        try:
            ManagedObject.parse_doc(doc, source=path)
        except ValidationError as err:
            raise RenderParseError(str(err)) from err
        docs.append(doc)
    _LOGGER.debug("Loaded %d objects from %s", len(docs), path)
    return docs


def _load_patches(
    tree: SourceTree, base: str, entries: Any
) -> list[tuple[str, dict[str, Any]]]:
    if not isinstance(entries, list):
        raise RenderParseError(f"Kustomization in {base} patches must be a list")
    patches: list[tuple[str, dict[str, Any]]] = []
    for entry in entries:
        if isinstance(entry, dict) and "patch" in entry:
            source = f"{base}/kustomization (inline)"
            try:
                docs = [
                    doc for doc in yaml.safe_load_all(entry["patch"]) if doc is not None
                ]
            except yaml.YAMLError as err:
                raise RenderParseError(
                    f"Unable to parse patch in {base}: {err}"
                ) from err
        else:
            ref = entry.get("path") if isinstance(entry, dict) else entry
            if not isinstance(ref, str):
                raise RenderParseError(f"Invalid patch entry in {base}: {entry}")
            source = _join(base, ref)
            docs = _load_yaml(tree, source)
        patches.extend((source, doc) for doc in docs)
    return patches


def _find_kustomization(tree: SourceTree, path: str) -> str | None:
    for name in KUSTOMIZATION_FILES:
        candidate = _join(path, name)
        if tree.exists(candidate) and not tree.is_dir(candidate):
            return candidate
    return None


def _set_namespace(doc: dict[str, Any], namespace: str) -> dict[str, Any]:
    if not is_namespaced(doc["kind"]):
        return doc
    result = copy.deepcopy(doc)
    result["metadata"]["namespace"] = namespace
    return result


def _add_labels(doc: dict[str, Any], labels: dict[str, str]) -> dict[str, Any]:
    result = copy.deepcopy(doc)
    metadata = result["metadata"]
    metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
    return result


def _build_kustomization(
    tree: SourceTree, path: str, kustomization: str, stack: list[str]
) -> list[dict[str, Any]]:
    config_docs = _load_yaml(tree, kustomization) or [{}]
    if len(config_docs) != 1 or not isinstance(config := config_docs[0], dict):
        raise RenderParseError(f"Kustomization {kustomization} must be a mapping")
    if unknown := set(config) - KUSTOMIZATION_KEYS:
        raise RenderParseError(
            f"Kustomization {kustomization} has unsupported fields: {sorted(unknown)}"
        )

    docs: list[dict[str, Any]] = []
    resources = config.get("resources") or []
    if not isinstance(resources, list):
        raise RenderParseError(
            f"Kustomization {kustomization} resources must be a list"
        )
    for ref in resources:
        if not isinstance(ref, str):
            raise RenderParseError(f"Invalid resource in {kustomization}: {ref}")
        resource_path = _join(path, ref)
        if tree.is_dir(resource_path):
            docs.extend(_build_dir(tree, resource_path, stack))
        elif tree.exists(resource_path):
            docs.extend(_load_objects(tree, resource_path))
        else:
            raise RenderNotFoundError(
                f"Resource {ref} referenced by {kustomization} does not exist"
            )

    if patches := config.get("patches"):
        docs = apply_patches(docs, _load_patches(tree, path, patches))

    if namespace := config.get("namespace"):
        docs = [_set_namespace(doc, str(namespace)) for doc in docs]

    if labels := config.get("commonLabels"):
        if not isinstance(labels, dict):
            raise RenderParseError(
                f"Kustomization {kustomization} commonLabels must be a mapping"
            )
        common = {str(k): str(v) for k, v in labels.items()}
        docs = [_add_labels(doc, common) for doc in docs]

    if images := config.get("images"):
        if not isinstance(images, list):
            raise RenderParseError(
                f"Kustomization {kustomization} images must be a list"
            )
        try:
            overrides = [ImageOverride.parse_doc(image) for image in images]
        except ValidationError as err:
            raise RenderParseError(f"Kustomization {kustomization}: {err}") from err
        docs = [apply_image_overrides(doc, overrides) for doc in docs]

    return docs


def _build_dir(tree: SourceTree, path: str, stack: list[str]) -> list[dict[str, Any]]:
    """Render the objects of one directory, including its bases."""
    if path in stack:
        raise RenderParseError(f"Cycle in resources: {' -> '.join(stack + [path])}")
    stack = stack + [path]
    if (kustomization := _find_kustomization(tree, path)) is not None:
        _LOGGER.debug("Building kustomization %s", kustomization)
        return _build_kustomization(tree, path, kustomization, stack)

    docs: list[dict[str, Any]] = []
    for name in tree.list_dir(path):
        file_path = _join(path, name)
        if not name.endswith(MANIFEST_SUFFIXES) or tree.is_dir(file_path):
            continue
        docs.extend(_load_objects(tree, file_path))
    return docs


def render_tree(
    tree: SourceTree, path: str, images: list[ImageOverride] | None = None
) -> tuple[ManagedObject, ...]:
    """Render the objects at a path of a repository tree in canonical order.

    Raises:
        RenderNotFoundError: The path or a referenced file does not exist.
        RenderParseError: A file is not valid YAML or not a valid object.
        PatchConflictError: A patch target is missing or ambiguous, or two
            objects have the same identity.
    """
    try:
        norm = normalize_path(path)
    except ValueError as err:
        raise RenderNotFoundError(str(err)) from err
    if not tree.exists(norm):
        raise RenderNotFoundError(f"Path '{path}' does not exist")
    if tree.is_dir(norm):
        docs = _build_dir(tree, norm, [])
    else:
        docs = _load_objects(tree, norm)

    if images:
        docs = [apply_image_overrides(doc, images) for doc in docs]

    objects: dict[NamedResource, ManagedObject] = {}
    for doc in docs:
        obj = ManagedObject.parse_doc(doc, source=path)
        if obj.resource_id in objects:
            raise PatchConflictError(f"Duplicate object {obj.resource_id} in {path}")
        objects[obj.resource_id] = obj
    return tuple(sorted(objects.values(), key=lambda obj: obj.resource_id.sort_key))


class ManifestRenderer:
    """Renders Applications from a Source into DesiredStateSnapshots."""

    def __init__(self, source: Source) -> None:
        """Initialize ManifestRenderer."""
        self._source = source

    async def render(
        self,
        repo_url: str,
        revision: str,
        path: str,
        images: list[ImageOverride] | None = None,
        fingerprint: str | None = None,
    ) -> DesiredStateSnapshot:
        """Render a repository path at a revision.

        When a fingerprint is given (as observed by the SourceWatcher) that
        exact commit is rendered instead of resolving the revision again.
        Image overrides are applied after the overrides of the repository
        itself and are reflected in the snapshot fingerprint.
        """
        with trace_context(f"Render '{repo_url}' {path}"):
            if fingerprint is None:
                fingerprint = await self._source.resolve(repo_url, revision, path)
            tree = await self._source.tree(repo_url, fingerprint)
            objects = render_tree(tree, path, images)
        snapshot_fingerprint = fingerprint
        if images:
            snapshot_fingerprint = f"{fingerprint}+{overrides_digest(images)}"
        _LOGGER.info(
            "Rendered %d objects from %s:%s at %s",
            len(objects),
            repo_url,
            path,
            snapshot_fingerprint,
        )
        return DesiredStateSnapshot(
            repo_url=repo_url,
            path=path,
            revision=revision,
            fingerprint=snapshot_fingerprint,
            objects=objects,
        )
