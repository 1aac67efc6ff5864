"""Structured merge patches for overlays.

A patch is a partial object document. It names its target by `kind` and
`metadata.name` (and `metadata.namespace` when present) and is merged into
that object:

- mappings merge recursively
- a `null` value deletes the key
- lists whose items are all mappings with a `name` merge item by item on
  `name`, so a single container of a Deployment can be patched
- any other value replaces the target value
"""

import copy
import logging
from typing import Any

from .exceptions import PatchConflictError
from .manifest import NamedResource

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "merge_patch",
    "apply_patches",
]

MERGE_KEY = "name"


def _is_named_list(value: Any) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, dict) and MERGE_KEY in item for item in value
    )


def _merge_named_list(
    target: list[dict[str, Any]], patch: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    result = [copy.deepcopy(item) for item in target]
    index = {item[MERGE_KEY]: i for i, item in enumerate(result)}
    for item in patch:
        if (pos := index.get(item[MERGE_KEY])) is not None:
            result[pos] = merge_patch(result[pos], item)
        else:
            index[item[MERGE_KEY]] = len(result)
            result.append(merge_patch({}, item))
    return result


def merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return a new document with the patch merged into the target."""
    result = copy.deepcopy(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
            continue
        current = result.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            result[key] = merge_patch(current, value)
        elif isinstance(value, dict):
            result[key] = merge_patch({}, value)
        elif (
            value
            and isinstance(current, list)
            and _is_named_list(value)
            and _is_named_list(current)
        ):
            result[key] = _merge_named_list(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _identity(doc: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
    metadata = doc.get("metadata") or {}
    return (doc.get("kind"), metadata.get("namespace"), metadata.get("name"))


def _matches(doc: dict[str, Any], kind: str, namespace: str | None, name: str) -> bool:
    doc_kind, doc_namespace, doc_name = _identity(doc)
    if doc_kind != kind or doc_name != name:
        return False
    return namespace is None or doc_namespace == namespace


def apply_patches(
    docs: list[dict[str, Any]],
    patches: list[tuple[str, dict[str, Any]]],
) -> list[dict[str, Any]]:
    """Apply patches in order to a list of object documents.

    Each patch is a tuple of the file it came from and the patch document.

    Raises:
        PatchConflictError: When a patch does not identify exactly one object
            or would change the identity of the object it is applied to.
    """
    result = list(docs)
    for source, patch in patches:
        if not isinstance(patch, dict):
            raise PatchConflictError(f"Patch in {source} is not a mapping")
        kind, namespace, name = _identity(patch)
        if not kind or not name:
            raise PatchConflictError(
                f"Patch in {source} must specify kind and metadata.name"
            )
        target = NamedResource(kind, namespace, name)
        matches = [
            i for i, doc in enumerate(result) if _matches(doc, kind, namespace, name)
        ]
        if not matches:
            raise PatchConflictError(f"Patch in {source} target {target} not found")
        if len(matches) > 1:
            raise PatchConflictError(
                f"Patch in {source} target {target} is ambiguous, "
                f"matched {len(matches)} objects"
            )
        pos = matches[0]
        patched = merge_patch(result[pos], patch)
        if _identity(patched) != _identity(result[pos]):
            raise PatchConflictError(
                f"Patch in {source} changes the identity of {target}"
            )
        _LOGGER.debug("Applied patch from %s to %s", source, target)
        result[pos] = patched
    return result
