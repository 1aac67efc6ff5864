"""Module for computing the difference between desired and live objects.

This is used by the reconciler to plan a pass and by the `sync --dry-run`
command to show what a pass would change.
"""

from collections.abc import Iterable, Generator
from dataclasses import dataclass, field
import difflib
import logging
from typing import Any

import yaml

from .manifest import ManagedObject, NamedResource, strip_server_fields
from .store import Action, LiveObject

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "normalize",
    "semantically_equal",
    "SyncPlan",
    "compute_plan",
    "object_diff",
    "plan_diff",
]

_TRUNCATE = "[Diff truncated by driftless]"


def normalize(body: dict[str, Any]) -> dict[str, Any]:
    """Return the comparable part of an object.

    Server populated metadata and `status` are dropped, as are empty label and
    annotation maps which are equivalent to absent ones.
    """
    result = strip_server_fields(body)
    if isinstance(metadata := result.get("metadata"), dict):
        for key in ("labels", "annotations"):
            if key in metadata and not metadata[key]:
                del metadata[key]
    return result


def semantically_equal(desired: dict[str, Any], live: dict[str, Any]) -> bool:
    """Return True if applying the desired object would not change the live one."""
    return normalize(desired) == normalize(live)


@dataclass
class SyncPlan:
    """The changes needed to converge live objects to the desired objects."""

    to_create: list[ManagedObject] = field(default_factory=list)
    """Desired objects absent from the store, in apply order."""

    to_update: list[tuple[ManagedObject, LiveObject]] = field(default_factory=list)
    """Objects whose live payload differs, in apply order."""

    to_prune: list[LiveObject] = field(default_factory=list)
    """Live objects absent from the desired state, in reverse apply order."""

    unchanged: list[tuple[ManagedObject, LiveObject]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_create or self.to_update or self.to_prune)

    def actions(self, prune: bool) -> list[tuple[NamedResource, Action]]:
        """Return the action for every object, in the order they are taken."""
        apply_actions = [(obj.resource_id, Action.CREATE) for obj in self.to_create]
        apply_actions += [(obj.resource_id, Action.UPDATE) for obj, _ in self.to_update]
        apply_actions += [
            (obj.resource_id, Action.UNCHANGED) for obj, _ in self.unchanged
        ]
        apply_actions.sort(key=lambda item: item[0].sort_key)
        prune_action = Action.PRUNE if prune else Action.ORPHANED
        prune_actions = [(obj.resource_id, prune_action) for obj in self.to_prune]
        return apply_actions + prune_actions


def compute_plan(
    desired: Iterable[ManagedObject], live: Iterable[LiveObject]
) -> SyncPlan:
    """Compute the create, update and prune sets for a pass."""
    live_by_id = {obj.resource_id: obj for obj in live}
    desired_ids = set()
    plan = SyncPlan()
    for obj in sorted(desired, key=lambda obj: obj.resource_id.sort_key):
        desired_ids.add(obj.resource_id)
        if (live_obj := live_by_id.get(obj.resource_id)) is None:
            plan.to_create.append(obj)
        elif semantically_equal(obj.body, live_obj.body):
            plan.unchanged.append((obj, live_obj))
        else:
            plan.to_update.append((obj, live_obj))
    plan.to_prune = sorted(
        (obj for obj in live_by_id.values() if obj.resource_id not in desired_ids),
        key=lambda obj: obj.resource_id.sort_key,
        reverse=True,
    )
    _LOGGER.debug(
        "Plan: %d to create, %d to update, %d to prune, %d unchanged",
        len(plan.to_create),
        len(plan.to_update),
        len(plan.to_prune),
        len(plan.unchanged),
    )
    return plan


def _yaml_lines(body: dict[str, Any] | None) -> list[str]:
    if body is None:
        return []
    return yaml.dump(normalize(body), sort_keys=True).splitlines(keepends=True)


def object_diff(
    resource_id: NamedResource,
    live: dict[str, Any] | None,
    desired: dict[str, Any] | None,
    n: int = 3,
    limit_bytes: int = 0,
) -> Generator[str, None, None]:
    """Generate a unified diff from the live to the desired object."""
    diff_text = difflib.unified_diff(
        a=_yaml_lines(live),
        b=_yaml_lines(desired),
        fromfile=f"live {resource_id}" if live is not None else "/dev/null",
        tofile=f"desired {resource_id}" if desired is not None else "/dev/null",
        n=n,
    )
    size = 0
    for line in diff_text:
        size += len(line)
        if limit_bytes and size > limit_bytes:
            yield _TRUNCATE + "\n"
            break
        yield line


def plan_diff(
    plan: SyncPlan, prune: bool, n: int = 3, limit_bytes: int = 0
) -> Generator[str, None, None]:
    """Generate the diff of every change in a plan.

    Objects that would be orphaned rather than pruned are not part of the
    diff since the pass leaves them untouched.
    """
    for obj in plan.to_create:
        yield from object_diff(obj.resource_id, None, obj.body, n, limit_bytes)
    for obj, live_obj in plan.to_update:
        yield from object_diff(obj.resource_id, live_obj.body, obj.body, n, limit_bytes)
    if prune:
        for live_obj in plan.to_prune:
            yield from object_diff(
                live_obj.resource_id, live_obj.body, None, n, limit_bytes
            )
