"""Tests for the resource diff module."""

from typing import Any

from driftless.manifest import ManagedObject
from driftless.resource_diff import (
    compute_plan,
    normalize,
    object_diff,
    plan_diff,
    semantically_equal,
)
from driftless.store import Action, LiveObject


def config_map(name: str, value: str, **metadata: Any) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": "demo", **metadata},
        "data": {"key": value},
    }


def desired(body: dict[str, Any]) -> ManagedObject:
    return ManagedObject.parse_doc(body)


def live(body: dict[str, Any], version: int = 1) -> LiveObject:
    metadata = body["metadata"]
    return LiveObject(
        kind=body["kind"],
        namespace=metadata.get("namespace"),
        name=metadata["name"],
        body={
            **body,
            "metadata": {**metadata, "resourceVersion": str(version), "uid": "x"},
            "status": {"observed": True},
        },
        resource_version=version,
    )


def test_normalize() -> None:
    body = config_map("a", "1", labels={}, annotations={}, generation=3)
    assert normalize(body) == config_map("a", "1")


def test_semantically_equal() -> None:
    assert semantically_equal(config_map("a", "1"), live(config_map("a", "1")).body)
    assert not semantically_equal(
        config_map("a", "1"), live(config_map("a", "2")).body
    )


def test_compute_plan() -> None:
    """Test objects are split into create, update, prune and unchanged."""
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": "demo"},
    }
    plan = compute_plan(
        [
            desired(deployment),
            desired(config_map("same", "1")),
            desired(config_map("changed", "new")),
            desired(config_map("created", "1")),
        ],
        [
            live(config_map("same", "1")),
            live(config_map("changed", "old")),
            live(config_map("old-a", "1")),
            live({**deployment, "kind": "Service"}),
        ],
    )
    assert [obj.name for obj in plan.to_create] == ["created", "web"]
    assert [obj.name for obj, _ in plan.to_update] == ["changed"]
    assert [obj.name for obj, _ in plan.unchanged] == ["same"]
    # Pruned in reverse apply order
    assert [str(obj.resource_id) for obj in plan.to_prune] == [
        "Service/demo/web",
        "ConfigMap/demo/old-a",
    ]
    assert plan.has_changes

    assert plan.actions(prune=False) == [
        (plan.to_update[0][0].resource_id, Action.UPDATE),
        (plan.to_create[0].resource_id, Action.CREATE),
        (plan.unchanged[0][0].resource_id, Action.UNCHANGED),
        (plan.to_create[1].resource_id, Action.CREATE),
        (plan.to_prune[0].resource_id, Action.ORPHANED),
        (plan.to_prune[1].resource_id, Action.ORPHANED),
    ]
    assert {action for _, action in plan.actions(prune=True)} >= {Action.PRUNE}


def test_no_changes() -> None:
    plan = compute_plan(
        [desired(config_map("a", "1"))], [live(config_map("a", "1"))]
    )
    assert not plan.has_changes
    assert list(plan_diff(plan, prune=True)) == []


def test_plan_diff() -> None:
    plan = compute_plan(
        [desired(config_map("a", "new")), desired(config_map("b", "1"))],
        [live(config_map("a", "old")), live(config_map("c", "1"))],
    )
    diff = "".join(plan_diff(plan, prune=False))
    assert "--- live ConfigMap/demo/a" in diff
    assert "+++ desired ConfigMap/demo/a" in diff
    assert "-  key: old" in diff
    assert "+  key: new" in diff
    assert "--- /dev/null" in diff
    # Orphans are left alone so they are not part of the diff
    assert "ConfigMap/demo/c" not in diff
    assert "resourceVersion" not in diff

    pruned = "".join(plan_diff(plan, prune=True))
    assert "--- live ConfigMap/demo/c" in pruned
    assert "+++ /dev/null" in pruned


def test_object_diff_truncated() -> None:
    lines = list(
        object_diff(
            desired(config_map("a", "1")).resource_id,
            None,
            config_map("a", "x" * 200),
            limit_bytes=100,
        )
    )
    assert lines[-1].startswith("[Diff truncated")
