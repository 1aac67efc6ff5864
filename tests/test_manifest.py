"""Tests for the manifest data model."""

import pytest

from driftless.exceptions import ValidationError
from driftless.manifest import (
    Application,
    DesiredStateSnapshot,
    ImageOverride,
    ManagedObject,
    NamedResource,
    SyncMode,
    kind_order,
    strip_server_fields,
)

APPLICATION_YAML = """\
name: demo-app
repoURL: https://git.example.com/demo.git
path: apps/demo
destinationNamespace: demo
targetRevision: main
policy:
  mode: automated
  selfHeal: true
images:
- name: registry.example.com/demo-app
  digest: sha256:abc
"""


def test_parse_application() -> None:
    app = Application.parse_yaml(APPLICATION_YAML)
    assert isinstance(app, Application)
    assert app.name == "demo-app"
    assert app.repo_url == "https://git.example.com/demo.git"
    assert app.policy.mode == SyncMode.AUTOMATED
    assert app.policy.automated
    assert app.policy.self_heal
    assert not app.policy.prune
    assert app.images == [
        ImageOverride(name="registry.example.com/demo-app", digest="sha256:abc")
    ]
    assert app.to_dict() == {
        "name": "demo-app",
        "repoURL": "https://git.example.com/demo.git",
        "path": "apps/demo",
        "destinationNamespace": "demo",
        "targetRevision": "main",
        "policy": {"mode": "automated", "selfHeal": True, "prune": False},
        "images": [{"name": "registry.example.com/demo-app", "digest": "sha256:abc"}],
    }


def test_application_defaults() -> None:
    app = Application(name="a", repo_url="/repo", path=".", destination_namespace="b")
    assert app.target_revision == "HEAD"
    assert app.policy.mode == SyncMode.MANUAL
    assert app.resource_id == NamedResource("Application", None, "a")


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"name": "Demo_App"}, "DNS-1123"),
        ({"destination_namespace": "-bad"}, "destination namespace"),
        ({"repo_url": ""}, "repo URL"),
        ({"target_revision": ""}, "target revision"),
    ],
)
def test_application_validate(kwargs: dict[str, str], match: str) -> None:
    app = Application(
        **{
            "name": "demo-app",
            "repo_url": "/repo",
            "path": ".",
            "destination_namespace": "demo",
            **kwargs,
        }
    )
    with pytest.raises(ValidationError, match=match):
        app.validate()


def test_set_image() -> None:
    app = Application.parse_yaml(APPLICATION_YAML)
    app.set_image(ImageOverride(name="proxy", new_tag="v2"))
    override = ImageOverride(name="registry.example.com/demo-app", digest="sha256:d")
    app.set_image(override)
    assert [(image.name, image.digest) for image in app.images] == [
        ("proxy", None),
        ("registry.example.com/demo-app", "sha256:d"),
    ]


def test_named_resource() -> None:
    resource = NamedResource.parse("Deployment/demo/web")
    assert resource == NamedResource("Deployment", "demo", "web")
    assert str(resource) == "Deployment/demo/web"
    assert str(NamedResource.parse("Namespace/demo")) == "Namespace/demo"
    with pytest.raises(ValueError):
        NamedResource.parse("web")


def test_kind_order() -> None:
    kinds = ["Route", "Service", "Deployment", "Secret", "ConfigMap", "Namespace"]
    assert sorted(kinds, key=kind_order) == [
        "Namespace",
        "ConfigMap",
        "Secret",
        "Deployment",
        "Service",
        "Route",
    ]
    # Unknown kinds are applied last in name order
    assert kind_order("Widget") > kind_order("NetworkPolicy")
    assert kind_order("Alpha") < kind_order("Widget")


@pytest.mark.parametrize(
    ("doc", "match"),
    [
        ("text", "expected a mapping"),
        ({"kind": "ConfigMap", "metadata": {"name": "a"}}, "apiVersion"),
        ({"apiVersion": "v1", "metadata": {"name": "a"}}, "missing kind"),
        ({"apiVersion": "v1", "kind": "ConfigMap"}, "missing metadata"),
        ({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}}, "metadata.name"),
    ],
)
def test_parse_invalid_object(doc: object, match: str) -> None:
    with pytest.raises(ValidationError, match=match):
        ManagedObject.parse_doc(doc)


def test_with_defaults() -> None:
    config_map = ManagedObject.parse_doc(
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "a"}}
    )
    placed = config_map.with_defaults("demo", {"owner": "demo-app"})
    assert placed.namespace == "demo"
    assert placed.body["metadata"] == {
        "name": "a",
        "namespace": "demo",
        "labels": {"owner": "demo-app"},
    }
    assert "namespace" not in config_map.body["metadata"]

    namespace = ManagedObject.parse_doc(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "demo"}}
    )
    assert namespace.with_defaults("other", {}).namespace is None


def test_snapshot_digest() -> None:
    obj = ManagedObject.parse_doc(
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "a"}}
    )
    snapshot = DesiredStateSnapshot(
        repo_url="/repo", path=".", revision="main", fingerprint="abc", objects=(obj,)
    )
    same = DesiredStateSnapshot(
        repo_url="/repo", path=".", revision="dev", fingerprint="abc", objects=(obj,)
    )
    assert snapshot.digest == same.digest
    assert snapshot.to_yaml().startswith("---\napiVersion: v1\nkind: ConfigMap\n")
    assert snapshot.resource_ids() == [NamedResource("ConfigMap", None, "a")]


def test_strip_server_fields() -> None:
    body = {
        "kind": "ConfigMap",
        "metadata": {"name": "a", "resourceVersion": "3", "uid": "x"},
        "status": {},
    }
    assert strip_server_fields(body) == {"kind": "ConfigMap", "metadata": {"name": "a"}}
    assert "status" in body
