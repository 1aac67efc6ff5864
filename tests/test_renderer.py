"""Tests for rendering desired state from a repository tree."""

from collections.abc import Callable

import pytest

from driftless.exceptions import (
    PatchConflictError,
    RenderNotFoundError,
    RenderParseError,
)
from driftless.manifest import ImageOverride
from driftless.renderer import ManifestRenderer, render_tree
from driftless.source import MemorySource, MemoryTree

BASE_DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 1
  template:
    spec:
      containers:
      - name: web
        image: web:v1
      - name: sidecar
        image: proxy:v1
"""

NAMESPACE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: shop
"""

BASE_KUSTOMIZATION = """\
resources:
- deployment.yaml
- namespace.yaml
"""

OVERLAY_KUSTOMIZATION = """\
resources:
- ../../base
- configmap.yaml
patches:
- replicas.yaml
- patch: |
    kind: Deployment
    metadata:
      name: web
    spec:
      template:
        spec:
          containers:
          - name: sidecar
            image: null
namespace: shop
commonLabels:
  env: prod
images:
- name: web
  newTag: v2
"""

REPLICAS_PATCH = """\
kind: Deployment
metadata:
  name: web
spec:
  replicas: 3
"""

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: web-config
data:
  mode: production
---
"""


def overlay_tree() -> MemoryTree:
    return MemoryTree(
        {
            "base/kustomization.yaml": BASE_KUSTOMIZATION,
            "base/deployment.yaml": BASE_DEPLOYMENT,
            "base/namespace.yaml": NAMESPACE,
            "overlays/prod/kustomization.yaml": OVERLAY_KUSTOMIZATION,
            "overlays/prod/replicas.yaml": REPLICAS_PATCH,
            "overlays/prod/configmap.yaml": CONFIG_MAP,
        }
    )


def test_render_overlay() -> None:
    """Test bases, patches, namespace, labels and images are applied."""
    objects = render_tree(overlay_tree(), "overlays/prod")
    assert [str(obj.resource_id) for obj in objects] == [
        "Namespace/shop",
        "ConfigMap/shop/web-config",
        "Deployment/shop/web",
    ]
    namespace, config_map, deployment = objects
    assert "namespace" not in namespace.body["metadata"]
    assert namespace.body["metadata"]["labels"] == {"env": "prod"}
    assert config_map.body["metadata"]["labels"] == {"env": "prod"}
    assert deployment.body["spec"]["replicas"] == 3
    containers = deployment.body["spec"]["template"]["spec"]["containers"]
    assert containers == [
        {"name": "web", "image": "web:v2"},
        {"name": "sidecar"},
    ]


def test_render_is_deterministic() -> None:
    first = render_tree(overlay_tree(), "overlays/prod")
    second = render_tree(overlay_tree(), "/overlays/prod/")
    assert [obj.body for obj in first] == [obj.body for obj in second]


def test_render_plain_directory() -> None:
    """Test a directory without a kustomization renders every YAML file."""
    tree = MemoryTree(
        {
            "app/deployment.yaml": BASE_DEPLOYMENT,
            "app/config.yml": CONFIG_MAP,
            "app/README.md": "# not a manifest",
            "app/nested/ignored.yaml": NAMESPACE,
        }
    )
    objects = render_tree(tree, "app")
    assert [obj.kind for obj in objects] == ["ConfigMap", "Deployment"]


def test_render_single_file() -> None:
    tree = MemoryTree({"app/namespace.yaml": NAMESPACE})
    objects = render_tree(tree, "app/namespace.yaml")
    assert [obj.name for obj in objects] == ["shop"]


def test_application_image_overrides() -> None:
    tree = MemoryTree({"app/deployment.yaml": BASE_DEPLOYMENT})
    (deployment,) = render_tree(
        tree,
        "app",
        images=[
            ImageOverride(name="web", new_tag="v3"),
            ImageOverride(name="proxy", new_name="envoy", digest="sha256:abc"),
        ],
    )
    containers = deployment.body["spec"]["template"]["spec"]["containers"]
    assert [c["image"] for c in containers] == ["web:v3", "envoy@sha256:abc"]


@pytest.mark.parametrize(
    ("files", "path", "exc", "match"),
    [
        ({"app/a.yaml": NAMESPACE}, "missing", RenderNotFoundError, "does not exist"),
        ({"app/a.yaml": NAMESPACE}, "../app", RenderNotFoundError, "outside"),
        ({"app/a.yaml": "kind: [unclosed"}, "app", RenderParseError, "Unable to parse"),
        ({"app/a.yaml": "- a\n- b\n"}, "app", RenderParseError, "expected a mapping"),
        (
            {"app/a.yaml": "apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n"},
            "app",
            RenderParseError,
            "metadata.name",
        ),
        (
            {"app/kustomization.yaml": "resources:\n- missing.yaml\n"},
            "app",
            RenderNotFoundError,
            "missing.yaml",
        ),
        (
            {"app/kustomization.yaml": "generators:\n- gen.yaml\n"},
            "app",
            RenderParseError,
            "unsupported fields",
        ),
        (
            {"app/kustomization.yaml": "resources:\n- ../app\n"},
            "app",
            RenderParseError,
            "Cycle",
        ),
        (
            {"app/a.yaml": NAMESPACE, "app/b.yaml": NAMESPACE},
            "app",
            PatchConflictError,
            "Duplicate",
        ),
        (
            {
                "app/kustomization.yaml": "resources:\n- a.yaml\npatches:\n- p.yaml\n",
                "app/a.yaml": NAMESPACE,
                "app/p.yaml": "kind: Namespace\nmetadata:\n  name: other\n",
            },
            "app",
            PatchConflictError,
            "not found",
        ),
    ],
)
def test_render_errors(
    files: dict[str, str], path: str, exc: type[Exception], match: str
) -> None:
    with pytest.raises(exc, match=match):
        render_tree(MemoryTree(files), path)


async def test_renderer_snapshot(
    source: MemorySource, make_files: Callable[..., dict[str, str]]
) -> None:
    """Test the same fingerprint renders byte-identical snapshots."""
    repo = "https://git.example.com/demo.git"
    renderer = ManifestRenderer(source)
    snapshot = await renderer.render(repo, "main", "apps/demo")
    assert [obj.kind for obj in snapshot.objects] == ["Deployment", "Service", "Route"]
    assert snapshot.revision == "main"

    again = await renderer.render(
        repo, "main", "apps/demo", fingerprint=snapshot.fingerprint
    )
    assert again.to_yaml() == snapshot.to_yaml()
    assert again.digest == snapshot.digest

    # Moving the branch does not change what an observed fingerprint renders
    source.set_revision(repo, "main", make_files(tag="v2"))
    pinned = await renderer.render(
        repo, "main", "apps/demo", fingerprint=snapshot.fingerprint
    )
    assert pinned.to_yaml() == snapshot.to_yaml()
    latest = await renderer.render(repo, "main", "apps/demo")
    assert latest.fingerprint != snapshot.fingerprint
    assert latest.digest != snapshot.digest


async def test_image_overrides_change_fingerprint(source: MemorySource) -> None:
    repo = "https://git.example.com/demo.git"
    renderer = ManifestRenderer(source)
    plain = await renderer.render(repo, "main", "apps/demo")
    overridden = await renderer.render(
        repo,
        "main",
        "apps/demo",
        images=[ImageOverride(name="registry.example.com/demo-app", digest="sha256:1")],
    )
    commit, _, suffix = overridden.fingerprint.partition("+")
    assert commit == plain.fingerprint
    assert len(suffix) == 12
    assert "registry.example.com/demo-app@sha256:1" in overridden.to_yaml()
