"""Shared fixtures for driftless tests."""

from collections.abc import Callable
import random

import pytest

from driftless.manifest import Application, SyncMode, SyncPolicy
from driftless.source import MemorySource
from driftless.store import InMemoryStore

DEMO_REPO = "https://git.example.com/demo.git"
DEMO_PATH = "apps/demo"

KUSTOMIZATION = """\
resources:
- deployment.yaml
- service.yaml
- route.yaml
"""

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: demo-app
spec:
  replicas: {replicas}
  selector:
    matchLabels:
      app: demo-app
  template:
    metadata:
      labels:
        app: demo-app
    spec:
      containers:
      - name: demo-app
        image: registry.example.com/demo-app:{tag}
"""

SERVICE = """\
apiVersion: v1
kind: Service
metadata:
  name: demo-app
spec:
  selector:
    app: demo-app
  ports:
  - port: 80
    targetPort: 8080
"""

ROUTE = """\
apiVersion: route.openshift.io/v1
kind: Route
metadata:
  name: demo-app
spec:
  to:
    kind: Service
    name: demo-app
"""


def demo_files(tag: str = "v1", replicas: int = 1) -> dict[str, str]:
    """Files of the demo deployment repository."""
    return {
        f"{DEMO_PATH}/kustomization.yaml": KUSTOMIZATION,
        f"{DEMO_PATH}/deployment.yaml": DEPLOYMENT.format(tag=tag, replicas=replicas),
        f"{DEMO_PATH}/service.yaml": SERVICE,
        f"{DEMO_PATH}/route.yaml": ROUTE,
    }


@pytest.fixture(name="make_files")
def make_files_fixture() -> Callable[..., dict[str, str]]:
    """Fixture returning a factory for the demo repository files."""
    return demo_files


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def source() -> MemorySource:
    source = MemorySource()
    source.set_revision(DEMO_REPO, "main", demo_files())
    return source


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def demo_app() -> Application:
    return Application(
        name="demo-app",
        repo_url=DEMO_REPO,
        path=DEMO_PATH,
        destination_namespace="demo",
        target_revision="main",
    )


@pytest.fixture
def automated_app(demo_app: Application) -> Application:
    demo_app.policy = SyncPolicy(mode=SyncMode.AUTOMATED, self_heal=True, prune=True)
    return demo_app
