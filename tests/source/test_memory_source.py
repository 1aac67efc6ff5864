"""Tests for the in-memory source."""

import pytest

from driftless.exceptions import SourceNotFoundError, TransientIOError
from driftless.source import MemorySource, MemoryTree

REPO = "https://git.example.com/demo.git"


def test_tree_listing() -> None:
    tree = MemoryTree({"apps/demo/a.yaml": "a", "/apps/demo/b.yaml": "b", "README": ""})
    assert tree.list_dir("") == ["README", "apps"]
    assert tree.list_dir("apps/demo") == ["a.yaml", "b.yaml"]
    assert tree.is_dir("apps")
    assert not tree.is_dir("apps/demo/a.yaml")
    assert tree.exists("apps/demo/b.yaml")
    assert not tree.exists("apps/other")
    assert tree.read_text("apps/./demo/a.yaml") == "a"
    with pytest.raises(SourceNotFoundError):
        tree.read_text("apps/demo/c.yaml")


async def test_resolve_is_content_addressed() -> None:
    source = MemorySource()
    source.set_revision(REPO, "main", {"apps/demo/a.yaml": "a"})
    source.set_revision(REPO, "v1", {"apps/demo/a.yaml": "a"})
    main = await source.resolve(REPO, "main", "apps/demo")
    assert main == await source.resolve(REPO, "v1", "apps/demo")

    source.set_revision(REPO, "main", {"apps/demo/a.yaml": "changed"})
    changed = await source.resolve(REPO, "main", "apps/demo")
    assert changed != main

    # Earlier fingerprints remain readable
    assert (await source.tree(REPO, main)).read_text("apps/demo/a.yaml") == "a"
    assert (await source.tree(REPO, changed)).read_text("apps/demo/a.yaml") == (
        "changed"
    )


async def test_resolve_errors() -> None:
    source = MemorySource()
    source.set_revision(REPO, "main", {"apps/demo/a.yaml": "a"})
    with pytest.raises(SourceNotFoundError, match="Revision"):
        await source.resolve(REPO, "missing", "apps/demo")
    with pytest.raises(SourceNotFoundError, match="Path"):
        await source.resolve(REPO, "main", "apps/other")
    with pytest.raises(SourceNotFoundError):
        await source.resolve(REPO, "main", "../outside")
    with pytest.raises(SourceNotFoundError):
        await source.tree(REPO, "0" * 40)

    source.failures = 1
    with pytest.raises(TransientIOError):
        await source.resolve(REPO, "main", "apps/demo")
    assert await source.resolve(REPO, "main", "apps/demo")
