"""Git source repository transport.

Repositories given as a local directory are read in place. Remote URLs are
mirrored into the GitCache and fetched each time a revision is resolved.
Trees are read straight from git objects, nothing is checked out.
"""

import asyncio
import logging
from pathlib import Path

import git

from driftless.exceptions import SourceNotFoundError, TransientIOError

from .cache import GitCache, get_git_cache
from .source import Source, SourceTree, normalize_path

_LOGGER = logging.getLogger(__name__)


class GitTree(SourceTree):
    """SourceTree backed by a git tree object."""

    def __init__(self, tree: git.Tree) -> None:
        self._tree = tree

    def _lookup(self, path: str) -> git.Tree | git.Blob | None:
        try:
            norm = normalize_path(path)
        except ValueError:
            return None
        if not norm:
            return self._tree
        try:
            return self._tree / norm
        except KeyError:
            return None

    def exists(self, path: str) -> bool:
        return self._lookup(path) is not None

    def is_dir(self, path: str) -> bool:
        obj = self._lookup(path)
        return obj is not None and obj.type == "tree"

    def list_dir(self, path: str) -> list[str]:
        obj = self._lookup(path)
        if obj is None or obj.type != "tree":
            raise SourceNotFoundError(f"Directory {path} does not exist")
        return sorted(item.name for item in obj)

    def read_text(self, path: str) -> str:
        obj = self._lookup(path)
        if obj is None or obj.type != "blob":
            raise SourceNotFoundError(f"File {path} does not exist")
        return obj.data_stream.read().decode("utf-8")


class GitSource(Source):
    """Source implementation using GitPython."""

    def __init__(self, cache: GitCache | None = None) -> None:
        self._cache = cache or get_git_cache()
        self._repos: dict[str, git.Repo] = {}
        # Serializes fetches of the same repository
        self._locks: dict[str, asyncio.Lock] = {}

    def _local_path(self, url: str) -> Path | None:
        path = Path(url.removeprefix("file://")).expanduser()
        if path.is_dir():
            return path
        return None

    def _open(self, url: str, fetch: bool) -> git.Repo:
        """Open (cloning or fetching when remote) the repository for a URL."""
        if (local_path := self._local_path(url)) is not None:
            if (repo := self._repos.get(url)) is None:
                try:
                    repo = git.Repo(str(local_path))
                except (
                    git.exc.InvalidGitRepositoryError,
                    git.exc.NoSuchPathError,
                ) as err:
                    raise SourceNotFoundError(
                        f"{url} is not a git repository"
                    ) from err
                self._repos[url] = repo
            return repo

        repo_path = self._cache.get_repo_path(url)
        try:
            if (repo := self._repos.get(url)) is None and (repo_path / "HEAD").exists():
                repo = git.Repo(str(repo_path))
                self._repos[url] = repo
            if repo is None:
                _LOGGER.info("Cloning repository %s to %s", url, repo_path)
                repo = git.Repo.clone_from(url, str(repo_path), mirror=True)
                self._repos[url] = repo
            elif fetch:
                _LOGGER.debug("Fetching repository %s", url)
                repo.git.fetch("origin", "--prune")
        except git.exc.GitCommandError as err:
            raise TransientIOError(f"Failed to fetch {url}: {err}") from err
        return repo

    def _resolve(self, url: str, revision: str, path: str) -> str:
        repo = self._open(url, fetch=True)
        try:
            commit = repo.commit(revision)
            tree = GitTree(commit.tree)
        except (git.exc.BadName, git.exc.BadObject, ValueError) as err:
            raise SourceNotFoundError(
                f"Revision {revision} not found in {url}"
            ) from err
        if not tree.exists(path):
            raise SourceNotFoundError(
                f"Path '{path}' not found at {revision} in {url}"
            )
        return commit.hexsha

    def _tree(self, url: str, fingerprint: str) -> SourceTree:
        repo = self._open(url, fetch=False)
        try:
            commit = repo.commit(fingerprint)
            tree = GitTree(commit.tree)
        except (git.exc.BadName, git.exc.BadObject, ValueError) as err:
            raise SourceNotFoundError(
                f"Fingerprint {fingerprint} not found in {url}"
            ) from err
        return tree

    async def resolve(self, url: str, revision: str, path: str = "") -> str:
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            fingerprint = await asyncio.to_thread(self._resolve, url, revision, path)
        _LOGGER.debug("Resolved %s@%s to %s", url, revision, fingerprint)
        return fingerprint

    async def tree(self, url: str, fingerprint: str) -> SourceTree:
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            return await asyncio.to_thread(self._tree, url, fingerprint)
