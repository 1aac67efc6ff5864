"""Cache management for cloned git repositories."""

import hashlib
import tempfile
import logging
from pathlib import Path
from shutil import rmtree
from urllib.parse import urlparse

from slugify import slugify

from driftless.exceptions import TransientIOError

_LOGGER = logging.getLogger(__name__)


class GitCache:
    """Cache manager for git repositories.

    This cache persists for the lifetime of the process and stores bare clones
    of remote repositories in a dedicated cache directory.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / "driftless-cache"
        self._repos: dict[str, Path] = {}

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        parsed = urlparse(url)
        path = parsed.path
        if path.endswith(".git"):
            path = path[:-4]
        slug = path.rstrip("/").split("/")[-1]
        # SSH URLs such as git@github.com:user/repo.git
        if parsed.scheme == "" and "@" in url and ":" in url:
            slug = url.split(":")[-1].rstrip("/").split("/")[-1].removesuffix(".git")
        return slugify(slug or "repo", max_length=50, lowercase=True, separator="-")

    def get_repo_path(self, url: str) -> Path:
        """Get the local path for a repository.

        The directory name is a readable slug plus a hash of the full URL, e.g.
        `driftless-cache/my-repo/ab1234567890abcd`.
        """
        if (path := self._repos.get(url)) is not None:
            return path
        hash_str = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
        cache_path = self._cache_dir / self._slugify_url(url) / hash_str
        try:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            _LOGGER.error("Error creating cache directory for %s: %s", url, e)
            raise TransientIOError(f"Failed to create cache directory: {e}") from e
        self._repos[url] = cache_path
        return cache_path

    def cleanup(self) -> None:
        """Remove all cached repositories."""
        for path in self._repos.values():
            if path.exists():
                _LOGGER.info("Cleaning up cached repository: %s", path)
                rmtree(path, ignore_errors=True)
        self._repos.clear()


_git_cache = GitCache()


def get_git_cache() -> GitCache:
    """Get the process wide GitCache instance."""
    return _git_cache
