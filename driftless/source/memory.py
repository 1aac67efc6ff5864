"""In-memory source repository.

Revisions are registered explicitly as a mapping of file paths to contents,
which is convenient for tests and for rendering manifests that do not live in
a git repository.
"""

import hashlib
import logging

from driftless.exceptions import SourceNotFoundError, TransientIOError
from driftless.manifest import canonical_json

from .source import Source, SourceTree, normalize_path

_LOGGER = logging.getLogger(__name__)


class MemoryTree(SourceTree):
    """SourceTree over a dict of file path to contents."""

    def __init__(self, files: dict[str, str]) -> None:
        self._files = {normalize_path(path): content for path, content in files.items()}

    def exists(self, path: str) -> bool:
        return self.is_dir(path) or normalize_path(path) in self._files

    def is_dir(self, path: str) -> bool:
        prefix = normalize_path(path)
        if not prefix:
            return True
        return any(name.startswith(prefix + "/") for name in self._files)

    def list_dir(self, path: str) -> list[str]:
        prefix = normalize_path(path)
        prefix = prefix + "/" if prefix else ""
        return sorted(
            {
                name[len(prefix) :].split("/", 1)[0]
                for name in self._files
                if name.startswith(prefix)
            }
        )

    def read_text(self, path: str) -> str:
        if (content := self._files.get(normalize_path(path))) is None:
            raise SourceNotFoundError(f"File {path} does not exist")
        return content

    def fingerprint(self) -> str:
        """Content hash of every file in the tree."""
        return hashlib.sha256(canonical_json(self._files).encode()).hexdigest()[:40]


class MemorySource(Source):
    """A Source whose branches are set by the caller.

    `set_revision` moves a branch to new contents. The fingerprint is the
    content hash of the whole tree, like a commit hash.
    """

    def __init__(self) -> None:
        self._branches: dict[tuple[str, str], MemoryTree] = {}
        self._trees: dict[tuple[str, str], MemoryTree] = {}
        self.failures = 0
        self.resolve_calls = 0

    def set_revision(self, url: str, revision: str, files: dict[str, str]) -> None:
        """Point a revision of the repository at the given files."""
        self._branches[(url, revision)] = MemoryTree(files)

    async def resolve(self, url: str, revision: str, path: str = "") -> str:
        self.resolve_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientIOError(f"Unable to fetch {url}")
        if (tree := self._branches.get((url, revision))) is None:
            raise SourceNotFoundError(f"Revision {revision} not found in {url}")
        try:
            norm = normalize_path(path)
        except ValueError as err:
            raise SourceNotFoundError(str(err)) from err
        if not tree.exists(norm):
            raise SourceNotFoundError(f"Path '{path}' not found at {revision} in {url}")
        fingerprint = tree.fingerprint()
        self._trees[(url, fingerprint)] = tree
        _LOGGER.debug("Resolved %s@%s:%s to %s", url, revision, path, fingerprint)
        return fingerprint

    async def tree(self, url: str, fingerprint: str) -> SourceTree:
        if (tree := self._trees.get((url, fingerprint))) is None:
            raise SourceNotFoundError(f"Fingerprint {fingerprint} not found in {url}")
        return tree
