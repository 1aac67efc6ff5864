"""Source repository interfaces.

A `Source` resolves a revision of a deployment repository to a fingerprint
and returns a read-only `SourceTree` of the repository at that fingerprint.
The tree at a fingerprint never changes, which is what makes rendering
deterministic.
"""

from abc import ABC, abstractmethod
import posixpath

__all__ = [
    "Source",
    "SourceTree",
    "normalize_path",
]


def normalize_path(path: str) -> str:
    """Normalize a repository relative path, '' is the repository root.

    Raises ValueError for paths that escape the repository.
    """
    norm = posixpath.normpath(path.strip("/") or ".")
    if norm == ".":
        return ""
    if norm == ".." or norm.startswith("../"):
        raise ValueError(f"Path '{path}' is outside of the repository")
    return norm


class SourceTree(ABC):
    """Read-only view of repository contents at one fingerprint."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if a file or directory exists at the path."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Return True if the path is a directory."""

    @abstractmethod
    def list_dir(self, path: str) -> list[str]:
        """Return the sorted entry names of a directory."""

    @abstractmethod
    def read_text(self, path: str) -> str:
        """Return the contents of a file.

        Raises SourceNotFoundError if the file does not exist.
        """


class Source(ABC):
    """A deployment repository transport."""

    @abstractmethod
    async def resolve(self, url: str, revision: str, path: str = "") -> str:
        """Return the fingerprint (commit hash) that revision currently points at.

        The path is checked for existence. The fingerprint covers the whole
        repository since overlays may reference bases outside of the path.

        Raises:
            SourceNotFoundError: The revision or path does not exist.
            TransientIOError: The repository could not be fetched.
        """

    @abstractmethod
    async def tree(self, url: str, fingerprint: str) -> SourceTree:
        """Return the repository contents at a fingerprint."""
