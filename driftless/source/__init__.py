"""Access to deployment repositories.

A `Source` resolves a revision to a fingerprint and exposes the repository
tree at that fingerprint. `GitSource` reads git repositories and
`MemorySource` serves trees registered in memory. The `SourceWatcher` polls
sources for new revisions of tracked Applications.
"""

from .cache import GitCache, get_git_cache
from .git import GitSource, GitTree
from .memory import MemorySource, MemoryTree
from .source import Source, SourceTree, normalize_path
from .watcher import FingerprintChanged, SourceWatcher

__all__ = [
    "Source",
    "SourceTree",
    "GitSource",
    "GitTree",
    "GitCache",
    "get_git_cache",
    "MemorySource",
    "MemoryTree",
    "FingerprintChanged",
    "SourceWatcher",
    "normalize_path",
]
