"""An in-process container registry.

Images are content addressed: pushing bytes stores them under their sha256
digest and points the (repository, tag) of the image reference at it.
"""

import hashlib
import logging

from driftless.exceptions import ObjectNotFoundError, ValidationError
from driftless.images import parse_image

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "InMemoryRegistry",
    "DEFAULT_TAG",
]

DEFAULT_TAG = "latest"


def _split(image_ref: str) -> tuple[str, str]:
    name, tag, digest = parse_image(image_ref)
    if not name or digest:
        raise ValidationError(f"Invalid image reference for a tag: {image_ref}")
    return name, tag or DEFAULT_TAG


class InMemoryRegistry:
    """Registry keeping blobs and tags in memory."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._tags: dict[tuple[str, str], str] = {}

    def push(self, image_ref: str, content: bytes) -> str:
        """Store content and tag it, returning its digest."""
        key = _split(image_ref)
        digest = "sha256:" + hashlib.sha256(content).hexdigest()
        self._blobs[digest] = content
        self._tags[key] = digest
        _LOGGER.debug("Pushed %s:%s as %s", *key, digest)
        return digest

    def tag(self, image_ref: str, digest: str) -> None:
        """Point a tag at an existing digest."""
        if digest not in self._blobs:
            raise ObjectNotFoundError(f"Digest {digest} not found")
        self._tags[_split(image_ref)] = digest

    def resolve(self, image_ref: str) -> str:
        """Return the digest a tag points at."""
        key = _split(image_ref)
        if (digest := self._tags.get(key)) is None:
            raise ObjectNotFoundError(f"Image {key[0]}:{key[1]} not found")
        return digest

    def blob(self, digest: str) -> bytes:
        """Return the content stored under a digest."""
        if (content := self._blobs.get(digest)) is None:
            raise ObjectNotFoundError(f"Digest {digest} not found")
        return content

    def tags(self, repository: str) -> dict[str, str]:
        """Return the tags of a repository and their digests."""
        return {
            tag: digest
            for (name, tag), digest in sorted(self._tags.items())
            if name == repository
        }
