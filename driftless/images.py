"""Helper functions for working with container images."""

import copy
import hashlib
import logging
from typing import Any

from .exceptions import RenderParseError
from .manifest import ImageOverride, canonical_json

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "KINDS",
    "parse_image",
    "format_image",
    "extract_images",
    "apply_image_overrides",
    "overrides_digest",
]


# Object types that may have container images.
KINDS = [
    "Pod",
    "Deployment",
    "StatefulSet",
    "ReplicaSet",
    "DaemonSet",
    "CronJob",
    "Job",
    "ReplicationController",
]

# Image key in container specs.
IMAGE_KEY = "image"


def parse_image(image: str) -> tuple[str, str | None, str | None]:
    """Split an image reference into name, tag and digest.

    The tag separator is the last colon after the last slash, so a registry
    port (`registry:5000/app`) is part of the name.
    """
    name, _, digest = image.partition("@")
    tag = None
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        name, tag = name[:colon], name[colon + 1 :]
    return name, tag, digest or None


def format_image(name: str, tag: str | None, digest: str | None) -> str:
    """Build an image reference, a digest takes precedence over a tag."""
    if digest:
        return f"{name}@{digest}"
    if tag:
        return f"{name}:{tag}"
    return name


def _visit_images(value: Any, func: Any, path: str) -> None:
    """Call func(container, path) for every mapping with an image key."""
    if isinstance(value, dict):
        for key, child in value.items():
            if key == IMAGE_KEY and not isinstance(child, dict):
                if not isinstance(child, str):
                    raise RenderParseError(
                        f"Expected string for image key at {path}, got type "
                        f"{type(child).__name__}: {child}"
                    )
                func(value)
            elif isinstance(child, (dict, list)):
                _visit_images(child, func, f"{path}.{key}")
    elif isinstance(value, list):
        for i, item in enumerate(value):
            _visit_images(item, func, f"{path}[{i}]")


def extract_images(doc: dict[str, Any]) -> set[str]:
    """Extract the container images referenced by an object."""
    images: set[str] = set()
    if doc.get("kind") not in KINDS:
        return images
    _visit_images(
        doc.get("spec") or {},
        lambda container: images.add(container[IMAGE_KEY]),
        "spec",
    )
    return images


def _override_image(image: str, override: ImageOverride) -> str:
    _, tag, digest = parse_image(image)
    name = override.new_name or override.name
    if override.digest:
        return format_image(name, None, override.digest)
    if override.new_tag:
        return format_image(name, override.new_tag, None)
    return format_image(name, tag, digest)


def apply_image_overrides(
    doc: dict[str, Any], overrides: list[ImageOverride]
) -> dict[str, Any]:
    """Return a copy of the object with the image overrides applied.

    Later overrides for the same image name win.
    """
    if not overrides or doc.get("kind") not in KINDS:
        return doc
    by_name = {override.name: override for override in overrides}
    result = copy.deepcopy(doc)

    def replace(container: dict[str, Any]) -> None:
        image = container[IMAGE_KEY]
        name, _, _ = parse_image(image)
        if (override := by_name.get(name)) is None:
            return
        new_image = _override_image(image, override)
        if new_image != image:
            _LOGGER.debug("Replacing image %s with %s", image, new_image)
            container[IMAGE_KEY] = new_image

    _visit_images(result.get("spec") or {}, replace, "spec")
    return result


def overrides_digest(overrides: list[ImageOverride]) -> str:
    """Short content hash of a list of image overrides."""
    content = canonical_json([override.to_dict() for override in overrides])
    return hashlib.sha256(content.encode()).hexdigest()[:12]
