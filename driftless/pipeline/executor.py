"""Build executors.

The build itself is opaque: it takes a source reference and an image tag and
produces the digest of the pushed image.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path
import re

from driftless import command
from driftless.exceptions import BuildException

from .registry import InMemoryRegistry

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "BuildExecutor",
    "CommandBuildExecutor",
    "RegistryBuildExecutor",
]

DIGEST_RE = re.compile(r"sha256:[0-9a-f]{64}")

SOURCE_REF_ENV = "DRIFTLESS_SOURCE_REF"
IMAGE_TAG_ENV = "DRIFTLESS_IMAGE_TAG"


class BuildExecutor(ABC):
    """Builds and pushes an image."""

    @abstractmethod
    async def build(self, source_ref: str, image_tag: str) -> str:
        """Build the source reference, push it as the image tag, return the digest.

        Raises:
            BuildException: If the build fails.
        """


class CommandBuildExecutor(BuildExecutor):
    """Runs a shell command that builds and pushes the image.

    The source reference and image tag are passed in the environment as
    `DRIFTLESS_SOURCE_REF` and `DRIFTLESS_IMAGE_TAG`. The last `sha256:`
    digest printed on stdout is the result of the build.
    """

    def __init__(self, build_command: str, cwd: Path | None = None) -> None:
        self._build_command = build_command
        self._cwd = cwd

    async def build(self, source_ref: str, image_tag: str) -> str:
        cmd = command.Command(
            self._build_command,
            cwd=self._cwd,
            env={SOURCE_REF_ENV: source_ref, IMAGE_TAG_ENV: image_tag},
            exc=BuildException,
        )
        out = await command.run(cmd)
        if not (digests := DIGEST_RE.findall(out)):
            raise BuildException(f"Build command '{cmd}' did not print an image digest")
        return digests[-1]


class RegistryBuildExecutor(BuildExecutor):
    """Pushes a synthetic image to an InMemoryRegistry.

    The image content is derived from the source reference, so building the
    same reference twice yields the same digest.
    """

    def __init__(self, registry: InMemoryRegistry, delay: float = 0.0) -> None:
        self._registry = registry
        self._delay = delay

    async def build(self, source_ref: str, image_tag: str) -> str:
        if self._delay:
            await asyncio.sleep(self._delay)
        content = f"source: {source_ref}\n".encode()
        digest = self._registry.push(image_tag, content)
        _LOGGER.debug("Built %s from %s: %s", image_tag, source_ref, digest)
        return digest
