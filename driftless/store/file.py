"""Object store persisted to a YAML state file.

This is the durable store used by the command line tool, so that application
definitions, their sync status and the objects they manage survive across
invocations.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import yaml

from driftless.exceptions import ValidationError
from driftless.manifest import NamedResource

from .in_memory import InMemoryStore

_LOGGER = logging.getLogger(__name__)

STATE_VERSION = 1


class FileStore(InMemoryStore):
    """InMemoryStore that writes its contents to disk after every change."""

    def __init__(self, path: Path) -> None:
        """Initialize the FileStore, use `open` to read existing state."""
        super().__init__()
        self._path = path
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    async def open(cls, path: Path) -> "FileStore":
        """Create a store loaded from the state file, if it exists."""
        store = cls(path)
        await store.reload()
        return store

    async def reload(self) -> None:
        """Read the state file into memory."""
        if not await aiofiles.os.path.exists(str(self._path)):
            _LOGGER.debug("State file %s does not exist, starting empty", self._path)
            self.load([], 0)
            return
        async with aiofiles.open(str(self._path)) as state_file:
            content = await state_file.read()
        try:
            doc = yaml.safe_load(content) or {}
        except yaml.YAMLError as err:
            raise ValidationError(
                f"Unable to parse state file {self._path}: {err}"
            ) from err
        version = doc.get("version", STATE_VERSION) if isinstance(doc, dict) else None
        if version != STATE_VERSION:
            raise ValidationError(f"Unsupported state file format: {self._path}")
        objects = doc.get("objects") or []
        self.load(objects, int(doc.get("resourceVersion", 0)))
        _LOGGER.debug("Loaded %d objects from %s", len(objects), self._path)

    async def save(self) -> None:
        """Write the current contents to the state file."""
        content = yaml.dump(
            {
                "version": STATE_VERSION,
                "resourceVersion": self.resource_version,
                "objects": self.dump(),
            },
            sort_keys=False,
            explicit_start=True,
        )
        async with self._lock:
            await aiofiles.os.makedirs(str(self._path.parent), exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            async with aiofiles.open(str(tmp_path), mode="w") as state_file:
                await state_file.write(content)
            await aiofiles.os.replace(str(tmp_path), str(self._path))

    async def apply(self, body: dict[str, Any], expected_version: int | None) -> int:
        before = self.resource_version
        version = await super().apply(body, expected_version)
        if self.resource_version != before:
            await self.save()
        return version

    async def update_status(
        self, resource_id: NamedResource, status: dict[str, Any]
    ) -> int:
        version = await super().update_status(resource_id, status)
        await self.save()
        return version

    async def delete(self, resource_id: NamedResource, expected_version: int) -> None:
        await super().delete(resource_id, expected_version)
        await self.save()
