"""Configuration objects for driftless.

Defaults match the behavior described for the controller: a 3 minute source
poll interval with 5s..5min backoff on fetch failures, and 5 conflict retries
per object during a reconciliation pass.
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.exceptions import ExtraKeysError, InvalidFieldValue, MissingField

from .exceptions import ValidationError

__all__ = [
    "ReconcilerConfig",
    "SourceWatcherConfig",
    "PipelineConfig",
    "ControllerConfig",
    "DriftlessConfig",
    "load_config",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONTROL_NAMESPACE = "driftless-system"
DEFAULT_STATE_FILE = ".driftless/state.yaml"


class _StrictConfig(BaseConfig):
    forbid_extra_keys = True
    omit_none = True


@dataclass
class ReconcilerConfig(DataClassDictMixin):
    """Configuration for a reconciliation pass."""

    max_retries: int = 5
    """Retries per object after a conflict or transient error."""

    backoff_base: float = 1.0
    """Base delay in seconds between retries (the first retry is immediate)."""

    backoff_cap: float = 30.0
    """Maximum delay in seconds between retries."""

    Config = _StrictConfig


@dataclass
class SourceWatcherConfig(DataClassDictMixin):
    """Configuration for the SourceWatcher."""

    interval: float = 180.0
    """Seconds between polls of the deployment repository."""

    backoff_base: float = 5.0
    backoff_cap: float = 300.0

    Config = _StrictConfig


@dataclass
class PipelineConfig(DataClassDictMixin):
    """Configuration for the PipelineTrigger."""

    build_command: str | None = None
    """Shell command that builds and pushes an image, printing its digest."""

    timeout: float = 1800.0
    """Seconds before a build is considered failed."""

    Config = _StrictConfig


@dataclass
class ControllerConfig(DataClassDictMixin):
    """Configuration for the ApplicationController."""

    queue_size: int = 100
    """Capacity of the per-application event queue (oldest events dropped)."""

    control_namespace: str = DEFAULT_CONTROL_NAMESPACE
    """Namespace holding Application and SyncStatus records."""

    Config = _StrictConfig


@dataclass
class DriftlessConfig(DataClassDictMixin):
    """Top level configuration, typically read from a YAML file."""

    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    source: SourceWatcherConfig = field(default_factory=SourceWatcherConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    state_file: str = DEFAULT_STATE_FILE

    Config = _StrictConfig


def parse_config(doc: dict[str, Any] | None) -> DriftlessConfig:
    """Parse a configuration document."""
    if doc is None:
        return DriftlessConfig()
    if not isinstance(doc, dict):
        raise ValidationError(f"Invalid configuration, expected a mapping: {doc}")
    try:
        return DriftlessConfig.from_dict(doc)
    except (ExtraKeysError, InvalidFieldValue, MissingField) as err:
        raise ValidationError(f"Invalid configuration: {err}") from err


async def load_config(path: Path) -> DriftlessConfig:
    """Read the configuration file at the specified path."""
    _LOGGER.debug("Loading configuration from %s", path)
    try:
        async with aiofiles.open(str(path)) as config_file:
            content = await config_file.read()
    except FileNotFoundError as err:
        raise ValidationError(f"Configuration file {path} does not exist") from err
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise ValidationError(f"Unable to parse configuration {path}: {err}") from err
    return parse_config(doc)
