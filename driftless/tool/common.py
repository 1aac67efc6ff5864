"""Common utilities for driftless commands."""

from collections.abc import AsyncGenerator
import contextlib
import logging
import pathlib

from driftless.config import DriftlessConfig, load_config
from driftless.exceptions import (
    DriftlessException,
    ObjectNotFoundError,
    PatchConflictError,
    RenderError,
    RenderNotFoundError,
    RenderParseError,
    ValidationError,
)
from driftless.orchestrator import Orchestrator
from driftless.store import SyncStatus

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USER_ERROR = 1
EXIT_SYNC_FAILURE = 2

USER_ERRORS = (ValidationError, ObjectNotFoundError, RenderError)

USER_ERROR_KINDS = {
    err.kind
    for err in (
        ValidationError,
        ObjectNotFoundError,
        RenderError,
        RenderNotFoundError,
        RenderParseError,
        PatchConflictError,
    )
}


def exit_code(err: DriftlessException) -> int:
    """Exit code for an error raised by a command."""
    if isinstance(err, USER_ERRORS):
        return EXIT_USER_ERROR
    return EXIT_SYNC_FAILURE


def status_exit_code(status: SyncStatus) -> int:
    """Exit code for the status written by a pass."""
    if not status.failed:
        return EXIT_OK
    if status.error_kind in USER_ERROR_KINDS:
        return EXIT_USER_ERROR
    return EXIT_SYNC_FAILURE


@contextlib.asynccontextmanager
async def open_orchestrator(
    state_file: pathlib.Path | None, config: pathlib.Path | None
) -> AsyncGenerator[Orchestrator, None]:
    """Open the orchestrator for the state file and stop it when done."""
    settings = await load_config(config) if config else DriftlessConfig()
    _LOGGER.debug("Using state file %s", state_file or settings.state_file)
    orchestrator = await Orchestrator.open(settings, state_file)
    try:
        yield orchestrator
    finally:
        await orchestrator.close()
