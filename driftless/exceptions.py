"""Exceptions related to driftless.

Every exception carries a short `kind` that is recorded in a SyncStatus and
printed by the command line tool.
"""

__all__ = [
    "DriftlessException",
    "ObjectNotFoundError",
    "ValidationError",
    "ConflictError",
    "RenderError",
    "RenderNotFoundError",
    "RenderParseError",
    "PatchConflictError",
    "SourceNotFoundError",
    "TransientIOError",
    "FatalError",
    "PermissionDeniedError",
    "CommandException",
    "BuildException",
    "InvalidTransitionError",
    "PassSuperseded",
    "error_kind",
]


class DriftlessException(Exception):
    """Generic base exception used for this library."""

    kind = "Error"


class ObjectNotFoundError(DriftlessException):
    """Raised when an object is not found in the store."""

    kind = "NotFound"


class ValidationError(DriftlessException):
    """Raised when an object or input value is malformed."""

    kind = "ValidationError"


class ConflictError(DriftlessException):
    """Raised when an object was modified concurrently.

    The caller must re-read the object and retry, the write is never applied
    over a newer version.
    """

    kind = "ConflictError"

    def __init__(
        self,
        resource: str,
        expected_version: int | None,
        actual_version: int | None,
    ) -> None:
        super().__init__(
            f"Conflict writing {resource}: expected version {expected_version}, "
            f"found {actual_version}"
        )
        self.resource = resource
        self.expected_version = expected_version
        self.actual_version = actual_version


class RenderError(DriftlessException):
    """Raised when the desired state of an application cannot be rendered."""

    kind = "RenderError"


class RenderNotFoundError(RenderError):
    """Raised when a path or referenced file does not exist in the source."""

    kind = "RenderError/NotFound"


class RenderParseError(RenderError):
    """Raised when a manifest file is not valid."""

    kind = "RenderError/ParseError"


class PatchConflictError(RenderError):
    """Raised when overlays cannot be applied unambiguously."""

    kind = "RenderError/PatchConflict"


class SourceNotFoundError(RenderNotFoundError):
    """Raised when a repository revision or path does not exist."""


class TransientIOError(DriftlessException):
    """Raised for network or timeout failures that may succeed on retry."""

    kind = "TransientIOError"


class FatalError(DriftlessException):
    """Raised for policy violations that require operator intervention."""

    kind = "Fatal"


class PermissionDeniedError(FatalError):
    """Raised when the object store rejects a write for lack of permissions."""


class CommandException(DriftlessException):
    """Raised when there is a failure running a subcommand."""

    kind = "CommandError"


class BuildException(CommandException):
    """Raised when a build command fails or produces no image digest."""

    kind = "BuildError"


class InvalidTransitionError(DriftlessException):
    """Raised when the reconciler state machine is driven out of order."""

    kind = "InvalidTransition"


class PassSuperseded(DriftlessException):
    """Raised internally when a newer fingerprint supersedes a running pass."""

    kind = "Superseded"

    def __init__(self, application: str, fingerprint: str) -> None:
        super().__init__(
            f"Reconciliation of {application} at {fingerprint} was superseded"
        )
        self.application = application
        self.fingerprint = fingerprint


def error_kind(err: BaseException) -> str:
    """Return the short kind of an exception for status reporting."""
    if isinstance(err, DriftlessException):
        return err.kind
    return type(err).__name__
