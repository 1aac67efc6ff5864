"""The task service of the current context."""

from collections.abc import Generator
import contextlib
import contextvars

from .service import TaskService

__all__: list[str] = []

_current: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "task_service", default=None
)


def get_task_service() -> TaskService:
    """Return the task service of this context, creating it on first use."""
    if (service := _current.get()) is None:
        service = TaskService()
        _current.set(service)
    return service


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Make `service` (or a new one) current until the block exits."""
    current = service or TaskService()
    token = _current.set(current)
    try:
        yield current
    finally:
        _current.reset(token)
