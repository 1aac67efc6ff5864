"""Task tracking for driftless.

Reconciliation workers, watch streams, source pollers and pipeline runs are
all asyncio tasks tracked by a TaskService so they can be awaited in tests
and cancelled together on shutdown.
"""

from .context import get_task_service, task_service_context
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
