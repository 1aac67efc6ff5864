"""Reconciliation of Applications.

The `Reconciler` runs a single pass converging live objects towards a
DesiredStateSnapshot. The `ApplicationController` runs a worker per
Application that decides when passes run and records their status.
"""

from .controller import ApplicationController, AppEvent, AppEventType
from .reconciler import Reconciler, SyncResult, owner_labels
from .state import StateMachine, TRANSITIONS

__all__ = [
    "ApplicationController",
    "AppEvent",
    "AppEventType",
    "Reconciler",
    "SyncResult",
    "StateMachine",
    "TRANSITIONS",
    "owner_labels",
]
