"""Orchestrator for driftless.

This module provides the orchestrator used by the command line tool.
"""

from .orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
]
