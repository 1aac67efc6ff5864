"""Build-and-push pipeline runs.

The build and the registry are external collaborators, modelled by the
`BuildExecutor` interface and the content addressed `InMemoryRegistry`.
"""

from .executor import BuildExecutor, CommandBuildExecutor, RegistryBuildExecutor
from .registry import InMemoryRegistry
from .run import PipelineRun, RunOutcome
from .trigger import PipelineTrigger

__all__ = [
    "BuildExecutor",
    "CommandBuildExecutor",
    "RegistryBuildExecutor",
    "InMemoryRegistry",
    "PipelineRun",
    "RunOutcome",
    "PipelineTrigger",
]
