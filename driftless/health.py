"""Health assessment of live objects.

Workloads are Progressing until they report the desired number of ready
replicas for the current generation. Objects without a notion of readiness
are Healthy as soon as they exist.
"""

import logging
from collections.abc import Iterable

from .store import Health, LiveObject

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "assess",
    "aggregate",
]

REPLICATED_KINDS = {"Deployment", "StatefulSet", "ReplicaSet"}

# Worst first
_SEVERITY = [Health.DEGRADED, Health.PROGRESSING, Health.UNKNOWN, Health.HEALTHY]


def _condition(obj: LiveObject, condition_type: str) -> dict | None:
    for condition in obj.status.get("conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == condition_type:
            return condition
    return None


def _observed_current(obj: LiveObject) -> bool:
    """True if the controller has observed the latest generation."""
    observed = obj.status.get("observedGeneration")
    generation = obj.body.get("metadata", {}).get("generation")
    if observed is None or generation is None:
        return True
    return int(observed) >= int(generation)


def _assess_replicated(obj: LiveObject) -> Health:
    progressing = _condition(obj, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return Health.DEGRADED
    replica_failure = _condition(obj, "ReplicaFailure")
    if replica_failure and replica_failure.get("status") == "True":
        return Health.DEGRADED
    desired = obj.spec.get("replicas", 1)
    if desired == 0:
        return Health.HEALTHY
    ready = obj.status.get("readyReplicas") or 0
    if ready >= desired and _observed_current(obj):
        return Health.HEALTHY
    return Health.PROGRESSING


def _assess_daemon_set(obj: LiveObject) -> Health:
    desired = obj.status.get("desiredNumberScheduled")
    if desired is None:
        return Health.PROGRESSING
    ready = obj.status.get("numberReady") or 0
    if ready >= desired and _observed_current(obj):
        return Health.HEALTHY
    return Health.PROGRESSING


def _assess_job(obj: LiveObject) -> Health:
    failed = _condition(obj, "Failed")
    if failed and failed.get("status") == "True":
        return Health.DEGRADED
    if (obj.status.get("succeeded") or 0) > 0:
        return Health.HEALTHY
    return Health.PROGRESSING


def _assess_pod(obj: LiveObject) -> Health:
    phase = obj.status.get("phase")
    if phase in ("Running", "Succeeded"):
        return Health.HEALTHY
    if phase == "Failed":
        return Health.DEGRADED
    return Health.PROGRESSING


def assess(obj: LiveObject) -> Health:
    """Return the health of one live object."""
    if obj.kind in REPLICATED_KINDS:
        health = _assess_replicated(obj)
    elif obj.kind == "DaemonSet":
        health = _assess_daemon_set(obj)
    elif obj.kind == "Job":
        health = _assess_job(obj)
    elif obj.kind == "Pod":
        health = _assess_pod(obj)
    else:
        health = Health.HEALTHY
    _LOGGER.debug("Health of %s is %s", obj.resource_id, health)
    return health


def aggregate(healths: Iterable[Health]) -> Health:
    """Return the worst health, Healthy when there is nothing to assess."""
    found = set(healths)
    for health in _SEVERITY:
        if health in found:
            return health
    return Health.HEALTHY
