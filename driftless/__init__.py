"""
driftless is a small continuous-delivery reconciliation controller.

It renders the desired state of an application from a deployment repository,
reconciles it into an object store with optimistic concurrency, and tracks
build-and-push pipeline runs whose images can be promoted into the next render.
"""

__all__ = [
    "applications",
    "exceptions",
    "manifest",
    "pipeline",
    "reconciler",
    "renderer",
    "source",
    "status",
    "store",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
