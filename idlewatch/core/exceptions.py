"""Exception hierarchy for idlewatch.

Fatal errors stop the process, run-level errors stop one detector run, and
per-entity errors only drop a single finding from the report.
"""


class IdlewatchError(Exception):
    """Base class for every error raised by idlewatch."""


class ConfigurationError(IdlewatchError):
    """Invalid settings or missing credentials (fatal)."""


class ClusterConnectionError(IdlewatchError):
    """The Kubernetes API could not be reached after bounded retries (fatal)."""


class QueryError(IdlewatchError):
    """A metrics query failed; the detector run that issued it is aborted."""

    def __init__(self, message: str, step: int | None = None) -> None:
        super().__init__(message)
        self.step = step


class DetectionCancelled(IdlewatchError):
    """The caller asked the detector to stop between two steps."""

    def __init__(self, step: int) -> None:
        super().__init__(f"detection cancelled before step {step}")
        self.step = step


class ResourceNotFoundError(IdlewatchError):
    """A detected entity no longer exists in the cluster (per entity)."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name
