"""Report Pydantic schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ResourceRequests(BaseModel):
    """Reserved capacity of one or more pods."""

    cpu_millicores: int = Field(default=0, description="Requested CPU in milli-units")
    memory_bytes: int = Field(default=0, description="Requested memory in bytes")

    def __add__(self, other: "ResourceRequests") -> "ResourceRequests":
        return ResourceRequests(
            cpu_millicores=self.cpu_millicores + other.cpu_millicores,
            memory_bytes=self.memory_bytes + other.memory_bytes,
        )

    @property
    def cpu_cores(self) -> float:
        return self.cpu_millicores / 1000

    @property
    def memory_mib(self) -> float:
        return self.memory_bytes / 1024 / 1024


class OwnerReference(BaseModel):
    """Controller owning a pod (e.g. Deployment/api)."""

    kind: str
    name: str


class IngressBackend(BaseModel):
    """Service an ingress rule routes to."""

    service_name: str
    service_port: int | str | None = None


class IdlePod(BaseModel):
    """Pod without traffic during the observed period."""

    namespace: str
    pod: str
    requests: ResourceRequests = Field(default_factory=ResourceRequests)
    owner: OwnerReference | None = None


class IdleIngress(BaseModel):
    """Ingress without requests on any of its rules."""

    namespace: str
    ingress: str
    backends: list[IngressBackend] = Field(default_factory=list)
    pods: list[str] = Field(default_factory=list, description="Pods behind the backends")
    requests: ResourceRequests = Field(default_factory=ResourceRequests)


class IdleIngressPath(BaseModel):
    """Single ingress host/path rule without requests."""

    namespace: str
    ingress: str
    host: str
    path: str
    backend: IngressBackend | None = None
    pods: list[str] = Field(default_factory=list, description="Pods behind the backend")
    requests: ResourceRequests = Field(default_factory=ResourceRequests)


class CategoryStatus(str, Enum):
    """Whether a category's detector run produced a usable answer."""

    OK = "ok"
    UNKNOWN = "unknown"  # Detector failed: nothing is known, not "nothing unused"


class CategorySummary(BaseModel):
    """Aggregated findings for one occupancy check."""

    name: str
    status: CategoryStatus = CategoryStatus.OK
    error: str | None = None
    requested_period: int = Field(description="Requested observation period in hours")
    observed_period: int = Field(default=0, description="Hours with available metrics")
    exhausted_history: bool = Field(
        default=False, description="Metrics ran out before the requested period"
    )
    candidates: int = Field(default=0, description="Entities idle over the whole period")
    resolved: int = Field(default=0, description="Candidates found in the cluster")
    skipped: int = Field(default=0, description="Candidates that vanished before resolution")
    namespaces: int = 0
    requests: ResourceRequests = Field(default_factory=ResourceRequests)


class ReclaimReport(BaseModel):
    """Everything found by one idlewatch run."""

    generated_at: datetime
    requested_period: int
    pods: CategorySummary
    ingresses: CategorySummary
    ingress_paths: CategorySummary
    idle_pods: list[IdlePod] = Field(default_factory=list)
    idle_ingresses: list[IdleIngress] = Field(default_factory=list)
    idle_ingress_paths: list[IdleIngressPath] = Field(default_factory=list)
