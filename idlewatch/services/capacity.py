"""Resolve idle entities against the cluster and aggregate reserved capacity."""

from datetime import datetime, timezone

import structlog
from kubernetes.client.rest import ApiException
from structlog.typing import FilteringBoundLogger

from idlewatch.core.exceptions import DetectionCancelled, QueryError, ResourceNotFoundError
from idlewatch.providers.kubernetes import ClusterDirectory
from idlewatch.schemas.report import (
    CategoryStatus,
    CategorySummary,
    IdleIngress,
    IdleIngressPath,
    IdlePod,
    IngressBackend,
    ReclaimReport,
    ResourceRequests,
)
from idlewatch.services.quiescence import DetectionResult

# Errors that only lose one finding
_ENTITY_ERRORS = (ResourceNotFoundError, ApiException)


def unknown_summary(name: str, requested_period: int, error: Exception) -> CategorySummary:
    """Summary for a category whose detector run failed."""
    return CategorySummary(
        name=name,
        status=CategoryStatus.UNKNOWN,
        error=str(error),
        requested_period=requested_period,
    )


def _base_summary(name: str, result: DetectionResult) -> CategorySummary:
    return CategorySummary(
        name=name,
        requested_period=result.requested_period,
        observed_period=result.observed_period,
        candidates=len(result.candidates),
        namespaces=len(result.candidates.branches()),
        exhausted_history=result.exhausted_history,
    )


class CapacityEstimator:
    """
    Turn detector results into a reclaim report.

    Entities that disappear between detection and resolution are logged at
    debug level and counted as skipped; they never abort the report.
    """

    def __init__(
        self,
        directory: ClusterDirectory,
        logger: FilteringBoundLogger | None = None,
        resolve_owners: bool = True,
    ) -> None:
        self.directory = directory
        self.logger = logger or structlog.get_logger(__name__)
        self.resolve_owners = resolve_owners
        # Pod requests are looked up once per run even when several
        # ingress rules route to the same pods
        self._pod_requests: dict[tuple[str, str], ResourceRequests] = {}

    def _requests_for(self, namespace: str, pod: str) -> ResourceRequests:
        key = (namespace, pod)
        if key not in self._pod_requests:
            self._pod_requests[key] = self.directory.get_pod_requests(namespace, pod)
        return self._pod_requests[key]

    def _skip(self, kind: str, key: tuple[str, ...], error: Exception) -> None:
        self.logger.debug(f"{kind}.skipped", key="/".join(key), reason=str(error))

    def _pods_behind(self, namespace: str, backends: list[IngressBackend]) -> list[str]:
        pods: set[str] = set()
        for backend in backends:
            selector = self.directory.get_service_selector(namespace, backend.service_name)
            pods.update(self.directory.list_pods(namespace, selector))
        return sorted(pods)

    def _sum_pods(self, namespace: str, pods: list[str]) -> ResourceRequests:
        total = ResourceRequests()
        for pod in pods:
            try:
                total = total + self._requests_for(namespace, pod)
            except _ENTITY_ERRORS as e:
                self._skip("pod", (namespace, pod), e)
        return total

    def resolve_pods(self, result: DetectionResult) -> tuple[list[IdlePod], CategorySummary]:
        """Price every idle (namespace, pod) key."""
        summary = _base_summary("pods", result)
        found: list[IdlePod] = []

        for namespace, pod in sorted(result.candidates):
            try:
                requests = self._requests_for(namespace, pod)
                owner = self.directory.get_pod_owner(namespace, pod) if self.resolve_owners else None
            except _ENTITY_ERRORS as e:
                self._skip("pod", (namespace, pod), e)
                summary.skipped += 1
                continue

            found.append(IdlePod(namespace=namespace, pod=pod, requests=requests, owner=owner))
            summary.requests = summary.requests + requests
            self.logger.debug(
                "pod.resolved",
                namespace=namespace,
                pod=pod,
                cpu_millicores=requests.cpu_millicores,
                memory_bytes=requests.memory_bytes,
            )

        summary.resolved = len(found)
        return found, summary

    def _distinct_total(self, entries: list[IdleIngress] | list[IdleIngressPath]) -> ResourceRequests:
        total = ResourceRequests()
        seen: set[tuple[str, str]] = set()
        for entry in entries:
            for pod in entry.pods:
                key = (entry.namespace, pod)
                if key in seen or key not in self._pod_requests:
                    continue
                seen.add(key)
                total = total + self._pod_requests[key]
        return total

    def resolve_ingresses(self, result: DetectionResult) -> tuple[list[IdleIngress], CategorySummary]:
        """Price every idle (namespace, ingress) key through its backends."""
        summary = _base_summary("ingresses", result)
        found: list[IdleIngress] = []

        for namespace, ingress in sorted(result.candidates):
            try:
                backends = self.directory.get_ingress_backends(namespace, ingress)
                pods = self._pods_behind(namespace, backends)
            except _ENTITY_ERRORS as e:
                self._skip("ingress", (namespace, ingress), e)
                summary.skipped += 1
                continue

            found.append(
                IdleIngress(
                    namespace=namespace,
                    ingress=ingress,
                    backends=backends,
                    pods=pods,
                    requests=self._sum_pods(namespace, pods),
                )
            )

        summary.resolved = len(found)
        summary.requests = self._distinct_total(found)
        return found, summary

    def resolve_ingress_paths(
        self, result: DetectionResult
    ) -> tuple[list[IdleIngressPath], CategorySummary]:
        """Price every idle (namespace, ingress, host, path) key through its backend."""
        summary = _base_summary("ingress_paths", result)
        found: list[IdleIngressPath] = []

        for namespace, ingress, host, path in sorted(result.candidates):
            try:
                backend = self.directory.get_ingress_backend(namespace, ingress, host, path)
                pods = self._pods_behind(namespace, [backend])
            except _ENTITY_ERRORS as e:
                self._skip("ingress_path", (namespace, ingress, host, path), e)
                summary.skipped += 1
                continue

            found.append(
                IdleIngressPath(
                    namespace=namespace,
                    ingress=ingress,
                    host=host,
                    path=path,
                    backend=backend,
                    pods=pods,
                    requests=self._sum_pods(namespace, pods),
                )
            )

        summary.resolved = len(found)
        summary.requests = self._distinct_total(found)
        return found, summary

    def build_report(
        self,
        results: dict[str, DetectionResult | Exception],
        requested_period: int,
    ) -> ReclaimReport:
        """
        Build the report from per-category detector outcomes.

        Args:
            results: "pods", "ingresses" and "ingress_paths" mapped to a
                DetectionResult, or to the error that aborted that run
            requested_period: Observation period asked for, in hours
        """
        resolvers = {
            "pods": self.resolve_pods,
            "ingresses": self.resolve_ingresses,
            "ingress_paths": self.resolve_ingress_paths,
        }
        summaries: dict[str, CategorySummary] = {}
        entries: dict[str, list] = {}

        for name, resolver in resolvers.items():
            outcome = results.get(name)
            if isinstance(outcome, DetectionResult):
                entries[name], summaries[name] = resolver(outcome)
                continue
            if outcome is None:
                outcome = QueryError("detector did not run")
            elif not isinstance(outcome, (QueryError, DetectionCancelled)):
                raise outcome
            self.logger.warning("report.category_unknown", category=name, error=str(outcome))
            entries[name] = []
            summaries[name] = unknown_summary(name, requested_period, outcome)

        return ReclaimReport(
            generated_at=datetime.now(timezone.utc),
            requested_period=requested_period,
            pods=summaries["pods"],
            ingresses=summaries["ingresses"],
            ingress_paths=summaries["ingress_paths"],
            idle_pods=entries["pods"],
            idle_ingresses=entries["ingresses"],
            idle_ingress_paths=entries["ingress_paths"],
        )


def format_report(report: ReclaimReport) -> str:
    """Human-readable summary of a report."""
    lines = []
    titles = {
        "pods": "Unused PODs (no traffic)",
        "ingresses": "Unused ingresses (no requests)",
        "ingress_paths": "Unused ingress paths (no requests)",
    }
    for name, title in titles.items():
        summary: CategorySummary = getattr(report, name)
        if summary.status is CategoryStatus.UNKNOWN:
            lines.append(f"{title}: unknown ({summary.error})")
            continue
        lines.append(
            f"{title}: {summary.candidates} in {summary.namespaces} namespaces, "
            f"observed {summary.observed_period} of {summary.requested_period} hours, "
            f"resolved {summary.resolved}, skipped {summary.skipped}"
            + (", metrics history exhausted" if summary.exhausted_history else "")
        )
        lines.append(
            f"  Requests: CPU: {summary.requests.cpu_cores:g} cores, "
            f"memory (MB): {summary.requests.memory_mib:.0f}"
        )
    return "\n".join(lines)
