"""Tests for capacity resolution and report building."""

import pytest
from kubernetes import client as k8s_client

from conftest import make_ingress, make_pod, not_found
from idlewatch.core.exceptions import DetectionCancelled, QueryError
from idlewatch.schemas.report import CategoryStatus
from idlewatch.services.candidates import CandidateMap
from idlewatch.services.capacity import CapacityEstimator, format_report
from idlewatch.services.quiescence import DetectionResult


def _result(depth: int, keys, observed: int = 6, requested: int = 6) -> DetectionResult:
    return DetectionResult(
        candidates=CandidateMap(depth, keys),
        observed_period=observed,
        requested_period=requested,
    )


def _pods_by_name(pods: dict):
    def read(name, namespace):
        if name not in pods:
            raise not_found()
        return pods[name]

    return read


class TestResolvePods:
    """Test pricing of idle pods."""

    def test_sum_requests(self, directory, k8s_apis):
        """Test that CPU and memory requests are summed over pods."""
        k8s_apis["core_v1"].read_namespaced_pod.side_effect = _pods_by_name(
            {
                "podA": make_pod("podA", "ns1", [{"cpu": "100m", "memory": "64Mi"}]),
                "podB": make_pod("podB", "ns1", [{"cpu": "1", "memory": "1Gi"}]),
            }
        )
        estimator = CapacityEstimator(directory, resolve_owners=False)

        pods, summary = estimator.resolve_pods(_result(2, {("ns1", "podA"), ("ns1", "podB")}))

        assert [p.pod for p in pods] == ["podA", "podB"]
        assert summary.status is CategoryStatus.OK
        assert summary.candidates == 2
        assert summary.resolved == 2
        assert summary.skipped == 0
        assert summary.namespaces == 1
        assert summary.requests.cpu_millicores == 1100
        assert summary.requests.memory_bytes == 64 * 1024**2 + 1024**3

    def test_vanished_pod_is_skipped(self, directory, k8s_apis):
        """Test that a pod deleted since detection is skipped, not fatal."""
        k8s_apis["core_v1"].read_namespaced_pod.side_effect = _pods_by_name(
            {"podA": make_pod("podA", "ns1", [{"cpu": "250m"}])}
        )
        estimator = CapacityEstimator(directory, resolve_owners=False)

        pods, summary = estimator.resolve_pods(_result(2, {("ns1", "podA"), ("ns2", "gone")}))

        assert [p.pod for p in pods] == ["podA"]
        assert summary.candidates == 2
        assert summary.resolved == 1
        assert summary.skipped == 1
        assert summary.requests.cpu_millicores == 250

    def test_owner_is_resolved(self, directory, k8s_apis):
        """Test that each idle pod carries its controller."""
        k8s_apis["core_v1"].read_namespaced_pod.return_value = make_pod(
            "podA", "ns1", [{"cpu": "100m"}], owner=("StatefulSet", "db")
        )
        estimator = CapacityEstimator(directory)

        pods, _ = estimator.resolve_pods(_result(2, {("ns1", "podA")}))

        assert pods[0].owner.kind == "StatefulSet"
        assert pods[0].owner.name == "db"


class TestResolveIngressPaths:
    """Test pricing of idle ingress paths through their backends."""

    @pytest.fixture
    def cluster(self, k8s_apis):
        """One ingress routing two paths to the same service."""
        k8s_apis["networking_v1"].read_namespaced_ingress.return_value = make_ingress(
            [("h1", [("/", "web", 80), ("/x", "web", 80)])]
        )
        k8s_apis["core_v1"].read_namespaced_service.return_value = k8s_client.V1Service(
            spec=k8s_client.V1ServiceSpec(selector={"app": "web"})
        )
        k8s_apis["core_v1"].list_namespaced_pod.return_value = k8s_client.V1PodList(
            items=[make_pod("web-1", "ns"), make_pod("web-2", "ns")]
        )
        k8s_apis["core_v1"].read_namespaced_pod.side_effect = _pods_by_name(
            {
                "web-1": make_pod("web-1", "ns", [{"cpu": "200m", "memory": "100Mi"}]),
                "web-2": make_pod("web-2", "ns", [{"cpu": "300m", "memory": "100Mi"}]),
            }
        )
        return k8s_apis

    def test_pods_counted_once_per_category(self, directory, cluster):
        """Test that two idle paths on one service do not double the total."""
        estimator = CapacityEstimator(directory)
        result = _result(4, {("ns", "route", "h1", "/"), ("ns", "route", "h1", "/x")})

        paths, summary = estimator.resolve_ingress_paths(result)

        assert len(paths) == 2
        assert paths[0].backend.service_name == "web"
        assert paths[0].pods == ["web-1", "web-2"]
        assert paths[0].requests.cpu_millicores == 500
        assert summary.requests.cpu_millicores == 500
        assert summary.requests.memory_bytes == 200 * 1024**2
        # Each pod read once thanks to the per-run cache
        assert cluster["core_v1"].read_namespaced_pod.call_count == 2

    def test_missing_ingress_is_skipped(self, directory, cluster):
        """Test that an ingress deleted since detection is skipped."""
        cluster["networking_v1"].read_namespaced_ingress.side_effect = not_found()
        estimator = CapacityEstimator(directory)

        paths, summary = estimator.resolve_ingress_paths(_result(4, {("ns", "route", "h1", "/")}))

        assert paths == []
        assert summary.skipped == 1
        assert summary.candidates == 1

    def test_pod_api_error_behind_path(self, directory, cluster):
        """Test that a failing pod read behind an idle path still yields a report."""
        cluster["core_v1"].read_namespaced_pod.side_effect = k8s_client.ApiException(
            status=500, reason="boom"
        )
        estimator = CapacityEstimator(directory)

        report = estimator.build_report(
            {
                "pods": _result(2, set()),
                "ingresses": _result(2, set()),
                "ingress_paths": _result(4, {("ns", "route", "h1", "/")}),
            },
            requested_period=6,
        )

        assert report.ingress_paths.status is CategoryStatus.OK
        assert report.ingress_paths.resolved == 1
        assert report.idle_ingress_paths[0].pods == ["web-1", "web-2"]
        assert report.idle_ingress_paths[0].requests.cpu_millicores == 0
        assert report.ingress_paths.requests.cpu_millicores == 0

    def test_resolve_whole_ingresses(self, directory, cluster):
        """Test pricing an idle ingress through every backend it references."""
        estimator = CapacityEstimator(directory)

        ingresses, summary = estimator.resolve_ingresses(_result(2, {("ns", "route")}))

        assert len(ingresses) == 1
        assert [b.service_name for b in ingresses[0].backends] == ["web"]
        assert summary.requests.cpu_millicores == 500


class TestBuildReport:
    """Test assembling the report from detector outcomes."""

    def test_failed_category_is_unknown(self, directory, k8s_apis):
        """Test that a failed run is reported as unknown rather than empty."""
        k8s_apis["core_v1"].read_namespaced_pod.return_value = make_pod(
            "podA", "ns1", [{"cpu": "100m"}]
        )
        estimator = CapacityEstimator(directory, resolve_owners=False)

        report = estimator.build_report(
            {
                "pods": _result(2, {("ns1", "podA")}, observed=4),
                "ingresses": QueryError("connection refused", step=0),
                "ingress_paths": DetectionCancelled(2),
            },
            requested_period=6,
        )

        assert report.pods.status is CategoryStatus.OK
        assert report.pods.observed_period == 4
        assert report.ingresses.status is CategoryStatus.UNKNOWN
        assert "connection refused" in report.ingresses.error
        assert report.ingress_paths.status is CategoryStatus.UNKNOWN
        assert report.idle_ingress_paths == []
        assert len(report.idle_pods) == 1

    def test_missing_category_is_unknown(self, directory):
        """Test that a category that never ran is reported as unknown."""
        report = CapacityEstimator(directory).build_report({}, requested_period=6)

        assert report.pods.status is CategoryStatus.UNKNOWN

    def test_unexpected_error_propagates(self, directory):
        """Test that programming errors are not disguised as unknown categories."""
        with pytest.raises(RuntimeError):
            CapacityEstimator(directory).build_report({"pods": RuntimeError("bug")}, 6)

    def test_format_report(self, directory, k8s_apis):
        """Test the human-readable summary."""
        k8s_apis["core_v1"].read_namespaced_pod.return_value = make_pod(
            "podA", "ns1", [{"cpu": "1500m", "memory": "512Mi"}]
        )
        report = CapacityEstimator(directory, resolve_owners=False).build_report(
            {"pods": _result(2, {("ns1", "podA")}), "ingresses": QueryError("down")},
            requested_period=6,
        )

        text = format_report(report)

        assert "Unused PODs (no traffic): 1 in 1 namespaces" in text
        assert "CPU: 1.5 cores, memory (MB): 512" in text
        assert "Unused ingresses (no requests): unknown (down)" in text
        assert "history exhausted" not in text

    def test_exhausted_history_is_reported(self, directory):
        """Test that a run cut short by missing metrics is flagged."""
        report = CapacityEstimator(directory).build_report(
            {"pods": _result(2, set(), observed=2, requested=6)},
            requested_period=6,
        )

        assert report.pods.exhausted_history is True
        assert "observed 2 of 6 hours" in format_report(report)
        assert "metrics history exhausted" in format_report(report)
