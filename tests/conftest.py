"""Pytest configuration and fixtures for idlewatch tests."""

from datetime import datetime, timezone
from typing import Callable
from unittest.mock import MagicMock

import pytest
from kubernetes import client as k8s_client

from idlewatch.core.exceptions import QueryError
from idlewatch.providers.kubernetes import ClusterDirectory
from idlewatch.services.quiescence import QueryResult

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def render_rows(keys, components, reverse_labels: bool = False) -> str:
    """Render entity keys as response text, one zero-valued row per key."""
    if not keys:
        return "{}"
    rows = []
    for key in sorted(keys):
        pairs = [f'{name}="{value}"' for name, value in zip(components, key)]
        if reverse_labels:
            pairs.reverse()
        rows.append("{" + ",".join(pairs) + "} => 0 @[1714564800.000]")
    return "\n".join(rows)


class ReplayQuery:
    """Query function answering from a prepared list of responses."""

    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[datetime] = []

    async def __call__(self, at: datetime) -> QueryResult:
        step = len(self.calls)
        self.calls.append(at)
        if step >= len(self.responses):
            raise AssertionError(f"unexpected query for step {step}")
        response = self.responses[step]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, QueryResult):
            return response
        return QueryResult(text=response)


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock frozen at FIXED_NOW."""
    return lambda: FIXED_NOW


@pytest.fixture
def replay_query() -> Callable[..., ReplayQuery]:
    """Build a ReplayQuery from responses (text, QueryResult or exception)."""
    return ReplayQuery


@pytest.fixture
def query_error() -> QueryError:
    """A failing Prometheus query."""
    return QueryError("Prometheus request failed: connection refused")


@pytest.fixture
def k8s_apis() -> dict[str, MagicMock]:
    """Mocked Kubernetes API groups."""
    return {
        "core_v1": MagicMock(spec=k8s_client.CoreV1Api),
        "apps_v1": MagicMock(spec=k8s_client.AppsV1Api),
        "batch_v1": MagicMock(spec=k8s_client.BatchV1Api),
        "networking_v1": MagicMock(spec=k8s_client.NetworkingV1Api),
    }


@pytest.fixture
def directory(k8s_apis: dict[str, MagicMock]) -> ClusterDirectory:
    """Cluster directory backed by mocked APIs."""
    return ClusterDirectory(**k8s_apis)


def make_pod(
    name: str,
    namespace: str = "default",
    requests: list[dict[str, str]] | None = None,
    owner: tuple[str, str] | None = None,
) -> k8s_client.V1Pod:
    """Build a V1Pod with one container per requests dict."""
    owner_references = None
    if owner:
        owner_references = [
            k8s_client.V1OwnerReference(
                api_version="apps/v1", kind=owner[0], name=owner[1], uid="uid-1", controller=True
            )
        ]
    containers = [
        k8s_client.V1Container(
            name=f"c{i}", resources=k8s_client.V1ResourceRequirements(requests=container_requests)
        )
        for i, container_requests in enumerate(requests or [{}])
    ]
    return k8s_client.V1Pod(
        metadata=k8s_client.V1ObjectMeta(
            name=name, namespace=namespace, owner_references=owner_references
        ),
        spec=k8s_client.V1PodSpec(containers=containers),
    )


def make_ingress(rules: list[tuple[str, list[tuple[str | None, str, int]]]]) -> k8s_client.V1Ingress:
    """Build a V1Ingress from [(host, [(path, service, port), ...]), ...]."""
    return k8s_client.V1Ingress(
        spec=k8s_client.V1IngressSpec(
            rules=[
                k8s_client.V1IngressRule(
                    host=host,
                    http=k8s_client.V1HTTPIngressRuleValue(
                        paths=[
                            k8s_client.V1HTTPIngressPath(
                                path=path,
                                path_type="Prefix",
                                backend=k8s_client.V1IngressBackend(
                                    service=k8s_client.V1IngressServiceBackend(
                                        name=service,
                                        port=k8s_client.V1ServiceBackendPort(number=port),
                                    )
                                ),
                            )
                            for path, service, port in paths
                        ]
                    ),
                )
                for host, paths in rules
            ]
        )
    )


def not_found():
    """ApiException as raised for a deleted object."""
    return k8s_client.ApiException(status=404, reason="Not Found")
