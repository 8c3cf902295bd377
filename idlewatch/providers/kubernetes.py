"""Kubernetes cluster directory lookups."""

import math
import os
import time
from typing import Callable

import structlog
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from idlewatch.core.exceptions import (
    ClusterConnectionError,
    ConfigurationError,
    ResourceNotFoundError,
)
from idlewatch.schemas.report import IngressBackend, OwnerReference, ResourceRequests

logger = structlog.get_logger(__name__)


def load_config(run_outside_cluster: bool, kubeconfig_path: str = "") -> k8s_client.ApiClient:
    """
    Build a Kubernetes API client from local or in-cluster credentials.

    Args:
        run_outside_cluster: Use a kubeconfig file instead of the pod's service account
        kubeconfig_path: Kubeconfig location (empty = ~/.kube/config)

    Raises:
        ConfigurationError: If credentials cannot be loaded
    """
    configuration = k8s_client.Configuration()

    if run_outside_cluster:
        location = kubeconfig_path or os.path.join(os.path.expanduser("~"), ".kube", "config")
        logger.info("kubernetes.config_location", path=location)
        try:
            k8s_config.load_kube_config(config_file=location, client_configuration=configuration)
        except (k8s_config.ConfigException, OSError) as e:
            raise ConfigurationError(f"Cannot load kubeconfig {location}: {e}") from e
    else:
        try:
            k8s_config.load_incluster_config(client_configuration=configuration)
        except k8s_config.ConfigException as e:
            raise ConfigurationError(f"Cannot load in-cluster config: {e}") from e
        logger.info("kubernetes.running_in_cluster")

    return k8s_client.ApiClient(configuration)


def _controller_ref(refs) -> OwnerReference | None:
    """Pick the controlling owner reference, falling back to the first one."""
    if not refs:
        return None
    ref = next((r for r in refs if r.controller), refs[0])
    return OwnerReference(kind=ref.kind, name=ref.name)


class ClusterDirectory:
    """
    Read-only view of the cluster used to price idle entities.

    All lookups raise ResourceNotFoundError when the object is gone, which
    happens when something is deleted between detection and resolution.
    """

    def __init__(
        self,
        api_client: k8s_client.ApiClient | None = None,
        core_v1: k8s_client.CoreV1Api | None = None,
        apps_v1: k8s_client.AppsV1Api | None = None,
        batch_v1: k8s_client.BatchV1Api | None = None,
        networking_v1: k8s_client.NetworkingV1Api | None = None,
    ) -> None:
        self.core_v1 = core_v1 or k8s_client.CoreV1Api(api_client)
        self.apps_v1 = apps_v1 or k8s_client.AppsV1Api(api_client)
        self.batch_v1 = batch_v1 or k8s_client.BatchV1Api(api_client)
        self.networking_v1 = networking_v1 or k8s_client.NetworkingV1Api(api_client)

    def check_connection(
        self,
        retries: int = 3,
        delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> int:
        """
        Verify the API server answers by listing nodes.

        Returns:
            Number of nodes in the cluster

        Raises:
            ClusterConnectionError: If every attempt fails
        """
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                nodes = self.core_v1.list_node()
            except (ApiException, Urllib3HTTPError, OSError) as e:
                last_error = e
                logger.warning(
                    "kubernetes.connection_failed", attempt=attempt, retries=retries, error=str(e)
                )
                if attempt < retries:
                    sleep(delay)
                continue
            logger.debug("kubernetes.connected", nodes=len(nodes.items))
            return len(nodes.items)

        raise ClusterConnectionError(f"Can't access cluster after {retries} attempts: {last_error}")

    def _read(self, kind: str, reader: Callable, namespace: str, name: str):
        try:
            return reader(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise ResourceNotFoundError(kind, namespace, name) from e
            raise

    def get_pod_requests(self, namespace: str, pod: str) -> ResourceRequests:
        """
        Sum CPU and memory requests over the pod's containers.

        0.100 CPU means "1/10 of one core", reported as 100 millicores.
        Memory is reported in bytes. Fractions are rounded up.
        """
        pod_obj = self._read("pod", self.core_v1.read_namespaced_pod, namespace, pod)

        cpu = 0
        memory = 0
        for container in pod_obj.spec.containers or []:
            requests = (container.resources.requests if container.resources else None) or {}
            if "cpu" in requests:
                cpu += math.ceil(parse_quantity(requests["cpu"]) * 1000)
            if "memory" in requests:
                memory += math.ceil(parse_quantity(requests["memory"]))

        return ResourceRequests(cpu_millicores=cpu, memory_bytes=memory)

    def get_pod_owner(self, namespace: str, pod: str) -> OwnerReference | None:
        """
        Resolve the controller owning a pod.

        The pod's owner is followed one more level when it is itself owned,
        so a ReplicaSet resolves to its Deployment and a Job to its CronJob.
        Returns None for bare pods.
        """
        pod_obj = self._read("pod", self.core_v1.read_namespaced_pod, namespace, pod)
        owner = _controller_ref(pod_obj.metadata.owner_references)
        if owner is None:
            return None

        readers = {
            "ReplicaSet": self.apps_v1.read_namespaced_replica_set,
            "Job": self.batch_v1.read_namespaced_job,
        }
        reader = readers.get(owner.kind)
        if reader is None:
            return owner

        try:
            parent_obj = self._read(owner.kind, reader, namespace, owner.name)
        except ResourceNotFoundError:
            return owner
        return _controller_ref(parent_obj.metadata.owner_references) or owner

    def _service_backend(self, backend) -> IngressBackend | None:
        if backend is None or backend.service is None:
            return None
        port = backend.service.port
        port_value = None
        if port is not None:
            port_value = port.number if port.number is not None else port.name
        return IngressBackend(service_name=backend.service.name, service_port=port_value)

    def get_ingress_backend(self, namespace: str, ingress: str, host: str, path: str) -> IngressBackend:
        """
        Find the backend serving ``host`` + ``path`` on an ingress.

        An exact path match wins; a rule path left empty matches any path.

        Raises:
            ResourceNotFoundError: If the ingress or a matching rule is missing
        """
        ing = self._read("ingress", self.networking_v1.read_namespaced_ingress, namespace, ingress)

        fallback = None
        for rule in ing.spec.rules or []:
            if (rule.host or "") != host or rule.http is None:
                continue
            for rule_path in rule.http.paths or []:
                if rule_path.path == path:
                    backend = self._service_backend(rule_path.backend)
                    if backend is not None:
                        return backend
                elif not rule_path.path and fallback is None:
                    fallback = self._service_backend(rule_path.backend)

        if fallback is not None:
            return fallback
        raise ResourceNotFoundError("ingress backend", namespace, f"{ingress} {host}{path}")

    def get_ingress_backends(self, namespace: str, ingress: str) -> list[IngressBackend]:
        """Every distinct service backend referenced by an ingress."""
        ing = self._read("ingress", self.networking_v1.read_namespaced_ingress, namespace, ingress)

        candidates = [self._service_backend(ing.spec.default_backend)]
        for rule in ing.spec.rules or []:
            if rule.http is None:
                continue
            candidates.extend(self._service_backend(p.backend) for p in rule.http.paths or [])

        backends: list[IngressBackend] = []
        for backend in candidates:
            if backend is not None and backend not in backends:
                backends.append(backend)
        return backends

    def get_service_selector(self, namespace: str, service: str) -> dict[str, str]:
        """Label selector of a service (empty for selector-less services)."""
        svc = self._read("service", self.core_v1.read_namespaced_service, namespace, service)
        return dict(svc.spec.selector or {})

    def list_pods(self, namespace: str, selector: dict[str, str]) -> list[str]:
        """Names of the pods matching a label selector."""
        if not selector:
            # An empty selector would match every pod in the namespace
            return []
        label_selector = ",".join(f"{key}={value}" for key, value in sorted(selector.items()))
        pods = self.core_v1.list_namespaced_pod(namespace, label_selector=label_selector)
        return sorted(pod.metadata.name for pod in pods.items)
