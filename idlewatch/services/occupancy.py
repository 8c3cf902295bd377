"""Detector presets for the resource kinds idlewatch reports on."""

import asyncio
import signal
from dataclasses import dataclass
from datetime import timedelta

import structlog
from structlog.typing import FilteringBoundLogger

from idlewatch.core.config import Settings
from idlewatch.core.exceptions import DetectionCancelled, QueryError
from idlewatch.providers.prometheus import PrometheusClient
from idlewatch.services.quiescence import DetectionResult, QuiescenceDetector

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OccupancyCheck:
    """A PromQL idle query paired with the labels that key its results."""

    name: str
    query: str
    components: tuple[str, ...]


POD_COMPONENTS = ("namespace", "pod")
INGRESS_COMPONENTS = ("exported_namespace", "ingress")
INGRESS_PATH_COMPONENTS = ("exported_namespace", "ingress", "host", "path")


def pod_occupancy(settings: Settings) -> OccupancyCheck:
    """Pods that received no network traffic."""
    return OccupancyCheck("pods", settings.POD_IDLE_QUERY, POD_COMPONENTS)


def ingress_occupancy(settings: Settings) -> OccupancyCheck:
    """Ingresses that served no request on any host or path."""
    return OccupancyCheck("ingresses", settings.INGRESS_IDLE_QUERY, INGRESS_COMPONENTS)


def ingress_path_occupancy(settings: Settings) -> OccupancyCheck:
    """Individual ingress host/path rules that served no request."""
    return OccupancyCheck(
        "ingress_paths", settings.INGRESS_PATH_IDLE_QUERY, INGRESS_PATH_COMPONENTS
    )


async def run_check(
    check: OccupancyCheck,
    prometheus: PrometheusClient,
    settings: Settings,
    cancel_event: asyncio.Event | None = None,
    logger: FilteringBoundLogger | None = None,
) -> DetectionResult:
    """Run one occupancy check against Prometheus."""
    detector = QuiescenceDetector(
        components=check.components,
        step=timedelta(hours=settings.STEP_HOURS),
        query_timeout=settings.QUERY_TIMEOUT_SECONDS,
        logger=(logger or structlog.get_logger(__name__)).bind(check=check.name),
    )
    return await detector.detect(
        prometheus.bind(check.query),
        max_steps=settings.OBSERVATION_PERIOD_HOURS,
        cancel_event=cancel_event,
    )


async def run_all_checks(
    settings: Settings,
    prometheus: PrometheusClient | None = None,
    checks: list[OccupancyCheck] | None = None,
) -> dict[str, DetectionResult | Exception]:
    """
    Run every occupancy check concurrently.

    Each check keeps its own candidate map and steps sequentially. A check
    whose run fails maps to its error instead of a result; SIGTERM stops all
    checks at their next step boundary.
    """
    prometheus = prometheus or PrometheusClient(
        settings.PROMETHEUS_URL, timeout=settings.QUERY_TIMEOUT_SECONDS
    )
    if checks is None:
        checks = [
            pod_occupancy(settings),
            ingress_occupancy(settings),
            ingress_path_occupancy(settings),
        ]

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handle_sigterm = True
    try:
        loop.add_signal_handler(signal.SIGTERM, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform or outside the main thread
        handle_sigterm = False

    try:
        outcomes = await asyncio.gather(
            *(run_check(check, prometheus, settings, cancel_event) for check in checks),
            return_exceptions=True,
        )
    finally:
        if handle_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)

    results: dict[str, DetectionResult | Exception] = {}
    for check, outcome in zip(checks, outcomes):
        if isinstance(outcome, (QueryError, DetectionCancelled)):
            logger.warning("occupancy.check_failed", check=check.name, error=str(outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        results[check.name] = outcome
    return results
