"""Prometheus HTTP API client."""

from datetime import datetime
from typing import Any

import httpx
import structlog

from idlewatch.core.exceptions import QueryError
from idlewatch.services.quiescence import QueryFunction, QueryResult

logger = structlog.get_logger(__name__)

QUERY_PATH = "/api/v1/query"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def render_vector(result: list[dict[str, Any]]) -> str:
    """
    Render an instant-vector result as response text.

    Each sample becomes ``{name="value", ...} => <value> @[<timestamp>]``;
    an empty vector becomes ``{}``.
    """
    if not result:
        return "{}"

    lines = []
    for sample in result:
        metric = sample.get("metric") or {}
        timestamp, value = sample.get("value") or (None, None)
        labels = ", ".join(
            f'{name}="{_escape(str(label_value))}"' for name, label_value in sorted(metric.items())
        )
        lines.append(f"{{{labels}}} => {value} @[{timestamp}]")
    return "\n".join(lines)


class PrometheusClient:
    """
    Minimal client for the Prometheus instant-query endpoint.

    Every query opens and closes its own HTTP client, so no connection is
    held between two detector steps.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Prometheus client.

        Args:
            base_url: Prometheus base URL (e.g. http://localhost:9090)
            timeout: HTTP timeout per query, in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def query(self, promql: str, at: datetime) -> QueryResult:
        """
        Evaluate ``promql`` at time ``at``.

        Returns:
            QueryResult with the rendered vector and any backend warnings

        Raises:
            QueryError: On transport errors, HTTP errors, backend errors or
                non-vector results
        """
        params = {"query": promql, "time": f"{at.timestamp():.3f}"}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(QUERY_PATH, params=params)
        except httpx.HTTPError as e:
            raise QueryError(f"Prometheus request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            raise QueryError(
                f"Prometheus returned HTTP {response.status_code} with a non-JSON body"
            )

        if not isinstance(payload, dict):
            raise QueryError(
                f"Prometheus returned HTTP {response.status_code} "
                f"with an unexpected {type(payload).__name__} body"
            )

        if payload.get("status") != "success":
            error_type = payload.get("errorType", "unknown")
            error = payload.get("error", f"HTTP {response.status_code}")
            raise QueryError(f"Prometheus query failed ({error_type}): {error}")

        if response.is_error:
            raise QueryError(f"Prometheus returned HTTP {response.status_code}")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise QueryError("Prometheus response has no data object")
        result_type = data.get("resultType")
        if result_type != "vector":
            raise QueryError(f"expected a vector result, got '{result_type}'")

        warnings = tuple(payload.get("warnings") or ())
        result = data.get("result") or []
        if not isinstance(result, list):
            raise QueryError("Prometheus vector result is not a list")
        logger.debug(
            "prometheus.query_completed",
            time=params["time"],
            samples=len(result),
            warnings=len(warnings),
        )
        return QueryResult(text=render_vector(result), warnings=warnings)

    def bind(self, promql: str) -> QueryFunction:
        """Fix the query text, leaving only the evaluation time open."""

        async def query_at(at: datetime) -> QueryResult:
            return await self.query(promql, at)

        return query_at
