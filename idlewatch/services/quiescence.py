"""Windowed quiescence detection.

The detector samples one metrics query at ``now``, ``now - 1h``, ``now - 2h``
and so on. The first sample seeds the candidate map; every later sample
narrows it, so a key survives only if it was idle at every sampled step.
Sampling stops early when the backend has no older data.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol

import structlog
from structlog.typing import FilteringBoundLogger

from idlewatch.core.exceptions import DetectionCancelled, QueryError
from idlewatch.services.candidates import CandidateMap
from idlewatch.services.sample_parser import parse_response


@dataclass(frozen=True)
class QueryResult:
    """Raw response of one metrics query."""

    text: str
    warnings: tuple[str, ...] = ()


class QueryFunction(Protocol):
    """Evaluates a fixed query at a point in time."""

    def __call__(self, at: datetime) -> Awaitable[QueryResult]: ...


@dataclass
class DetectionResult:
    """Outcome of one detector run."""

    candidates: CandidateMap
    observed_period: int
    requested_period: int
    components: tuple[str, ...] = field(default_factory=tuple)

    @property
    def exhausted_history(self) -> bool:
        """True if the run stopped before using its whole step budget."""
        return self.observed_period < self.requested_period


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuiescenceDetector:
    """
    Narrow a set of idle entities over backward-shifted samples.

    The detector owns no I/O: ``query`` is the only boundary, which makes runs
    reproducible against in-memory or file fixtures.
    """

    def __init__(
        self,
        components: tuple[str, ...],
        step: timedelta = timedelta(hours=1),
        query_timeout: float | None = 60.0,
        clock: Callable[[], datetime] = _utcnow,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        """
        Initialize the detector.

        Args:
            components: Label names forming each entity key, outermost first
            step: Backward shift between two samples
            query_timeout: Seconds allowed per query (None = unbounded)
            clock: Returns "now" once at the start of every run
            logger: structlog logger (defaults to this module's logger)
        """
        if not components:
            raise ValueError("at least one component is required")
        self.components = tuple(components)
        self.step = step
        self.query_timeout = query_timeout
        self.clock = clock
        self.logger = logger or structlog.get_logger(__name__)

    @property
    def depth(self) -> int:
        return len(self.components)

    async def _run_query(self, query: QueryFunction, at: datetime, step: int) -> QueryResult:
        try:
            if self.query_timeout is None:
                return await query(at)
            return await asyncio.wait_for(query(at), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            raise QueryError(
                f"query timed out after {self.query_timeout}s at step {step}", step=step
            )
        except QueryError as e:
            if e.step is None:
                e.step = step
            raise

    async def detect(
        self,
        query: QueryFunction,
        max_steps: int,
        cancel_event: asyncio.Event | None = None,
    ) -> DetectionResult:
        """
        Run the detection loop.

        Args:
            query: Evaluates the idle query at a given time
            max_steps: Step budget (observation period in steps)
            cancel_event: Checked between steps; when set the run stops

        Returns:
            DetectionResult with the surviving candidates and observed period

        Raises:
            QueryError: If any step's query fails or times out
            DetectionCancelled: If cancel_event is set at a step boundary
        """
        if max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {max_steps}")

        log = self.logger.bind(components=",".join(self.components))
        now = self.clock()
        candidates = CandidateMap(self.depth)
        observed_period = 0

        for step in range(max_steps):
            if cancel_event is not None and cancel_event.is_set():
                log.info("detector.cancelled", step=step)
                raise DetectionCancelled(step)

            at = now - step * self.step
            result = await self._run_query(query, at, step)
            if result.warnings:
                log.warning("detector.query_warnings", step=step, warnings=list(result.warnings))

            sample = parse_response(result.text, self.components, logger=log)
            observed_period = step + 1

            if not sample.has_data:
                log.info("detector.history_exhausted", step=step, observed_period=observed_period)
                break

            if step == 0:
                candidates = CandidateMap(self.depth, sample.keys)
                log.debug("detector.seeded", candidates=len(candidates))
                continue

            removed = candidates.narrow(sample.keys)
            log.debug(
                "detector.step_completed",
                step=step,
                sample_size=len(sample.keys),
                skipped_rows=sample.skipped_rows,
                removed=removed,
                remaining=len(candidates),
            )

        log.info(
            "detector.finished",
            requested_period=max_steps,
            observed_period=observed_period,
            candidates=len(candidates),
        )
        return DetectionResult(
            candidates=candidates,
            observed_period=observed_period,
            requested_period=max_steps,
            components=self.components,
        )
