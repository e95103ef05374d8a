"""Research execution: run every planned query concurrently against the gateway.

Each query is an ordered fallback chain:

- general query: the query itself, then up to three rewritten variants on the
  general backend (first variant with any hits wins, relevance x0.8);
- specialised query: the query itself, then a generalised query on the general
  backend (at most 3 hits, relevance x0.6, marked as a cross-backend fallback).

A query fails only when the gateway raises; an empty list is a successful query
with zero hits. Failures never cross query boundaries. After fan-in the results
are deduplicated, ranked and capped, then checked against the evidence floors;
too little evidence raises ``InsufficientResearchError``.
"""

from __future__ import annotations

import asyncio
import re
from collections import Counter
from collections.abc import Iterable
from functools import partial

import structlog

from topic_research.core.config import Settings
from topic_research.core.errors import InsufficientResearchError, QueryFailure, ResearchPlanError
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Failure, FallbackExhausted, Strategy, first_success
from topic_research.models.schemas import (
    ExecutionReport,
    QueryOutcome,
    RawHit,
    ResearchPlan,
    ResearchQuery,
    SearchResultWithEngine,
)
from topic_research.services.protocols import SearchGateway

logger = structlog.get_logger(__name__)

STAGE = "research_execution"

DEFAULT_RELEVANCE = 0.5
REWRITE_RELEVANCE_FACTOR = 0.8
CROSS_BACKEND_RELEVANCE_FACTOR = 0.6
CROSS_BACKEND_MAX_HITS = 3

_SIMPLIFY_PATTERN = re.compile(r"advanced|complex|technical", re.IGNORECASE)


def rewrite_general_query(query: str) -> list[str]:
    """Return the simplified variants tried after a general query fails.

    Variants identical to the original (or to an earlier variant) are dropped,
    so at most three distinct queries are issued.
    """
    candidates = [
        _SIMPLIFY_PATTERN.sub("basic", query),
        " ".join(query.split()[:3]),
        f"{query} beginner guide overview",
    ]
    seen = {query.strip().lower()}
    variants = []
    for candidate in candidates:
        key = candidate.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        variants.append(candidate.strip())
    return variants


def cross_backend_query(query: str) -> str:
    return f"{query} general information overview"


def _relevance(hit: RawHit) -> float:
    # SearXNG scores are unbounded; missing or non-positive means "unknown"
    if hit.score is None or hit.score <= 0:
        return DEFAULT_RELEVANCE
    return min(hit.score, 1.0)


def normalize_hit(
    hit: RawHit,
    backend: str,
    reasoning: str,
    *,
    relevance_factor: float = 1.0,
    fallback_of: str | None = None,
) -> SearchResultWithEngine:
    """Fill missing fields with defaults and tag the hit with its backend."""
    return SearchResultWithEngine(
        title=hit.title or "Untitled",
        url=hit.url or "#",
        snippet=hit.snippet or "No description",
        source=hit.engine or backend,
        relevance_score=round(_relevance(hit) * relevance_factor, 6),
        backend=backend,
        reasoning=reasoning,
        is_fallback=fallback_of is not None,
        fallback_of=fallback_of,
        metadata=hit.metadata,
    )


def deduplicate_results(
    results: Iterable[SearchResultWithEngine],
) -> list[SearchResultWithEngine]:
    """Drop repeats of (lowercased title, url); the first occurrence wins."""
    seen: set[tuple[str, str]] = set()
    unique = []
    for result in results:
        if result.dedup_key in seen:
            continue
        seen.add(result.dedup_key)
        unique.append(result)
    return unique


def rank_results(
    results: list[SearchResultWithEngine], limit: int
) -> list[SearchResultWithEngine]:
    return sorted(results, key=lambda r: r.relevance_score, reverse=True)[:limit]


class ResearchExecutionStage:
    def __init__(
        self,
        gateway: SearchGateway,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._gateway = gateway
        self._settings = settings
        self._events = events or NullEventSink()

    # --- per-query strategies ---

    async def _primary(self, planned: ResearchQuery) -> list[SearchResultWithEngine]:
        hits = await self._gateway.search(planned.backend, planned.query)
        return [normalize_hit(hit, planned.backend, planned.reasoning) for hit in hits]

    async def _rewrite(
        self, planned: ResearchQuery, variant: str, error: str
    ) -> list[SearchResultWithEngine] | Failure:
        hits = await self._gateway.search("general", variant)
        if not hits:
            return Failure(f"rewrite returned no hits: {variant}")
        reasoning = f"{planned.reasoning} (fallback due to: {error})"
        return [
            normalize_hit(
                hit,
                "general",
                reasoning,
                relevance_factor=REWRITE_RELEVANCE_FACTOR,
                fallback_of="general",
            )
            for hit in hits
        ]

    async def _cross_backend(
        self, planned: ResearchQuery, error: str
    ) -> list[SearchResultWithEngine] | Failure:
        hits = await self._gateway.search("general", cross_backend_query(planned.query))
        if not hits:
            return Failure(f"no general fallback results for {planned.backend}")
        reasoning = f"{planned.reasoning} (general fallback for {planned.backend} due to: {error})"
        return [
            normalize_hit(
                hit,
                "general",
                reasoning,
                relevance_factor=CROSS_BACKEND_RELEVANCE_FACTOR,
                fallback_of=planned.backend,
            )
            for hit in hits[:CROSS_BACKEND_MAX_HITS]
        ]

    def _recovery_strategies(self, planned: ResearchQuery, error: str) -> list[Strategy]:
        if planned.backend == "general":
            return [
                Strategy(f"rewrite:{variant}", partial(self._rewrite, planned, variant, error))
                for variant in rewrite_general_query(planned.query)
            ]
        return [Strategy("general_fallback", partial(self._cross_backend, planned, error))]

    async def _run_query(
        self, planned: ResearchQuery
    ) -> tuple[QueryOutcome, list[SearchResultWithEngine]]:
        try:
            results = await self._primary(planned)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            return (
                QueryOutcome(
                    query=planned.query,
                    backend=planned.backend,
                    succeeded=True,
                    result_count=len(results),
                ),
                results,
            )

        logger.warning(
            "research_execution.query_failed",
            backend=planned.backend,
            query=planned.query,
            error=error,
            critical=planned.backend == "general",
        )
        recovered_by: str | None = None
        results = []
        try:
            outcome = await first_success(self._recovery_strategies(planned, error), label=STAGE)
        except FallbackExhausted:
            logger.error(
                "research_execution.fallbacks_exhausted",
                backend=planned.backend,
                query=planned.query,
            )
        else:
            recovered_by = outcome.strategy
            results = outcome.value

        return (
            QueryOutcome(
                query=planned.query,
                backend=planned.backend,
                succeeded=False,
                result_count=len(results),
                error=error,
                recovered_by=recovered_by,
            ),
            results,
        )

    # --- validation ---

    def _validate(self, report: ExecutionReport, unique_count: int) -> None:
        settings = self._settings
        failures = [
            QueryFailure(o.query, o.backend, o.error or "", o.recovered_by) for o in report.failed
        ]
        reasons: list[str] = []

        if report.successful_general < settings.MIN_SUCCESSFUL_GENERAL_QUERIES:
            reasons.append(
                "Insufficient general engine queries succeeded "
                f"({report.successful_general} < {settings.MIN_SUCCESSFUL_GENERAL_QUERIES}). "
                "This compromises the balanced perspective requirement."
            )

        specialized_failures = sum(1 for f in failures if f.backend != "general")
        if specialized_failures and report.successful_specialized == 0:
            logger.warning(
                "research_execution.all_specialized_failed",
                failed=specialized_failures,
                message="Research will rely entirely on general sources.",
            )

        if unique_count < settings.MIN_RESEARCH_RESULTS:
            reasons.append(
                f"Insufficient research results collected ({unique_count} < "
                f"{settings.MIN_RESEARCH_RESULTS}). "
                "Cannot generate comprehensive content with so few sources."
            )

        if failures:
            logger.warning(
                "research_execution.backend_failures",
                by_backend=dict(Counter(f.backend for f in failures)),
            )

        if reasons:
            logger.error("research_execution.validation_failed", reasons=reasons)
            raise InsufficientResearchError(reasons, failures)

    # --- entry points ---

    async def execute(self, plan: ResearchPlan) -> ExecutionReport:
        """Run the plan and return the ranked results with per-query outcomes.

        Raises:
            ResearchPlanError: the plan has fewer general queries than required.
            InsufficientResearchError: the evidence floors were not met.
        """
        minimum = self._settings.MIN_GENERAL_QUERIES
        if plan.general_query_count < minimum:
            raise ResearchPlanError(
                "Invalid research plan: insufficient general queries "
                f"({plan.general_query_count} < {minimum})"
            )
        if plan.engine_distribution.get("general", plan.general_query_count) != (
            plan.general_query_count
        ):
            logger.warning(
                "research_execution.distribution_mismatch",
                expected=plan.engine_distribution.get("general"),
                found=plan.general_query_count,
            )

        async with stage_timer(self._events, STAGE) as timer:
            gathered = await asyncio.gather(
                *(self._run_query(planned) for planned in plan.research_queries)
            )

            outcomes = [outcome for outcome, _ in gathered]
            unique = deduplicate_results(
                result for _, results in gathered for result in results
            )
            report = ExecutionReport(
                results=rank_results(unique, self._settings.MAX_RESEARCH_RESULTS),
                successful_general=sum(
                    1 for o in outcomes if o.succeeded and o.backend == "general"
                ),
                successful_specialized=sum(
                    1 for o in outcomes if o.succeeded and o.backend != "general"
                ),
                outcomes=outcomes,
            )
            timer.record(
                queries=len(outcomes),
                failed=len(report.failed),
                recovered=sum(1 for o in report.failed if o.recovered_by),
                unique_results=len(unique),
                returned_results=len(report.results),
                successful_general=report.successful_general,
            )
            self._validate(report, len(unique))

        return report

    async def execute_research(self, plan: ResearchPlan) -> list[SearchResultWithEngine]:
        return (await self.execute(plan)).results
