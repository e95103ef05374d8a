"""Unit tests for research execution: fan-out, fallbacks, dedup and evidence floors."""

import asyncio

import pytest

from topic_research.agents.research_execution import (
    ResearchExecutionStage,
    cross_backend_query,
    deduplicate_results,
    normalize_hit,
    rank_results,
    rewrite_general_query,
)
from topic_research.agents.research_planning import engine_distribution
from topic_research.core.errors import (
    InsufficientResearchError,
    ResearchPlanError,
    SearchCircuitOpenError,
    SearchGatewayError,
)
from topic_research.models.schemas import RawHit, ResearchPlan, ResearchQuery

from tests.conftest import FakeSearchGateway, hits_for_query, make_hit, make_result


def _plan(general: int = 5, **specialized: int) -> ResearchPlan:
    queries = [
        ResearchQuery(query=f"topic general {i}", backend="general", reasoning="broad")
        for i in range(general)
    ]
    for backend, count in specialized.items():
        queries += [
            ResearchQuery(query=f"topic {backend} {i}", backend=backend, reasoning="deep")
            for i in range(count)
        ]
    return ResearchPlan(
        research_queries=queries,
        research_strategy="test",
        engine_distribution=engine_distribution(queries),
    )


def test_rewrite_variants_skip_duplicates() -> None:
    """Variants equal to the original or each other are not issued."""
    assert rewrite_general_query("advanced quantum computing techniques") == [
        "basic quantum computing techniques",
        "advanced quantum computing",
        "advanced quantum computing techniques beginner guide overview",
    ]
    assert rewrite_general_query("photosynthesis") == ["photosynthesis beginner guide overview"]


def test_normalize_hit_defaults_and_relevance() -> None:
    """Missing fields get defaults; unknown scores become 0.5 and scores cap at 1.0."""
    bare = normalize_hit(RawHit(), "video", "why")
    assert (bare.title, bare.url, bare.snippet) == ("Untitled", "#", "No description")
    assert bare.relevance_score == 0.5
    assert bare.source == "video"
    assert bare.is_fallback is False

    boosted = normalize_hit(make_hit("x", score=4.2), "general", "why", relevance_factor=0.6)
    assert boosted.relevance_score == pytest.approx(0.6)


def test_dedup_is_idempotent_and_keeps_first() -> None:
    """dedup(dedup(x)) == dedup(x) and the first occurrence of a key survives."""
    first = make_result("Same Title", relevance=0.9, url="https://a.test")
    duplicate = make_result("same title", relevance=0.1, url="https://a.test", backend="video")
    other = make_result("Other", url="https://b.test")

    once = deduplicate_results([first, duplicate, other])

    assert once == [first, other]
    assert deduplicate_results(once) == once


def test_rank_is_stable_and_capped() -> None:
    """Equal scores keep input order; the list is cut at the limit."""
    a, b, c = (make_result(t, relevance=r) for t, r in (("a", 0.5), ("b", 0.9), ("c", 0.5)))

    assert rank_results([a, b, c], limit=2) == [b, a]


@pytest.mark.asyncio
async def test_specialized_failures_fall_back_to_general(settings, events) -> None:
    """5 general + 3 academic with 2 academic failures still yields enough results."""
    gateway = FakeSearchGateway(default=hits_for_query(3))
    for i in (0, 1):
        gateway.on("academic", SearchGatewayError("academic", "HTTP 500"), f"topic academic {i}")
    stage = ResearchExecutionStage(gateway, settings, events)

    report = await stage.execute(_plan(general=5, academic=3))

    assert len(report.results) >= 5
    assert report.successful_general == 5
    assert report.successful_specialized == 1
    assert sorted(o.recovered_by for o in report.failed) == ["general_fallback"] * 2

    fallbacks = [r for r in report.results if r.is_fallback]
    assert len(fallbacks) == 6
    assert all(r.fallback_of == "academic" and r.backend == "general" for r in fallbacks)
    assert all("(general fallback for academic due to:" in r.reasoning for r in fallbacks)
    assert all(r.relevance_score == pytest.approx(0.54) for r in fallbacks)
    assert (
        "general",
        cross_backend_query("topic academic 0"),
    ) in gateway.calls


@pytest.mark.asyncio
async def test_cross_backend_fallback_is_capped_at_three_hits(settings) -> None:
    """A specialised fallback contributes at most three general hits."""
    gateway = FakeSearchGateway(default=hits_for_query(4))
    gateway.on("video", SearchCircuitOpenError("video"))
    stage = ResearchExecutionStage(gateway, settings)

    report = await stage.execute(_plan(general=5, video=1))

    assert len([r for r in report.results if r.fallback_of == "video"]) == 3


@pytest.mark.asyncio
async def test_general_query_with_empty_rewrites_stays_failed(settings) -> None:
    """When every rewrite comes back empty the query contributes no results."""
    gateway = FakeSearchGateway(default=hits_for_query(2))
    original = "topic general 0"
    gateway.on("general", SearchGatewayError("general", "timeout"), original)
    gateway.on("general", [], f"{original} beginner guide overview")
    stage = ResearchExecutionStage(gateway, settings)

    report = await stage.execute(_plan(general=5))

    failed = report.failed
    assert len(failed) == 1
    assert failed[0].recovered_by is None
    assert failed[0].result_count == 0
    assert report.successful_general == 4
    assert gateway.queries_for("general").count(original) == 1


@pytest.mark.asyncio
async def test_rewritten_results_are_discounted(settings) -> None:
    """Hits from a rewritten query carry 0.8x relevance and a fallback note."""
    gateway = FakeSearchGateway(default=hits_for_query(2))
    gateway.on("general", SearchGatewayError("general", "HTTP 502"), "topic general 0")
    stage = ResearchExecutionStage(gateway, settings)

    report = await stage.execute(_plan(general=5))

    rewritten = [r for r in report.results if r.is_fallback]
    assert rewritten
    assert all(r.relevance_score == pytest.approx(0.72) for r in rewritten)
    assert all(r.fallback_of == "general" for r in rewritten)
    assert all("(fallback due to: general: HTTP 502)" in r.reasoning for r in rewritten)
    assert report.failed[0].recovered_by == "rewrite:topic general 0 beginner guide overview"


@pytest.mark.asyncio
async def test_too_few_successful_general_queries_is_fatal(settings, events) -> None:
    """Fewer than three successful general queries raises InsufficientResearchError."""
    gateway = FakeSearchGateway(default=hits_for_query(5))
    for i in range(3):
        gateway.on("general", SearchGatewayError("general", "down"), f"topic general {i}")
    stage = ResearchExecutionStage(gateway, settings, events)

    with pytest.raises(InsufficientResearchError) as exc_info:
        await stage.execute(_plan(general=5))

    assert "Insufficient general engine queries succeeded (2 < 3)" in str(exc_info.value)
    assert len(exc_info.value.failures) == 3
    assert events.named("failed")[0].stage == "research_execution"


@pytest.mark.asyncio
async def test_too_few_unique_results_is_fatal(settings) -> None:
    """Every query succeeding with the same single hit is still too little evidence."""
    gateway = FakeSearchGateway(default=[make_hit("Only one")])
    stage = ResearchExecutionStage(gateway, settings)

    with pytest.raises(InsufficientResearchError, match=r"\(1 < 5\)"):
        await stage.execute(_plan(general=5))


@pytest.mark.asyncio
async def test_empty_hit_lists_count_as_successful_queries(settings) -> None:
    """Zero hits is a successful query, so only the results floor trips."""
    gateway = FakeSearchGateway(default=[])
    stage = ResearchExecutionStage(gateway, settings)

    with pytest.raises(InsufficientResearchError) as exc_info:
        await stage.execute(_plan(general=5))

    assert len(exc_info.value.reasons) == 1
    assert exc_info.value.failures == []


@pytest.mark.asyncio
async def test_plan_without_general_floor_is_rejected(settings) -> None:
    """Execution refuses a plan that skipped planning validation."""
    stage = ResearchExecutionStage(FakeSearchGateway(), settings)

    with pytest.raises(ResearchPlanError):
        await stage.execute(_plan(general=2, academic=4))


@pytest.mark.asyncio
async def test_results_are_capped_and_sorted(settings) -> None:
    """At most MAX_RESEARCH_RESULTS results come back, best first."""
    gateway = FakeSearchGateway(default=hits_for_query(10))
    stage = ResearchExecutionStage(gateway, settings)

    results = await stage.execute_research(_plan(general=5))

    assert len(results) == settings.MAX_RESEARCH_RESULTS
    scores = [r.relevance_score for r in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_cancellation_cancels_in_flight_queries(settings) -> None:
    """Cancelling execute() cancels every pending search."""
    started = asyncio.Event()
    cancelled: list[str] = []

    class _SlowGateway:
        async def search(self, backend: str, query: str) -> list[RawHit]:
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(query)
                raise
            return []

    stage = ResearchExecutionStage(_SlowGateway(), settings)
    task = asyncio.create_task(stage.execute(_plan(general=5)))
    await started.wait()
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(cancelled) == 5
