"""TopicResearchPipeline: sequences the research stages for one topic.

  1. Topic understanding (skipped when the caller passes one, as subtopic runs do)
  2. Research planning
  3. Research execution (concurrent fan-out over the search gateway)
  4. Synthesis
  5. Content generation, then validation with basic auto-repair
  6. Subtopic identification while ``depth < max_depth``
  7. Subtopic recursion while ``depth + 1 < max_depth``, bounded concurrency

Any exception escaping a stage is logged here and re-raised as
``TopicResearchFailed`` carrying the stage name; a partially built result is
never returned. Cancellation and the optional ``timeout`` propagate untouched.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Sequence
from typing import TypeVar

import structlog

from topic_research.agents.content_generation import ContentGenerationStage
from topic_research.agents.research_execution import ResearchExecutionStage
from topic_research.agents.research_planning import ResearchPlanningStage
from topic_research.agents.subtopics import SubtopicStage
from topic_research.agents.synthesis import SynthesisStage
from topic_research.agents.topic_understanding import TopicUnderstandingStage
from topic_research.agents.validation import apply_basic_fixes, validate_content
from topic_research.core.config import Settings
from topic_research.core.errors import TopicResearchFailed
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.metrics import research_runs_total
from topic_research.models.schemas import (
    ContentSection,
    ContentType,
    ContentValidationResult,
    GeneratedContent,
    ResearchMetadata,
    SearchResultWithEngine,
    SourceAttribution,
    SubtopicInfo,
    TopicResearchResult,
    TopicUnderstanding,
    UserContext,
)
from topic_research.services.protocols import CompletionService, SearchGateway

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TITLE_MATCH_CHARS = 20

_SLUG_PATTERN = re.compile(r"[^a-z0-9]")


# === Source attribution and scoring ===


def credibility_score(result: SearchResultWithEngine) -> float:
    score = 0.5
    url = result.url.lower()
    if ".edu" in url or ".gov" in url:
        score += 0.3
    elif "wikipedia.org" in url:
        score += 0.2
    elif "arxiv.org" in url or "pubmed" in url:
        score += 0.4

    title = result.title.lower()
    if "research" in title or "study" in title:
        score += 0.1
    if "peer-reviewed" in title:
        score += 0.2
    return min(score, 1.0)


def classify_content_type(result: SearchResultWithEngine) -> ContentType:
    url = result.url.lower()
    title = result.title.lower()
    if "youtube.com" in url or "video" in url:
        return "video"
    if "arxiv" in url or "pubmed" in url or "research" in title:
        return "academic"
    if "reddit.com" in url or "forum" in url:
        return "discussion"
    if "docs" in url or "documentation" in title:
        return "documentation"
    return "article"


def sections_citing(
    result: SearchResultWithEngine, sections: Sequence[ContentSection]
) -> list[str]:
    """Titles of sections whose sources mention the first 20 chars of the result title."""
    prefix = result.title[:TITLE_MATCH_CHARS]
    if not prefix:
        return []
    return [s.title for s in sections if any(prefix in ref for ref in s.sources)]


def build_source_attributions(
    results: Sequence[SearchResultWithEngine], sections: Sequence[ContentSection]
) -> list[SourceAttribution]:
    return [
        SourceAttribution(
            id=f"source-{index}",
            title=result.title,
            url=result.url,
            source=result.source or result.backend,
            backend=result.backend,
            relevance_score=result.relevance_score,
            credibility_score=credibility_score(result),
            content_type=classify_content_type(result),
            used_in_sections=sections_citing(result, sections),
        )
        for index, result in enumerate(results, start=1)
    ]


def confidence_score(
    results: Sequence[SearchResultWithEngine], content: GeneratedContent
) -> float:
    """0.4 x mean relevance + 0.3 x section depth (5 expected) + 0.3 x source count (15)."""
    if results:
        mean_relevance = sum(r.relevance_score for r in results) / len(results)
    else:
        mean_relevance = 0.0
    section_depth = min(len(content.sections) / 5, 1.0)
    source_count = min(len(results) / 15, 1.0)
    return mean_relevance * 0.4 + section_depth * 0.3 + source_count * 0.3


def slugify(text: str) -> str:
    return _SLUG_PATTERN.sub("-", text.lower())


def cache_key(topic: str, user_context: UserContext | None = None) -> str:
    level = (user_context.level if user_context else None) or "general"
    return f"{slugify(topic)}-{level}"


def engines_used(results: Sequence[SearchResultWithEngine]) -> list[str]:
    """Backends in first-seen order."""
    return list(dict.fromkeys(r.backend for r in results))


# === Pipeline ===


class TopicResearchPipeline:
    def __init__(
        self,
        gateway: SearchGateway,
        completion: CompletionService,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._settings = settings
        self._events = events or NullEventSink()
        self.understanding = TopicUnderstandingStage(gateway, completion, settings, self._events)
        self.planning = ResearchPlanningStage(completion, settings, self._events)
        self.execution = ResearchExecutionStage(gateway, settings, self._events)
        self.synthesis = SynthesisStage(completion, settings, self._events)
        self.content = ContentGenerationStage(completion, settings, self._events)
        self.subtopics = SubtopicStage(completion, settings, self._events)

    async def research(
        self,
        topic: str,
        depth: int = 0,
        max_depth: int | None = None,
        understanding: TopicUnderstanding | None = None,
        user_context: UserContext | None = None,
        timeout: float | None = None,
    ) -> TopicResearchResult:
        """Research ``topic`` and return the assembled result.

        Raises:
            TopicResearchFailed: a stage raised; ``__cause__`` holds the original error.
            TimeoutError: ``timeout`` seconds elapsed before the run finished.
        """
        if max_depth is None:
            max_depth = self._settings.DEFAULT_MAX_DEPTH
        if timeout is None:
            return await self._run(topic, depth, max_depth, understanding, user_context)
        async with asyncio.timeout(timeout):
            return await self._run(topic, depth, max_depth, understanding, user_context)

    async def _guarded(self, topic: str, stage: str, step: Awaitable[T]) -> T:
        try:
            return await step
        except Exception as exc:
            logger.exception("pipeline.stage_failed", topic=topic, stage=stage, error=str(exc))
            research_runs_total.labels(status="failure").inc()
            raise TopicResearchFailed(topic, stage, str(exc)) from exc

    async def _review(self, content: GeneratedContent) -> ContentValidationResult:
        async with stage_timer(self._events, "validation") as timer:
            result = validate_content(content)
            if not result.is_valid:
                apply_basic_fixes(content)
            timer.record(issues=len(result.issues), repaired=not result.is_valid)
        return result

    async def _run(
        self,
        topic: str,
        depth: int,
        max_depth: int,
        understanding: TopicUnderstanding | None,
        user_context: UserContext | None,
    ) -> TopicResearchResult:
        started = time.perf_counter()
        logger.info("pipeline.started", topic=topic, depth=depth, max_depth=max_depth)

        if understanding is None:
            understanding = await self._guarded(
                topic, "topic_understanding", self.understanding.understand(topic)
            )
        plan = await self._guarded(
            topic, "research_planning", self.planning.plan(topic, understanding, user_context)
        )
        report = await self._guarded(topic, "research_execution", self.execution.execute(plan))
        results = report.results
        synthesis = await self._guarded(
            topic, "synthesis", self.synthesis.synthesize(topic, results)
        )
        content = await self._guarded(
            topic, "content_generation", self.content.generate(topic, synthesis)
        )
        validation = await self._guarded(topic, "validation", self._review(content))

        subtopics: list[SubtopicInfo] = []
        if depth < max_depth:
            subtopics = await self._guarded(
                topic, "subtopics", self.subtopics.identify(topic, synthesis, depth + 1)
            )

        children: list[TopicResearchResult] = []
        if subtopics and depth + 1 < max_depth:
            children = await self._research_children(
                subtopics, depth + 1, max_depth, understanding, user_context
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        result = TopicResearchResult(
            topic=topic,
            depth=depth,
            content=content,
            subtopics=subtopics,
            sources=build_source_attributions(results, content.sections),
            metadata=ResearchMetadata(
                total_sources=len(results),
                research_duration_ms=duration_ms,
                engines_used=engines_used(results),
                research_strategy=plan.research_strategy,
                confidence_score=confidence_score(results, content),
                validation_issues=validation.issues,
            ),
            cache_key=cache_key(topic, user_context),
            children=children,
        )
        research_runs_total.labels(status="success").inc()
        logger.info(
            "pipeline.completed",
            topic=topic,
            depth=depth,
            duration_ms=duration_ms,
            sources=len(result.sources),
            failed_queries=len(report.failed),
            children=len(children),
        )
        return result

    async def _research_children(
        self,
        subtopics: Sequence[SubtopicInfo],
        depth: int,
        max_depth: int,
        understanding: TopicUnderstanding,
        user_context: UserContext | None,
    ) -> list[TopicResearchResult]:
        """Research every subtopic; failed children are logged and left out."""
        slots = asyncio.Semaphore(self._settings.MAX_CONCURRENT_SUBTOPICS)

        async def _child(subtopic: SubtopicInfo) -> TopicResearchResult | None:
            async with slots:
                try:
                    return await self._run(
                        subtopic.title, depth, max_depth, understanding, user_context
                    )
                except TopicResearchFailed as exc:
                    logger.warning(
                        "pipeline.subtopic_failed",
                        subtopic=subtopic.title,
                        stage=exc.stage,
                        error=str(exc),
                    )
                    return None

        researched = await asyncio.gather(*(_child(s) for s in subtopics))
        return [child for child in researched if child is not None]
