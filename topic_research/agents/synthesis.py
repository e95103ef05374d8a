"""Synthesis: weight the evidence for practical relevance and extract insights.

Scoring is deterministic; only insight/theme extraction uses the completion
service. When that call fails, insights and themes are extracted from the
result titles and snippets instead. With no results at all the stage returns
an empty, low-quality synthesis without calling the model.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence

import structlog

from topic_research.core.config import Settings
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Strategy, first_success
from topic_research.models.schemas import Level3, SearchResultWithEngine, SynthesisResult
from topic_research.services.protocols import CompletionService

logger = structlog.get_logger(__name__)

STAGE = "synthesis"
MAX_INSIGHTS = 5
MAX_THEMES = 5

BACKEND_WEIGHTS: dict[str, float] = {"general": 1.3, "community": 1.2, "academic": 1.1}

PRACTICAL_INDICATORS: tuple[str, ...] = (
    "practical",
    "application",
    "example",
    "use",
    "how to",
    "guide",
    "tutorial",
    "real world",
    "implementation",
    "benefits",
    "advantages",
)

INSIGHT_KEYWORDS: tuple[str, ...] = (
    "practical",
    "application",
    "use",
    "example",
    "real world",
    "implementation",
    "benefit",
    "advantage",
    "how",
    "when",
    "where",
)

PRACTICAL_FOCUS_KEYWORDS: tuple[str, ...] = (
    "practical",
    "application",
    "example",
    "tutorial",
    "guide",
    "how to",
    "real world",
    "implementation",
    "benefits",
    "use case",
)

# Counted twice in theme extraction
PRACTICAL_TERMS: frozenset[str] = frozenset(
    {
        "application",
        "practical",
        "example",
        "implementation",
        "benefit",
        "advantage",
        "solution",
        "method",
        "approach",
        "technique",
        "strategy",
    }
)

_STOPWORDS = frozenset(
    {"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}
)

CREDIBLE_HOST_MARKERS: tuple[str, ...] = (
    ".edu",
    ".gov",
    "arxiv",
    "pubmed",
    "ncbi.nlm.nih.gov",
    "scholar.google",
    "semanticscholar",
    "doi.org",
)

_BULLET = re.compile(r"^\s*[•\-*]\s*(.+?)\s*$", re.MULTILINE)

_SYNTHESIS_PROMPT = """\
You are a knowledge analyst synthesizing information about "{topic}". Extract key insights
and themes from the sources below, focusing on practical understanding and real-world
applications.

INFORMATION SOURCES:
{context}

EXTRACT:
1. KEY INSIGHTS about practical applications and real-world uses, one per line as "- " bullets.
2. MAIN THEMES: how the topic works in practice, what problems it solves, real-world
   examples, practical considerations and limitations.

Emphasise actionable, concrete information over theoretical complexity.
"""


def practical_weight(result: SearchResultWithEngine) -> float:
    weight = result.relevance_score * BACKEND_WEIGHTS.get(result.backend, 1.0)
    text = f"{result.title} {result.snippet}".lower()
    matches = sum(1 for indicator in PRACTICAL_INDICATORS if indicator in text)
    if matches:
        weight *= 1 + 0.1 * matches
    return min(weight, 1.0)


def weight_sources(results: Sequence[SearchResultWithEngine]) -> list[SearchResultWithEngine]:
    """Return copies annotated with ``practical_weight``, heaviest first."""
    weighted = [r.model_copy(update={"practical_weight": practical_weight(r)}) for r in results]
    return sorted(weighted, key=lambda r: r.practical_weight or 0.0, reverse=True)


def render_synthesis_context(results: Sequence[SearchResultWithEngine]) -> str:
    return "\n".join(
        f'[{index}] {r.backend.upper()}: "{r.title}"\n{r.snippet}\nURL: {r.url}\n'
        f"Relevance: {r.relevance_score:.2f} | Practical Weight: {r.practical_weight or 0.0:.2f}\n"
        for index, r in enumerate(results, start=1)
    )


def extract_insights(text: str) -> list[str]:
    """Bullet lines from ``text``; practical ones preferred when there are any."""
    bullets = [match.strip() for match in _BULLET.findall(text) if match.strip()]
    practical = [b for b in bullets if any(k in b.lower() for k in INSIGHT_KEYWORDS)]
    return (practical or bullets)[:MAX_INSIGHTS]


def extract_themes(text: str) -> list[str]:
    words = [
        word
        for word in re.split(r"\W+", text.lower())
        if len(word) > 4 and word not in _STOPWORDS
    ]
    counts = Counter(words)
    scored = {word: count * (2 if word in PRACTICAL_TERMS else 1) for word, count in counts.items()}
    return [word for word, _ in sorted(scored.items(), key=lambda kv: kv[1], reverse=True)][
        :MAX_THEMES
    ]


def _is_credible(url: str) -> bool:
    url = url.lower()
    return any(marker in url for marker in CREDIBLE_HOST_MARKERS)


def assess_source_quality(results: Sequence[SearchResultWithEngine]) -> Level3:
    if not results:
        return "low"
    total = len(results)
    avg_relevance = sum(r.relevance_score for r in results) / total
    credibility = sum(1 for r in results if _is_credible(r.url)) / total
    accessibility = sum(1 for r in results if r.backend in ("general", "community")) / total
    balance = (credibility + accessibility) / 2

    if avg_relevance > 0.7 and balance > 0.4:
        return "high"
    if avg_relevance > 0.5 and balance > 0.25:
        return "medium"
    return "low"


def comprehensiveness(results: Sequence[SearchResultWithEngine]) -> float:
    if not results:
        return 0.0
    backends = {r.backend for r in results}
    general = sum(1 for r in results if r.backend == "general")
    score = (
        0.4 * (len(backends) / 5)
        + 0.4 * min(len(results) / 20, 1.0)
        + 0.2 * min(general / 5, 1.0)
    )
    return min(score, 1.0)


def assess_practical_focus(results: Sequence[SearchResultWithEngine]) -> Level3:
    if not results:
        return "low"
    total = len(results)
    practical_ratio = sum(1 for r in results if r.backend in ("general", "community")) / total
    content_ratio = (
        sum(
            1
            for r in results
            if any(k in f"{r.title} {r.snippet}".lower() for k in PRACTICAL_FOCUS_KEYWORDS)
        )
        / total
    )
    score = (practical_ratio + content_ratio) / 2
    if score > 0.6:
        return "high"
    if score > 0.3:
        return "medium"
    return "low"


class SynthesisStage:
    def __init__(
        self,
        completion: CompletionService,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._completion = completion
        self._settings = settings
        self._events = events or NullEventSink()

    async def _from_completion(
        self, topic: str, context: list[SearchResultWithEngine]
    ) -> tuple[list[str], list[str]]:
        text = await self._completion.generate_text(
            _SYNTHESIS_PROMPT.format(topic=topic, context=render_synthesis_context(context)),
            model=self._settings.SYNTHESIS_MODEL,
            temperature=self._settings.SYNTHESIS_TEMPERATURE,
        )
        return extract_insights(text), extract_themes(text)

    async def _from_sources(
        self, topic: str, context: list[SearchResultWithEngine]
    ) -> tuple[list[str], list[str]]:
        text = "\n".join(f"- {r.title}: {r.snippet}" for r in context)
        return extract_insights(text), extract_themes(text)

    async def synthesize(
        self, topic: str, results: Sequence[SearchResultWithEngine]
    ) -> SynthesisResult:
        async with stage_timer(self._events, STAGE) as timer:
            if not results:
                logger.warning("synthesis.no_results", topic=topic)
                timer.record(result_count=0, fallback="empty")
                return SynthesisResult()

            weighted = weight_sources(results)
            context = weighted[: self._settings.SYNTHESIS_CONTEXT_SIZE]
            outcome = await first_success(
                [
                    Strategy("completion", self._from_completion),
                    Strategy("source_text", self._from_sources),
                ],
                topic,
                context,
                label=STAGE,
            )
            insights, themes = outcome.value
            synthesis = SynthesisResult(
                key_insights=insights,
                content_themes=themes,
                source_quality=assess_source_quality(results),
                comprehensiveness=comprehensiveness(results),
                practical_focus=assess_practical_focus(results),
            )
            timer.record(
                fallback=outcome.strategy if outcome.failures else None,
                result_count=len(results),
                insights=len(insights),
                themes=len(themes),
                source_quality=synthesis.source_quality,
            )
        return synthesis
