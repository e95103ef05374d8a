"""Topic understanding: ground a bare topic in live search, then classify it.

The classification prompt only carries the grounding hits, never the model's
own knowledge of the topic. Zero hits, a failed search, or a malformed
classification all degrade to a fixed understanding; this stage never raises
to its caller (cancellation excepted).
"""

from __future__ import annotations

import structlog

from topic_research.core.config import Settings
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Failure, Strategy, first_success
from topic_research.models.schemas import EngineRecommendations, RawHit, TopicUnderstanding
from topic_research.services.protocols import CompletionService, SearchGateway

logger = structlog.get_logger(__name__)

STAGE = "topic_understanding"
GROUNDING_HITS = 5

_UNDERSTANDING_PROMPT = """\
You are a research analyst tasked with understanding a topic based ONLY on the research
provided below. You have NO prior knowledge about this topic.

RESEARCH FINDINGS:
{context}

Based ONLY on these sources, analyse the topic "{topic}" and provide:

1. definition: what the topic is according to the research.
2. category: ONE of academic, technical, cultural, historical, scientific, artistic,
   business, social, philosophical, practical.
3. complexity: EXACTLY one of beginner, intermediate, advanced.
   - beginner: simple language, basic concepts, introductory level
   - intermediate: some technical terms, moderate complexity
   - advanced: complex terminology, expert-level concepts
4. relevantDomains: related fields or areas mentioned in the research.
5. engineRecommendations: which specialised search backends would add value
   (true/false each): academic (scholarly papers), video (visual explanations),
   community (forums and discussions), computational (quantitative or technical data).
6. researchApproach: ONE of broad-overview, focused-deep-dive, comparative, historical.

Use ONLY the exact enum values listed above and base every answer on the sources.
"""


def grounding_query(topic: str) -> str:
    return f'What is "{topic}" definition meaning explanation'


def render_grounding_context(hits: list[RawHit]) -> str:
    """Render hits as numbered ``[Source n]`` blocks for the classification prompt."""
    blocks = []
    for index, hit in enumerate(hits, start=1):
        blocks.append(
            f"[Source {index}] {hit.title or 'Untitled'}\n"
            f"{hit.snippet or 'No description'}\n"
            f"URL: {hit.url or '#'}\n"
        )
    return "\n".join(blocks)


def fallback_understanding(topic: str) -> TopicUnderstanding:
    return TopicUnderstanding(
        definition=f"A topic requiring research to understand: {topic}",
        category="academic",
        complexity="beginner",
        relevant_domains=[topic],
        engine_recommendations=EngineRecommendations(academic=True),
        research_approach="broad-overview",
    )


class TopicUnderstandingStage:
    def __init__(
        self,
        gateway: SearchGateway,
        completion: CompletionService,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._gateway = gateway
        self._completion = completion
        self._settings = settings
        self._events = events or NullEventSink()

    async def _grounded(self, topic: str) -> TopicUnderstanding | Failure:
        hits = await self._gateway.search("general", grounding_query(topic))
        if not hits:
            return Failure(f"No search results found for topic: {topic}")

        prompt = _UNDERSTANDING_PROMPT.format(
            context=render_grounding_context(hits[:GROUNDING_HITS]),
            topic=topic,
        )
        return await self._completion.generate_structured(
            prompt,
            TopicUnderstanding,
            model=self._settings.UNDERSTANDING_MODEL,
            temperature=self._settings.UNDERSTANDING_TEMPERATURE,
        )

    async def _fallback(self, topic: str) -> TopicUnderstanding:
        return fallback_understanding(topic)

    async def understand(self, topic: str) -> TopicUnderstanding:
        strategies = [
            Strategy("grounded", self._grounded),
            Strategy("fallback", self._fallback),
        ]
        async with stage_timer(self._events, STAGE) as timer:
            outcome = await first_success(strategies, topic, label=STAGE)
            understanding = outcome.value
            timer.record(
                fallback=outcome.strategy if outcome.failures else None,
                category=understanding.category,
                complexity=understanding.complexity,
                recommended=understanding.engine_recommendations.recommended(),
            )

        logger.info(
            "topic_understanding.complete",
            topic=topic,
            category=understanding.category,
            complexity=understanding.complexity,
            definition_preview=understanding.definition[:100],
        )
        return understanding
