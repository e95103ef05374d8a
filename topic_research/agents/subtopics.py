"""Subtopic identification: exactly five prioritised follow-up topics.

The model answer is accepted only when it has five subtopics with the
priorities 1..5 each used once; anything else falls back to subtopics derived
from the synthesis themes, padded with generic aspects of the topic.
"""

from __future__ import annotations

import structlog

from topic_research.core.config import Settings
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Failure, Strategy, first_success
from topic_research.models.schemas import (
    Complexity,
    SubtopicInfo,
    SubtopicsDraft,
    SynthesisResult,
)
from topic_research.services.protocols import CompletionService

logger = structlog.get_logger(__name__)

STAGE = "subtopics"
SUBTOPIC_COUNT = 5

READ_TIME_BY_COMPLEXITY: dict[str, int] = {"beginner": 5, "intermediate": 10, "advanced": 15}
DEFAULT_READ_TIME = 8

_SUBTOPIC_PROMPT = """\
You are analyzing research findings about "{topic}" to discover subtopics for further
exploration. You have NO prior knowledge about this topic; use ONLY the research insights
provided.

RESEARCH FINDINGS:
- {insights}

THEMES DISCOVERED IN RESEARCH:
- {themes}

Identify exactly 5 subtopics that are mentioned or implied in the findings, cover different
aspects of the topic, and would benefit from their own dedicated research.

PRIORITY: 1 is most fundamental or most frequently mentioned; each priority 1-5 is used once.
COMPLEXITY: exactly one of "beginner", "intermediate" or "advanced".

Return {{"subtopics": [{{"title", "description", "priority", "complexity"}}, ...]}}.
"""


def estimate_subtopic_read_time(complexity: str) -> int:
    return READ_TIME_BY_COMPLEXITY.get(complexity, DEFAULT_READ_TIME)


def _positional_complexity(index: int) -> Complexity:
    if index < 2:
        return "beginner"
    if index < 4:
        return "intermediate"
    return "advanced"


def _subtopic(title: str, description: str, priority: int, complexity: Complexity) -> SubtopicInfo:
    return SubtopicInfo(
        title=title,
        description=description,
        priority=priority,
        complexity=complexity,
        estimated_read_time=estimate_subtopic_read_time(complexity),
    )


def build_fallback_subtopics(topic: str, synthesis: SynthesisResult) -> list[SubtopicInfo]:
    """Five subtopics from the synthesis themes, padded with generic aspects."""
    subtopics = [
        _subtopic(
            theme,
            f"Exploration of {theme} as mentioned in research findings",
            index + 1,
            _positional_complexity(index),
        )
        for index, theme in enumerate(synthesis.content_themes[:SUBTOPIC_COUNT])
    ]
    while len(subtopics) < SUBTOPIC_COUNT:
        index = len(subtopics)
        subtopics.append(
            _subtopic(
                f"{topic} - Aspect {index + 1}",
                f"Additional aspect of {topic} for further exploration",
                index + 1,
                "intermediate",
            )
        )
    return subtopics


def check_subtopic_shape(draft: SubtopicsDraft) -> str | None:
    """Return why ``draft`` is unusable, or ``None`` when it is."""
    if len(draft.subtopics) != SUBTOPIC_COUNT:
        return f"expected {SUBTOPIC_COUNT} subtopics, got {len(draft.subtopics)}"
    priorities = {s.priority for s in draft.subtopics}
    if priorities != set(range(1, SUBTOPIC_COUNT + 1)):
        return f"priorities must be 1..{SUBTOPIC_COUNT} each used once, got {sorted(priorities)}"
    if any(not s.title.strip() for s in draft.subtopics):
        return "subtopic with blank title"
    return None


class SubtopicStage:
    def __init__(
        self,
        completion: CompletionService,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._completion = completion
        self._settings = settings
        self._events = events or NullEventSink()

    async def _generated(
        self, topic: str, synthesis: SynthesisResult
    ) -> list[SubtopicInfo] | Failure:
        prompt = _SUBTOPIC_PROMPT.format(
            topic=topic,
            insights="\n- ".join(synthesis.key_insights),
            themes="\n- ".join(synthesis.content_themes),
        )
        draft = await self._completion.generate_structured(
            prompt,
            SubtopicsDraft,
            model=self._settings.SUBTOPIC_MODEL,
            temperature=self._settings.SUBTOPIC_TEMPERATURE,
        )
        problem = check_subtopic_shape(draft)
        if problem:
            return Failure(problem)
        return [
            _subtopic(s.title.strip(), s.description, s.priority, s.complexity)
            for s in draft.subtopics
        ]

    async def _from_themes(
        self, topic: str, synthesis: SynthesisResult
    ) -> list[SubtopicInfo]:
        return build_fallback_subtopics(topic, synthesis)

    async def identify(
        self, topic: str, synthesis: SynthesisResult, next_depth: int = 1
    ) -> list[SubtopicInfo]:
        """Exactly five subtopics sorted by priority; never raises."""
        async with stage_timer(self._events, STAGE) as timer:
            outcome = await first_success(
                [Strategy("generated", self._generated), Strategy("themes", self._from_themes)],
                topic,
                synthesis,
                label=STAGE,
            )
            subtopics = sorted(outcome.value, key=lambda s: s.priority)
            timer.record(
                fallback=outcome.strategy if outcome.failures else None,
                next_depth=next_depth,
                count=len(subtopics),
            )
        return subtopics
