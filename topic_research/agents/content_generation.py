"""Content generation: progressive learning content from a synthesis.

Three tiers, tried in order:

1. ``structured``: schema-validated ``ContentDraft`` from the completion service.
2. ``text``: free text, parsed as embedded JSON when possible, otherwise turned
   into a single "Overview" section.
3. ``synthetic``: a fixed four-section structure built only from the synthesis.
   Pure, so the chain always yields content.

Drafts from tiers 1 and 2 are normalised: strings coerced, complexity inferred
by position, learning objectives defaulted, section count brought into [3, 6]
and complexity repaired so it never drops more than one tier.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence

import structlog
from pydantic import ValidationError

from topic_research.agents.content_format import render_markdown, section_read_time
from topic_research.core.coercion import coerce_string_list, coerce_text
from topic_research.core.config import Settings
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Strategy, first_success
from topic_research.models.schemas import (
    INSIGHT_TYPES,
    CommunityInsight,
    ContentDraft,
    ContentSection,
    GeneratedContent,
    InsightDraft,
    SectionComplexity,
    SectionDraft,
    SynthesisResult,
)
from topic_research.services.protocols import CompletionService

logger = structlog.get_logger(__name__)

STAGE = "content_generation"
MIN_SECTIONS = 3
MAX_SECTIONS = 6
OVERVIEW_MAX_CHARS = 500

COMPLEXITY_ORDER: dict[str, int] = {"foundation": 1, "building": 2, "application": 3}
_LEVEL_NAMES: dict[int, SectionComplexity] = {1: "foundation", 2: "building", 3: "application"}

_FOUNDATION_MARKERS = ("basic", "foundation", "introduction", "what is", "overview", "fundamental")
_PRACTICAL_MARKERS = ("application", "practical", "example", "use", "getting started", "implement")

_TEXT_BULLET = re.compile(r"^\s*[-•]\s*")
_EMBEDDED_JSON = re.compile(r"\{[\s\S]*\}")

_TEXT_NEXT_STEPS = (
    "Research specific subtopics in more detail",
    "Explore practical applications",
    "Review additional sources and examples",
)

_CONTENT_PROMPT = """\
You are an educational content creator specialising in clear, practical explanations.
Create learning content about "{topic}" using ONLY the insights below.

AVAILABLE INSIGHTS:
{insights}

KEY THEMES:
{themes}

SECTION STRUCTURE:
Create 4-6 sections that flow logically:
- start with foundational concepts and definitions (complexity "foundation")
- progress through key components and how things work (complexity "building")
- include a "Community Perspectives" section with user opinions, techniques and tips
- conclude with practical applications and getting started (complexity "application")
Each section has a title, content, sources, complexity, learningObjective and optional
communityContent items (type: opinion, technique, tip, example or discussion).

WRITING GUIDELINES:
- conversational, accessible language; explain technical terms when first used
- concrete examples and analogies; numbered steps for processes
- open later sections with a phrase linking them to the previous one

Also return keyTakeaways (clear, practical summary points) and nextSteps (specific,
actionable recommendations).
"""

_TEXT_SUFFIX = "\n\nGenerate the response in a structured format that can be parsed as JSON."


# --- structure helpers ---


def infer_section_complexity(index: int, total: int) -> SectionComplexity:
    """Foundation for the first third, building for the middle, application last."""
    if total <= 1:
        return "foundation"
    position = index / (total - 1)
    if position <= 0.33:
        return "foundation"
    if position <= 0.66:
        return "building"
    return "application"


def progression_holds(complexities: Sequence[str | None]) -> bool:
    """True when no section falls more than one tier below the highest tier so far."""
    peak = 0
    for complexity in complexities:
        if not complexity:
            continue
        level = COMPLEXITY_ORDER.get(complexity, 2)
        if level < peak - 1:
            return False
        peak = max(peak, level)
    return True


def repair_progression(sections: Sequence[ContentSection]) -> list[ContentSection]:
    peak = 0
    repaired = []
    for section in sections:
        level = COMPLEXITY_ORDER[section.complexity]
        if level < peak - 1:
            level = peak - 1
            section = section.model_copy(update={"complexity": _LEVEL_NAMES[level]})
        peak = max(peak, level)
        repaired.append(section)
    return repaired


def audit_structure(sections: Sequence[ContentSection]) -> dict[str, bool]:
    """Log-only check of the foundation -> building -> application shape."""
    total = len(sections)
    if total < MIN_SECTIONS:
        logger.warning("content_generation.audit_too_few_sections", sections=total)
        return {"foundational_start": False, "practical_end": False, "progression": False}

    early = [s.title.lower() for s in sections[: math.ceil(total / 3)]]
    late = [s.title.lower() for s in sections[math.floor(total * 2 / 3) :]]
    result = {
        "foundational_start": any(m in t for t in early for m in _FOUNDATION_MARKERS),
        "practical_end": any(m in t for t in late for m in _PRACTICAL_MARKERS),
        "progression": progression_holds([s.complexity for s in sections]),
    }
    missing = [name for name, ok in result.items() if not ok]
    if missing:
        logger.warning("content_generation.audit_failed", missing=missing)
    return result


def _merge_sections(sections: Sequence[ContentSection]) -> ContentSection:
    first, rest = sections[0], sections[1:]
    content = "\n\n".join([first.content, *(f"### {s.title}\n\n{s.content}" for s in rest)])
    level = max(COMPLEXITY_ORDER[s.complexity] for s in sections)
    return first.model_copy(
        update={
            "content": content,
            "complexity": _LEVEL_NAMES[level],
            "sources": [src for s in sections for src in s.sources],
            "community_content": [c for s in sections for c in s.community_content],
        }
    )


def normalize_section_count(
    sections: Sequence[ContentSection], padding: Sequence[ContentSection]
) -> list[ContentSection]:
    """Bring the section count into [3, 6].

    Sections past the sixth are merged into the sixth. Short content is padded
    with the trailing ``padding`` sections whose titles are not already present.
    """
    sections = list(sections)
    if len(sections) > MAX_SECTIONS:
        logger.info("content_generation.sections_merged", original=len(sections))
        head = sections[: MAX_SECTIONS - 1]
        return [*head, _merge_sections(sections[MAX_SECTIONS - 1 :])]

    needed = MIN_SECTIONS - len(sections)
    if needed > 0:
        present = {s.title.lower() for s in sections}
        candidates = [p for p in padding if p.title.lower() not in present]
        added = candidates[-needed:]
        logger.info("content_generation.sections_padded", original=len(sections), added=len(added))
        sections.extend(added)
    return sections


# --- synthetic tier ---


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _foundation_text(topic: str, insights: Sequence[str]) -> str:
    base = f"{topic} is a concept that requires understanding from multiple perspectives. "
    if insights:
        return (
            base
            + f"Based on research findings:\n\n{_bullets(insights)}\n\n"
            + f"These foundational insights help us understand what {topic} involves "
            "and why it's important to study."
        )
    return (
        base
        + f"To understand {topic} effectively, we need to start with the basic concepts and "
        "build our knowledge progressively. This foundation will help us explore more "
        "complex aspects in the following sections."
    )


def _building_text(topic: str, insights: Sequence[str], themes: Sequence[str]) -> str:
    text = (
        f"Building on our foundational understanding of {topic}, we can now explore its "
        "key components and characteristics.\n\n"
    )
    if insights:
        text += f"Key insights from research include:\n{_bullets(insights)}\n\n"
    if themes:
        text += f"Important themes that emerge include:\n{_bullets(themes)}\n\n"
    return text + (
        f"These elements work together to form a comprehensive understanding of {topic} "
        "and prepare us for practical applications."
    )


def _community_text(topic: str, insights: Sequence[str]) -> str:
    text = (
        f"Now that the key components are clear, the {topic} community offers insights, "
        "techniques, and real-world experiences that complement theoretical knowledge.\n\n"
        "### User Experiences and Opinions\n"
        f"Community members share diverse perspectives on {topic}, highlighting both "
        "successes and challenges encountered in real-world applications.\n\n"
        "### Personal Techniques and Methods\n"
        "Experienced practitioners have developed various approaches and workflows for "
        f"applying {topic} in different contexts.\n\n"
        "### Community Tips and Best Practices\n"
        f"The collective wisdom of the {topic} community provides practical guidance, "
        "for example worked walkthroughs and common pitfalls.\n\n"
    )
    if insights:
        text += f"Key community insights include:\n{_bullets(insights)}\n\n"
    return text + (
        "These contributions demonstrate the practical value of "
        f"{topic} across various use cases."
    )


def _application_text(topic: str, insights: Sequence[str], themes: Sequence[str]) -> str:
    text = (
        f"Now that we understand the foundations and key components of {topic}, we can "
        "explore how these concepts apply in practical situations.\n\n"
    )
    if insights:
        text += f"Practical insights include:\n{_bullets(insights)}\n\n"
    if themes:
        text += f"Real-world applications involve:\n{_bullets(themes)}\n\n"
    return text + (
        f"These applications demonstrate how {topic} can be used effectively in various "
        "contexts and situations."
    )


def _sample_insights(topic: str, kind: str) -> list[CommunityInsight]:
    samples = {
        "foundation": [
            CommunityInsight(
                type="opinion",
                content=f"Community members often emphasize the importance of understanding "
                f"{topic} fundamentals before diving into advanced features.",
                context="foundational understanding",
            )
        ],
        "building": [
            CommunityInsight(
                type="technique",
                content=f"Experienced practitioners recommend breaking down {topic} into "
                "manageable components when learning.",
                context="learning approach",
            )
        ],
        "community": [
            CommunityInsight(
                type="tip",
                content=f"The {topic} community actively shares resources and helps newcomers "
                "through forums and discussion platforms.",
                context="community support",
            ),
            CommunityInsight(
                type="example",
                content=f"Many users document their {topic} projects and share them for "
                "others to learn from.",
                context="knowledge sharing",
            ),
        ],
        "application": [
            CommunityInsight(
                type="discussion",
                content=f"Community discussions often focus on practical implementation "
                f"challenges and solutions for {topic}.",
                context="practical application",
            )
        ],
    }
    return samples[kind]


def synthetic_sections(topic: str, synthesis: SynthesisResult) -> list[ContentSection]:
    insights = synthesis.key_insights
    themes = synthesis.content_themes
    return [
        ContentSection(
            title=f"Understanding {topic} - Foundation",
            content=_foundation_text(topic, insights[:2]),
            complexity="foundation",
            learning_objective=f"Understand the basic concepts of {topic}",
            community_content=_sample_insights(topic, "foundation"),
        ),
        ContentSection(
            title=f"Key Components of {topic}",
            content=_building_text(topic, insights[2:4], themes[:2]),
            complexity="building",
            learning_objective=f"Identify the main elements and components of {topic}",
            community_content=_sample_insights(topic, "building"),
        ),
        ContentSection(
            title=f"Community Perspectives on {topic}",
            content=_community_text(topic, insights),
            complexity="building",
            learning_objective=(
                f"Learn from community experiences and diverse perspectives on {topic}"
            ),
            community_content=_sample_insights(topic, "community"),
        ),
        ContentSection(
            title=f"Practical Applications of {topic}",
            content=_application_text(topic, insights[4:], themes[2:]),
            complexity="application",
            learning_objective=f"Apply {topic} concepts in practical situations",
            community_content=_sample_insights(topic, "application"),
        ),
    ]


def build_synthetic_content(topic: str, synthesis: SynthesisResult) -> GeneratedContent:
    """Fixed four-section content from the synthesis alone; cannot fail."""
    sections = synthetic_sections(topic, synthesis)
    title = f"Understanding {topic}"
    key_takeaways = [
        f"{topic} involves multiple interconnected concepts that build upon each other",
        "Understanding the foundations is essential before exploring advanced applications",
        "Community insights and user experiences provide valuable practical perspectives",
        "Real-world examples from practitioners help bridge theory with application",
        "Practical applications help bridge theoretical knowledge with real-world usage",
    ]
    next_steps = [
        f"Explore specific aspects of {topic} that interest you most",
        f"Connect with the {topic} community to learn from experienced practitioners",
        f"Practice applying {topic} concepts in simple, real-world scenarios",
        "Study real examples and techniques shared by community members",
        "Seek out additional resources and examples to deepen understanding",
    ]
    return GeneratedContent(
        title=title,
        content=render_markdown(title, sections, key_takeaways, next_steps),
        sections=sections,
        key_takeaways=key_takeaways,
        next_steps=next_steps,
        estimated_read_time=section_read_time(sections),
        generation_tier="synthetic",
    )


# --- text tier ---


def parse_text_content(text: str, topic: str) -> ContentDraft:
    """Parse free text into a draft: embedded JSON first, else a single Overview."""
    match = _EMBEDDED_JSON.search(text)
    if match:
        try:
            return ContentDraft.model_validate(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.info("content_generation.embedded_json_unusable", error=str(exc)[:200])

    overview = text if len(text) <= OVERVIEW_MAX_CHARS else text[:OVERVIEW_MAX_CHARS] + "..."
    takeaways = [
        _TEXT_BULLET.sub("", line).strip()
        for line in text.splitlines()
        if line.strip().startswith(("-", "•"))
    ]
    takeaways = [t for t in takeaways if t][:5]
    return ContentDraft(
        title=topic,
        sections=[SectionDraft(title="Overview", content=overview)],
        key_takeaways=takeaways or ["Key concepts identified from research"],
        next_steps=list(_TEXT_NEXT_STEPS),
    )


# --- draft normalisation ---


def _insight_from_draft(draft: InsightDraft) -> CommunityInsight | None:
    """Unknown insight types become ``discussion``; blank insights are dropped."""
    content = coerce_text(draft.content).strip()
    if not content:
        return None
    kind = draft.type.strip().lower()
    return CommunityInsight(
        type=kind if kind in INSIGHT_TYPES else "discussion",
        content=content,
        author=draft.author,
        source=draft.source,
        context=draft.context,
    )


def _section_from_draft(draft: SectionDraft, index: int, total: int) -> ContentSection:
    title = draft.title.strip() or f"Section {index + 1}"
    insights = (_insight_from_draft(item) for item in draft.community_content)
    return ContentSection(
        title=title,
        content=coerce_text(draft.content),
        sources=coerce_string_list(draft.sources),
        complexity=draft.complexity or infer_section_complexity(index, total),
        learning_objective=(draft.learning_objective or "").strip()
        or f"Understand {title.lower()}",
        community_content=[insight for insight in insights if insight is not None],
    )


def finalize_draft(
    draft: ContentDraft,
    topic: str,
    tier: str,
    padding: Sequence[ContentSection],
) -> GeneratedContent:
    total = len(draft.sections)
    sections = [_section_from_draft(s, i, total) for i, s in enumerate(draft.sections)]
    sections = repair_progression(normalize_section_count(sections, padding))
    audit_structure(sections)

    title = draft.title.strip() or topic
    key_takeaways = coerce_string_list(draft.key_takeaways)
    next_steps = coerce_string_list(draft.next_steps)
    return GeneratedContent(
        title=title,
        content=render_markdown(title, sections, key_takeaways, next_steps),
        sections=sections,
        key_takeaways=key_takeaways,
        next_steps=next_steps,
        estimated_read_time=section_read_time(sections),
        generation_tier=tier,
    )


def build_content_prompt(topic: str, synthesis: SynthesisResult) -> str:
    return _CONTENT_PROMPT.format(
        topic=topic,
        insights=_bullets(synthesis.key_insights) or "- (none)",
        themes=_bullets(synthesis.content_themes) or "- (none)",
    )


class ContentGenerationStage:
    def __init__(
        self,
        completion: CompletionService,
        settings: Settings,
        events: EventSink | None = None,
    ):
        self._completion = completion
        self._settings = settings
        self._events = events or NullEventSink()

    async def _structured(
        self, topic: str, synthesis: SynthesisResult, padding: list[ContentSection]
    ) -> GeneratedContent:
        draft = await self._completion.generate_structured(
            build_content_prompt(topic, synthesis),
            ContentDraft,
            model=self._settings.CONTENT_MODEL,
            temperature=self._settings.CONTENT_TEMPERATURE,
        )
        return finalize_draft(draft, topic, "structured", padding)

    async def _text(
        self, topic: str, synthesis: SynthesisResult, padding: list[ContentSection]
    ) -> GeneratedContent:
        text = await self._completion.generate_text(
            build_content_prompt(topic, synthesis) + _TEXT_SUFFIX,
            model=self._settings.CONTENT_MODEL,
            temperature=self._settings.CONTENT_TEMPERATURE,
        )
        return finalize_draft(parse_text_content(text, topic), topic, "text", padding)

    async def _synthetic(
        self, topic: str, synthesis: SynthesisResult, padding: list[ContentSection]
    ) -> GeneratedContent:
        return build_synthetic_content(topic, synthesis)

    async def generate(self, topic: str, synthesis: SynthesisResult) -> GeneratedContent:
        """Always returns usable content; only cancellation propagates."""
        padding = synthetic_sections(topic, synthesis)
        strategies = [
            Strategy("structured", self._structured),
            Strategy("text", self._text),
            Strategy("synthetic", self._synthetic),
        ]
        async with stage_timer(self._events, STAGE) as timer:
            outcome = await first_success(strategies, topic, synthesis, padding, label=STAGE)
            content = outcome.value
            timer.record(
                fallback=outcome.strategy if outcome.failures else None,
                tier=content.generation_tier,
                sections=len(content.sections),
                read_time=content.estimated_read_time,
            )
        return content
