"""Advisory checks on generated content.

Four independent groups of checks (language accessibility, structure, logical
flow, takeaways) accumulate issues and suggestions; nothing here raises.
``apply_basic_fixes`` is the one place in the pipeline that mutates another
stage's output, and it logs when it does.
"""

from __future__ import annotations

import re
from collections import Counter

import structlog

from topic_research.agents.content_format import render_markdown
from topic_research.agents.content_generation import progression_holds
from topic_research.models.schemas import ContentValidationResult, GeneratedContent

logger = structlog.get_logger(__name__)

LONG_SENTENCE_WORDS = 25
LONG_SENTENCE_RATIO = 0.2
MIN_SECTIONS = 3
MAX_SECTIONS = 6
MIN_TAKEAWAYS = 3
MIN_NEXT_STEPS = 2

_TECHNICAL_PATTERNS = (
    re.compile(r"\b[A-Z][a-z]*(?:[A-Z][a-z]*)+\b"),
    re.compile(r"\b\w+(?:tion|sion|ment|ness|ity|ism|ology|graphy)\b"),
    re.compile(r"\b(?:API|SDK|HTTP|JSON|XML|SQL|AI|ML|IoT|VR|AR)\b"),
)
MAX_TECHNICAL_TERMS = 10

_EXAMPLE_MARKERS = ("example", "for instance", "such as")
_TRANSITION_PHRASES = (
    "building on",
    "now that",
    "with this understanding",
    "next",
    "following",
    "after",
    "once you understand",
    "having covered",
)
_VAGUE_WORDS = ("important", "useful", "good", "bad", "interesting", "complex")
_ACTION_WORDS = ("try", "practice", "explore", "build", "create", "implement", "learn", "study")
_CONCEPT_STOPWORDS = frozenset(
    {"this", "that", "with", "from", "they", "have", "will", "been", "were"}
)

_SPECIFIC_DETAIL_PATTERNS = (
    re.compile(r"\d+"),
    re.compile(r"\b(?:example|instance|such as|like|including)\b", re.IGNORECASE),
    re.compile(r"\b(?:specifically|particularly|exactly|precisely)\b", re.IGNORECASE),
)


def identify_technical_terms(text: str) -> list[str]:
    terms: dict[str, None] = {}
    for pattern in _TECHNICAL_PATTERNS:
        for match in pattern.findall(text):
            terms.setdefault(match, None)
    return list(terms)[:MAX_TECHNICAL_TERMS]


def has_explanation(term: str, text: str) -> bool:
    """True when ``term`` is defined inline ("X is ...", "X (...)", "X - ...")."""
    escaped = re.escape(term)
    patterns = (
        rf"{escaped}\s+(?:is|means|refers to|stands for)",
        rf"(?:is|means|refers to|stands for)\s+{escaped}",
        rf"{escaped}\s*\([^)]+\)",
        rf"{escaped}\s*[-–—]\s*[a-z]",
    )
    return any(re.search(p, text, re.IGNORECASE) for p in patterns)


def has_specific_details(text: str) -> bool:
    return any(p.search(text) for p in _SPECIFIC_DETAIL_PATTERNS)


def key_concept_words(text: str, limit: int = 5) -> list[str]:
    words = [
        word
        for word in re.split(r"\W+", text.lower())
        if len(word) > 4 and word not in _CONCEPT_STOPWORDS
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


# --- check groups; each appends to ``issues`` and ``suggestions`` ---


def _check_language(
    content: GeneratedContent, issues: list[str], suggestions: list[str]
) -> None:
    text = " ".join(s.content for s in content.sections)
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    long_sentences = [s for s in sentences if len(s.split(" ")) > LONG_SENTENCE_WORDS]
    if len(long_sentences) > len(sentences) * LONG_SENTENCE_RATIO:
        issues.append("Content contains too many complex sentences (>25 words)")
        suggestions.append("Break down complex sentences into shorter, clearer statements")

    unexplained = [t for t in identify_technical_terms(text) if not has_explanation(t, text)]
    if unexplained:
        issues.append(f"Technical terms used without explanation: {', '.join(unexplained[:3])}")
        suggestions.append("Provide simple explanations for technical terms when first introduced")

    if not any(
        marker in s.content.lower() for s in content.sections for marker in _EXAMPLE_MARKERS
    ):
        issues.append("Content lacks practical examples for accessibility")
        suggestions.append("Add real-world examples to illustrate abstract concepts")


def _check_structure(
    content: GeneratedContent, issues: list[str], suggestions: list[str]
) -> None:
    sections = content.sections
    if len(sections) < MIN_SECTIONS:
        issues.append("Content has too few sections for proper learning progression")
        suggestions.append("Include at least 3 sections: foundation, building, and application")
    if len(sections) > MAX_SECTIONS:
        issues.append("Content has too many sections, may overwhelm learners")
        suggestions.append("Consolidate content into 3-6 focused sections")
    if not sections:
        return

    lengths = [len(s.content) for s in sections]
    average = sum(lengths) / len(lengths)
    if any(length < average * 0.3 or length > average * 3 for length in lengths):
        issues.append("Sections are significantly imbalanced in length")
        suggestions.append("Ensure sections are roughly balanced to maintain learning flow")

    with_objectives = sum(1 for s in sections if s.learning_objective)
    if with_objectives < len(sections) * 0.5:
        issues.append("Many sections lack clear learning objectives")
        suggestions.append("Add learning objectives to help learners understand section goals")


def _check_flow(content: GeneratedContent, issues: list[str], suggestions: list[str]) -> None:
    sections = content.sections
    has_transitions = any(
        phrase in section.content[:200].lower()
        for section in sections[1:]
        for phrase in _TRANSITION_PHRASES
    )
    if not has_transitions:
        issues.append("Sections lack transitional language for smooth flow")
        suggestions.append("Add connecting phrases to link sections and show progression")

    complexities = [s.complexity for s in sections if s.complexity]
    if complexities and not progression_holds(complexities):
        issues.append("Section complexity does not follow logical progression")
        suggestions.append("Ensure sections progress from foundation to building to application")

    concepts = key_concept_words(sections[0].content) if sections else []
    builds_on_first = any(
        concept in section.content.lower() for section in sections[1:] for concept in concepts
    )
    if concepts and not builds_on_first:
        issues.append("Later sections don't build upon concepts from earlier sections")
        suggestions.append("Reference and build upon concepts introduced in earlier sections")


def _check_takeaways(
    content: GeneratedContent, issues: list[str], suggestions: list[str]
) -> None:
    takeaways = content.key_takeaways
    if len(takeaways) < MIN_TAKEAWAYS:
        issues.append("Too few key takeaways for comprehensive understanding")
        suggestions.append("Include 3-7 key takeaways that summarize main learning points")

    vague = [
        t
        for t in takeaways
        if any(word in t.lower() for word in _VAGUE_WORDS) and not has_specific_details(t)
    ]
    if len(vague) > len(takeaways) * 0.3:
        issues.append("Key takeaways are too vague or generic")
        suggestions.append("Make takeaways specific and actionable with concrete details")

    steps = content.next_steps
    if len(steps) < MIN_NEXT_STEPS:
        issues.append("Too few next steps for continued learning")
        suggestions.append("Include 2-5 specific, actionable next steps")

    passive = [s for s in steps if not any(word in s.lower() for word in _ACTION_WORDS)]
    if len(passive) > len(steps) * 0.5:
        issues.append("Next steps are not sufficiently actionable")
        suggestions.append("Use action verbs and specific activities in next steps")


def validate_content(content: GeneratedContent) -> ContentValidationResult:
    issues: list[str] = []
    suggestions: list[str] = []
    _check_language(content, issues, suggestions)
    _check_structure(content, issues, suggestions)
    _check_flow(content, issues, suggestions)
    _check_takeaways(content, issues, suggestions)

    if issues:
        logger.warning("validation.issues_found", count=len(issues), issues=issues)
    else:
        logger.info("validation.passed")
    return ContentValidationResult(is_valid=not issues, issues=issues, suggestions=suggestions)


def apply_basic_fixes(content: GeneratedContent) -> GeneratedContent:
    """Backfill objectives and pad takeaways/next steps in place."""
    objectives = 0
    for section in content.sections:
        if not section.learning_objective:
            section.learning_objective = f"Understand {section.title.lower()}"
            objectives += 1

    takeaways = 0
    while len(content.key_takeaways) < MIN_TAKEAWAYS:
        content.key_takeaways.append(
            f"Important aspect of {content.title} for continued learning"
        )
        takeaways += 1

    steps = 0
    while len(content.next_steps) < MIN_NEXT_STEPS:
        content.next_steps.append(
            f"Continue exploring {content.title} through additional resources"
        )
        steps += 1

    content.content = render_markdown(
        content.title, content.sections, content.key_takeaways, content.next_steps
    )
    logger.info(
        "validation.basic_fixes_applied",
        objectives_added=objectives,
        takeaways_added=takeaways,
        next_steps_added=steps,
    )
    return content
