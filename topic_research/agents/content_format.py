"""Markdown rendering for generated learning content."""

from __future__ import annotations

import math
from collections.abc import Sequence

from topic_research.models.schemas import CommunityInsight, ContentSection

INSIGHT_LABELS: dict[str, str] = {
    "opinion": "User Opinion",
    "technique": "Technique",
    "tip": "Community Tip",
    "example": "Real Example",
    "discussion": "Discussion",
}

WORDS_PER_MINUTE = 200
CHARS_PER_WORD = 5


def estimate_read_time(char_count: int) -> int:
    """Minutes to read ``char_count`` characters, never less than 1."""
    return max(1, math.ceil(char_count / CHARS_PER_WORD / WORDS_PER_MINUTE))


def section_read_time(sections: Sequence[ContentSection]) -> int:
    return estimate_read_time(sum(len(s.content) for s in sections))


def render_community_insight(insight: CommunityInsight) -> str:
    label = INSIGHT_LABELS.get(insight.type)
    line = f"> **{label}**: {insight.content}" if label else f"> {insight.content}"
    attribution = insight.author or insight.source
    if attribution:
        line += f" *({attribution})*"
    return line + "\n\n"


def render_markdown(
    title: str,
    sections: Sequence[ContentSection],
    key_takeaways: Sequence[str],
    next_steps: Sequence[str],
) -> str:
    parts = [f"# {title}\n\n"]

    for index, section in enumerate(sections):
        parts.append(f"## {section.title}\n\n{section.content}\n\n")
        if section.community_content:
            parts.append("### Community Insights\n\n")
            parts.extend(render_community_insight(i) for i in section.community_content)
            parts.append("\n")
        if index < len(sections) - 1:
            parts.append("---\n\n")

    if key_takeaways:
        parts.append("## Key Takeaways\n\n")
        parts.extend(f"- {takeaway}\n" for takeaway in key_takeaways)
        parts.append("\n")

    if next_steps:
        parts.append("## Next Steps\n\n")
        parts.extend(f"{number}. {step}\n" for number, step in enumerate(next_steps, start=1))
        parts.append("\n")

    return "".join(parts)
