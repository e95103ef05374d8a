"""Unit tests for content generation tiers and structural normalisation."""

import pytest

from topic_research.agents.content_format import estimate_read_time, render_markdown
from topic_research.agents.content_generation import (
    COMPLEXITY_ORDER,
    ContentGenerationStage,
    build_synthetic_content,
    infer_section_complexity,
    normalize_section_count,
    parse_text_content,
    progression_holds,
    repair_progression,
    synthetic_sections,
)
from topic_research.core.errors import MalformedCompletionError
from topic_research.models.schemas import (
    CommunityInsight,
    ContentDraft,
    ContentSection,
    SynthesisResult,
)

SYNTHESIS = SynthesisResult(
    key_insights=[
        "Plants convert light to sugar",
        "Chlorophyll absorbs red and blue light",
        "Greenhouses use extra CO2 as a practical application",
    ],
    content_themes=["chlorophyll", "energy", "application"],
    source_quality="medium",
    comprehensiveness=0.6,
    practical_focus="medium",
)


def _section(title: str, complexity: str = "building", content: str = "Body") -> ContentSection:
    return ContentSection(title=title, content=content, complexity=complexity)


def _assert_well_formed(sections: list[ContentSection]) -> None:
    assert 3 <= len(sections) <= 6
    assert progression_holds([s.complexity for s in sections])


@pytest.mark.parametrize(
    "total, expected",
    [
        (1, ["foundation"]),
        (3, ["foundation", "building", "application"]),
        (4, ["foundation", "building", "application", "application"]),
        (6, ["foundation", "foundation", "building", "building", "application", "application"]),
    ],
)
def test_complexity_is_inferred_by_position(total: int, expected: list[str]) -> None:
    """Position index/(n-1) maps to foundation, building, application thirds."""
    assert [infer_section_complexity(i, total) for i in range(total)] == expected


def test_progression_allows_one_step_back_only() -> None:
    """Dropping two tiers below the peak breaks the progression."""
    assert progression_holds(["foundation", "application", "building"])
    assert not progression_holds(["foundation", "application", "foundation"])


def test_repair_lifts_sections_that_drop_too_far() -> None:
    """Repair raises a section to one tier below the running peak."""
    sections = [_section("a", "application"), _section("b", "foundation")]

    repaired = repair_progression(sections)

    assert [s.complexity for s in repaired] == ["application", "building"]
    assert sections[1].complexity == "foundation"


def test_extra_sections_merge_into_sixth() -> None:
    """Sections past six are folded into the sixth with their headings kept."""
    sections = [
        ContentSection(
            title=f"S{i}",
            content=f"Body {i}",
            sources=[f"src{i}"],
            complexity=infer_section_complexity(i, 8),
            community_content=[CommunityInsight(type="tip", content=f"tip {i}")],
        )
        for i in range(8)
    ]

    normalized = normalize_section_count(sections, padding=[])

    assert len(normalized) == 6
    last = normalized[-1]
    assert last.title == "S5"
    assert last.content == "Body 5\n\n### S6\n\nBody 6\n\n### S7\n\nBody 7"
    assert last.sources == ["src5", "src6", "src7"]
    assert len(last.community_content) == 3


def test_short_content_is_padded_from_synthetic_sections() -> None:
    """Fewer than three sections are padded with uncovered trailing synthetic sections."""
    padding = synthetic_sections("Photosynthesis", SYNTHESIS)

    normalized = normalize_section_count([_section("Overview", "foundation")], padding)

    assert [s.title for s in normalized] == [
        "Overview",
        "Community Perspectives on Photosynthesis",
        "Practical Applications of Photosynthesis",
    ]
    _assert_well_formed(normalized)


def test_parse_text_reads_embedded_json() -> None:
    """A JSON object inside prose is validated as a draft."""
    text = (
        'Here you go: {"title": "Photosynthesis", "sections": '
        '[{"title": "Basics", "content": "Light reactions"}], "keyTakeaways": ["a"]} Thanks!'
    )

    draft = parse_text_content(text, "Photosynthesis")

    assert draft.sections[0].title == "Basics"
    assert draft.key_takeaways == ["a"]


def test_parse_text_without_json_builds_overview() -> None:
    """Plain text becomes a truncated Overview with bullet takeaways."""
    text = "Intro. " * 100 + "\n- First point\n• Second point\n"

    draft = parse_text_content(text, "Topic")

    assert draft.title == "Topic"
    assert draft.sections[0].title == "Overview"
    assert len(draft.sections[0].content) == 503
    assert draft.sections[0].content.endswith("...")
    assert draft.key_takeaways == ["First point", "Second point"]
    assert len(draft.next_steps) == 3


def test_parse_text_defaults_takeaway() -> None:
    """Text without bullets still yields one takeaway."""
    draft = parse_text_content("Short answer.", "Topic")

    assert draft.key_takeaways == ["Key concepts identified from research"]
    assert draft.sections[0].content == "Short answer."


@pytest.mark.parametrize("synthesis", [SynthesisResult(), SYNTHESIS])
def test_synthetic_content_is_complete_for_any_synthesis(synthesis: SynthesisResult) -> None:
    """The synthetic tier always produces four progressive, non-empty sections."""
    content = build_synthetic_content("Photosynthesis", synthesis)

    assert [s.complexity for s in content.sections] == [
        "foundation",
        "building",
        "building",
        "application",
    ]
    assert all(s.content and s.learning_objective for s in content.sections)
    assert len(content.key_takeaways) == 5
    assert len(content.next_steps) == 5
    assert content.generation_tier == "synthetic"
    assert content.content.startswith("# Understanding Photosynthesis\n\n")
    _assert_well_formed(content.sections)


def test_render_markdown_layout() -> None:
    """Sections are separated by rules; insights, takeaways and steps follow the layout."""
    sections = [
        ContentSection(
            title="One",
            content="First",
            community_content=[CommunityInsight(type="opinion", content="Nice", author="ana")],
        ),
        ContentSection(title="Two", content="Second"),
    ]

    markdown = render_markdown("Title", sections, ["Takeaway"], ["Step a", "Step b"])

    assert markdown == (
        "# Title\n\n"
        "## One\n\nFirst\n\n"
        "### Community Insights\n\n"
        "> **User Opinion**: Nice *(ana)*\n\n\n"
        "---\n\n"
        "## Two\n\nSecond\n\n"
        "## Key Takeaways\n\n- Takeaway\n\n"
        "## Next Steps\n\n1. Step a\n2. Step b\n\n"
    )


def test_read_time_has_one_minute_floor() -> None:
    """Read time is ceil(chars / 5 / 200) and never below one."""
    assert estimate_read_time(0) == 1
    assert estimate_read_time(1000) == 1
    assert estimate_read_time(1001) == 2


@pytest.mark.asyncio
async def test_structured_draft_is_normalised(completion, settings, events) -> None:
    """Model drafts get inferred complexity, default objectives and coerced strings."""
    completion.structured[ContentDraft] = {
        "title": "Photosynthesis",
        "sections": [
            {"title": "What is Photosynthesis", "content": "Light becomes sugar."},
            {"title": "How it works", "content": "Next, the Calvin cycle.", "sources": [1]},
            {"title": "Photosynthesis in practice", "content": "For example, greenhouses."},
            {"title": "Getting started", "content": "Try growing cress."},
        ],
        "keyTakeaways": [{"text": "Plants make sugar"}, "", "Light matters"],
        "nextSteps": ["Explore leaves"],
    }
    stage = ContentGenerationStage(completion, settings, events)

    content = await stage.generate("Photosynthesis", SYNTHESIS)

    assert content.generation_tier == "structured"
    assert [s.complexity for s in content.sections] == [
        "foundation",
        "building",
        "application",
        "application",
    ]
    assert content.sections[0].learning_objective == "Understand what is photosynthesis"
    assert content.sections[1].sources == ["1"]
    assert content.key_takeaways == ["Plants make sugar", "Light matters"]
    assert content.estimated_read_time == 1
    assert "## How it works" in content.content
    assert events.named("completed")[0].data["fallback"] is None


@pytest.mark.asyncio
async def test_unknown_insight_type_keeps_structured_draft(completion, settings, events) -> None:
    """An off-list community insight type becomes a discussion instead of sinking the draft."""
    completion.structured[ContentDraft] = {
        "title": "Photosynthesis",
        "sections": [
            {"title": "What is Photosynthesis", "content": "Light becomes sugar."},
            {
                "title": "How it works",
                "content": "Next, the Calvin cycle.",
                "communityContent": [
                    {"type": "insight", "content": "Picture a solar kitchen", "author": "ana"},
                    {"type": "Tip", "content": "Watch the leaves at noon"},
                    {"type": "opinion", "content": "  "},
                ],
            },
            {"title": "Photosynthesis in practice", "content": "For example, greenhouses."},
            {"title": "Getting started", "content": "Try growing cress."},
        ],
        "keyTakeaways": ["Plants make sugar"],
        "nextSteps": ["Explore leaves"],
    }
    stage = ContentGenerationStage(completion, settings, events)

    content = await stage.generate("Photosynthesis", SYNTHESIS)

    assert content.generation_tier == "structured"
    assert content.sections[0].title == "What is Photosynthesis"
    insights = content.sections[1].community_content
    assert [(i.type, i.content) for i in insights] == [
        ("discussion", "Picture a solar kitchen"),
        ("tip", "Watch the leaves at noon"),
    ]
    assert insights[0].author == "ana"


@pytest.mark.asyncio
async def test_text_tier_used_when_structured_fails(completion, settings, events) -> None:
    """Malformed structured output falls through to the text tier, padded to three sections."""
    completion.structured[ContentDraft] = MalformedCompletionError("bad")
    completion.text = ["Photosynthesis turns light into sugar.\n- Light drives it"]
    stage = ContentGenerationStage(completion, settings, events)

    content = await stage.generate("Photosynthesis", SYNTHESIS)

    assert content.generation_tier == "text"
    assert content.sections[0].title == "Overview"
    assert content.key_takeaways == ["Light drives it"]
    _assert_well_formed(content.sections)
    assert events.named("completed")[0].data["fallback"] == "text"


@pytest.mark.asyncio
async def test_synthetic_tier_when_everything_fails(completion, settings, events) -> None:
    """With both model tiers failing the stage still returns content."""
    stage = ContentGenerationStage(completion, settings, events)

    content = await stage.generate("Photosynthesis", SynthesisResult())

    assert content.generation_tier == "synthetic"
    assert len(content.sections) == 4
    assert events.named("completed")[0].data["tier"] == "synthetic"


def test_complexity_order_is_foundation_building_application() -> None:
    """Tier ranks used by progression checks."""
    assert sorted(COMPLEXITY_ORDER, key=COMPLEXITY_ORDER.get) == [
        "foundation",
        "building",
        "application",
    ]
