"""Unit tests for synthesis weighting, extraction and quality scoring."""

import pytest

from topic_research.agents.synthesis import (
    SynthesisStage,
    assess_practical_focus,
    assess_source_quality,
    comprehensiveness,
    extract_insights,
    extract_themes,
    practical_weight,
    weight_sources,
)
from topic_research.models.schemas import SynthesisResult

from tests.conftest import make_result


def test_tutorial_general_source_outweighs_plain_academic() -> None:
    """A general tutorial at equal relevance weighs more than an academic abstract."""
    tutorial = make_result("Photosynthesis tutorial", backend="general", relevance=0.6)
    paper = make_result("Quantum yield of PSII", backend="academic", relevance=0.6)

    assert practical_weight(tutorial) == pytest.approx(0.6 * 1.3 * 1.1)
    assert practical_weight(paper) == pytest.approx(0.6 * 1.1)
    assert practical_weight(tutorial) > practical_weight(paper)


def test_practical_weight_is_capped_at_one() -> None:
    """Many indicators on a relevant general source never exceed 1.0."""
    result = make_result(
        "Practical guide: how to use it, real world examples and benefits",
        relevance=0.95,
    )

    assert practical_weight(result) == 1.0


def test_weight_sources_returns_new_sorted_records() -> None:
    """Inputs are not mutated; outputs are annotated and heaviest first."""
    light = make_result("Light", backend="video", relevance=0.3)
    heavy = make_result("Guide", backend="general", relevance=0.7)

    weighted = weight_sources([light, heavy])

    assert [r.title for r in weighted] == ["Guide", "Light"]
    assert weighted[0].practical_weight is not None
    assert light.practical_weight is None


def test_extract_insights_prefers_practical_bullets() -> None:
    """Only practical bullets are kept when any exist."""
    text = "Intro line\n- Practical uses in farming\n- Theory of light\n* Example: greenhouses"

    assert extract_insights(text) == ["Practical uses in farming", "Example: greenhouses"]


def test_extract_insights_falls_back_to_all_bullets_and_caps() -> None:
    """Without practical bullets every bullet counts, up to five."""
    text = "\n".join(f"• Fact number {i}" for i in range(8))

    assert extract_insights(text) == [f"Fact number {i}" for i in range(5)]


def test_extract_themes_doubles_practical_terms() -> None:
    """Practical terms count twice when ranking theme words."""
    text = "application method energy energy energy with the light"

    assert extract_themes(text)[:3] == ["energy", "application", "method"]


def test_quality_scores_for_credible_accessible_sources() -> None:
    """Highly relevant, credible general sources score high on every measure."""
    results = [
        make_result(f"Practical guide {i}", relevance=0.9, url=f"https://bio.example.edu/{i}")
        for i in range(20)
    ]

    assert assess_source_quality(results) == "high"
    assert assess_practical_focus(results) == "high"
    assert comprehensiveness(results) == pytest.approx(0.4 * 0.2 + 0.4 + 0.2)


def test_quality_scores_for_empty_input() -> None:
    """No results scores low and zero."""
    assert assess_source_quality([]) == "low"
    assert assess_practical_focus([]) == "low"
    assert comprehensiveness([]) == 0.0


@pytest.mark.asyncio
async def test_empty_input_skips_completion(completion, settings, events) -> None:
    """Zero results give an empty low-quality synthesis without a model call."""
    stage = SynthesisStage(completion, settings, events)

    synthesis = await stage.synthesize("Topic", [])

    assert synthesis == SynthesisResult()
    assert completion.calls == []
    assert events.named("completed")[0].data["fallback"] == "empty"


@pytest.mark.asyncio
async def test_completion_text_becomes_insights(completion, settings) -> None:
    """Insights and themes are extracted from the model's text."""
    completion.text = ["- Practical application in greenhouses\n- How plants use sunlight"]
    results = [make_result(f"Source {i}", relevance=0.8) for i in range(6)]
    stage = SynthesisStage(completion, settings)

    synthesis = await stage.synthesize("Photosynthesis", results)

    assert synthesis.key_insights == [
        "Practical application in greenhouses",
        "How plants use sunlight",
    ]
    assert "application" in synthesis.content_themes
    prompt = completion.calls[0][2]
    assert '[1] GENERAL: "Source 0"' in prompt


@pytest.mark.asyncio
async def test_context_is_limited_to_top_weighted_sources(completion, settings) -> None:
    """Only SYNTHESIS_CONTEXT_SIZE sources reach the prompt."""
    completion.text = ["- Practical note"]
    results = [make_result(f"Source {i}", relevance=0.5) for i in range(25)]
    stage = SynthesisStage(completion, settings)

    await stage.synthesize("Topic", results)

    prompt = completion.calls[0][2]
    assert f"[{settings.SYNTHESIS_CONTEXT_SIZE}]" in prompt
    assert f"[{settings.SYNTHESIS_CONTEXT_SIZE + 1}]" not in prompt


@pytest.mark.asyncio
async def test_completion_failure_extracts_from_sources(completion, settings, events) -> None:
    """A failed completion degrades to source-text extraction instead of raising."""
    results = [
        make_result("Practical uses of photosynthesis", snippet="Farming applications"),
        make_result("Leaf anatomy", snippet="Structure of leaves"),
    ]
    stage = SynthesisStage(completion, settings, events)

    synthesis = await stage.synthesize("Photosynthesis", results)

    assert synthesis.key_insights == ["Practical uses of photosynthesis: Farming applications"]
    assert events.named("completed")[0].data["fallback"] == "source_text"
