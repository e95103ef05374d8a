"""Pydantic models shared by every pipeline stage.

Centralised here so stages exchange typed records instead of dicts. Python
attributes are snake_case; ``model_dump(by_alias=True)`` produces the camelCase
wire names the host application stores (``relevantDomains``,
``engineRecommendations``, ...). Both spellings are accepted on input, which
also lets completion output validate directly against these models.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Backend = Literal["general", "academic", "video", "community", "computational"]
BACKENDS: tuple[str, ...] = ("general", "academic", "video", "community", "computational")

TopicCategory = Literal[
    "academic",
    "technical",
    "cultural",
    "historical",
    "scientific",
    "artistic",
    "business",
    "social",
    "philosophical",
    "practical",
]
Complexity = Literal["beginner", "intermediate", "advanced"]
ResearchApproach = Literal["broad-overview", "focused-deep-dive", "comparative", "historical"]
SectionComplexity = Literal["foundation", "building", "application"]
Level3 = Literal["high", "medium", "low"]
InsightType = Literal["opinion", "technique", "tip", "example", "discussion"]
INSIGHT_TYPES: tuple[str, ...] = get_args(InsightType)
ContentType = Literal["video", "academic", "discussion", "documentation", "article"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(CamelModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Topic understanding
# ---------------------------------------------------------------------------


class EngineRecommendations(FrozenModel):
    academic: bool = False
    video: bool = False
    community: bool = False
    computational: bool = False

    def recommended(self) -> list[str]:
        return [name for name, enabled in self.model_dump().items() if enabled]


class TopicUnderstanding(FrozenModel):
    definition: str
    category: TopicCategory
    complexity: Complexity
    relevant_domains: list[str] = Field(default_factory=list)
    engine_recommendations: EngineRecommendations = Field(default_factory=EngineRecommendations)
    research_approach: ResearchApproach


class UserContext(FrozenModel):
    level: str | None = None
    interests: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Research plan
# ---------------------------------------------------------------------------


class ResearchQuery(FrozenModel):
    query: str = Field(..., min_length=1)
    backend: Backend = Field(validation_alias=AliasChoices("backend", "engine"))
    reasoning: str = ""

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be whitespace-only")
        return v.strip()


class ResearchPlan(FrozenModel):
    research_queries: list[ResearchQuery]
    research_strategy: str = ""
    expected_outcomes: list[str] = Field(default_factory=list)
    engine_distribution: dict[str, int] = Field(default_factory=dict)

    @property
    def general_query_count(self) -> int:
        return sum(1 for q in self.research_queries if q.backend == "general")


class ResearchPlanDraft(CamelModel):
    """Shape requested from the completion service; distribution is recomputed."""

    research_queries: list[ResearchQuery]
    research_strategy: str = ""
    expected_outcomes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------


class RawHit(FrozenModel):
    """One search hit as returned by the gateway, before normalisation."""

    title: str | None = None
    url: str | None = None
    snippet: str | None = None
    score: float | None = None
    engine: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchResultWithEngine(FrozenModel):
    title: str
    url: str
    snippet: str
    source: str
    relevance_score: float = Field(ge=0.0, le=1.0)
    backend: Backend = Field(validation_alias=AliasChoices("backend", "engine"))
    reasoning: str = ""
    practical_weight: float | None = Field(default=None, ge=0.0, le=1.0)
    is_fallback: bool = False
    fallback_of: Backend | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.title.lower(), self.url)


class QueryOutcome(FrozenModel):
    query: str
    backend: Backend
    succeeded: bool
    result_count: int = 0
    error: str | None = None
    recovered_by: str | None = None


class ExecutionReport(FrozenModel):
    results: list[SearchResultWithEngine]
    successful_general: int
    successful_specialized: int
    outcomes: list[QueryOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[QueryOutcome]:
        return [o for o in self.outcomes if not o.succeeded]


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


class SynthesisResult(FrozenModel):
    key_insights: list[str] = Field(default_factory=list, max_length=5)
    content_themes: list[str] = Field(default_factory=list, max_length=5)
    source_quality: Level3 = "low"
    comprehensiveness: float = Field(default=0.0, ge=0.0, le=1.0)
    practical_focus: Level3 = "low"


# ---------------------------------------------------------------------------
# Generated content
# ---------------------------------------------------------------------------


class CommunityInsight(CamelModel):
    type: InsightType
    content: str
    author: str | None = None
    source: str | None = None
    context: str | None = None


class ContentSection(CamelModel):
    title: str
    content: str
    sources: list[str] = Field(default_factory=list)
    complexity: SectionComplexity = "foundation"
    learning_objective: str = ""
    community_content: list[CommunityInsight] = Field(default_factory=list)


class GeneratedContent(CamelModel):
    """Mutable: validation's auto-repair backfills it in place."""

    title: str
    content: str
    sections: list[ContentSection]
    key_takeaways: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    estimated_read_time: int = 1
    generation_tier: str = "structured"


class InsightDraft(CamelModel):
    """Community insight as returned by the model; ``type`` is not yet checked."""

    type: str = "discussion"
    content: Any = None
    author: str | None = None
    source: str | None = None
    context: str | None = None


class SectionDraft(CamelModel):
    title: str
    content: str
    sources: list[Any] = Field(default_factory=list)
    complexity: SectionComplexity | None = None
    learning_objective: str | None = None
    community_content: list[InsightDraft] = Field(default_factory=list)


class ContentDraft(CamelModel):
    """Shape requested from the completion service for learning content."""

    title: str
    sections: list[SectionDraft] = Field(..., min_length=1)
    key_takeaways: list[Any] = Field(default_factory=list)
    next_steps: list[Any] = Field(default_factory=list)


class ContentValidationResult(FrozenModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Subtopics
# ---------------------------------------------------------------------------


class SubtopicDraft(CamelModel):
    title: str
    description: str = ""
    priority: int = Field(ge=1, le=5)
    complexity: Complexity


class SubtopicsDraft(CamelModel):
    subtopics: list[SubtopicDraft]


class SubtopicInfo(FrozenModel):
    title: str
    description: str
    priority: int = Field(ge=1, le=5)
    complexity: Complexity
    estimated_read_time: int


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


class SourceAttribution(FrozenModel):
    id: str
    title: str
    url: str
    source: str
    backend: Backend
    relevance_score: float
    credibility_score: float
    content_type: ContentType
    used_in_sections: list[str] = Field(default_factory=list)


class ResearchMetadata(FrozenModel):
    total_sources: int
    research_duration_ms: int
    engines_used: list[str]
    research_strategy: str
    confidence_score: float
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
    validation_issues: list[str] = Field(default_factory=list)


class TopicResearchResult(CamelModel):
    topic: str
    depth: int
    content: GeneratedContent
    subtopics: list[SubtopicInfo] = Field(default_factory=list)
    sources: list[SourceAttribution] = Field(default_factory=list)
    metadata: ResearchMetadata
    cache_key: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    children: list[TopicResearchResult] = Field(default_factory=list)
