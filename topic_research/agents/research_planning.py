"""Research planning: turn a topic understanding into a multi-backend query plan.

Every plan carries at least ``MIN_GENERAL_QUERIES`` general-backend queries.
A model plan that under-delivers is repaired from a fixed template bank; if the
completion service fails outright the whole plan comes from templates. A plan
that still misses the floor raises ``ResearchPlanError``.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from topic_research.core.config import Settings
from topic_research.core.errors import ResearchPlanError
from topic_research.core.events import EventSink, NullEventSink, stage_timer
from topic_research.core.fallback import Strategy, first_success
from topic_research.models.schemas import (
    BACKENDS,
    ResearchPlan,
    ResearchPlanDraft,
    ResearchQuery,
    TopicUnderstanding,
    UserContext,
)
from topic_research.services.protocols import CompletionService

logger = structlog.get_logger(__name__)

STAGE = "research_planning"
MIN_FALLBACK_QUERIES = 8

# (query template, reasoning) in the order they are used
GENERAL_QUERY_TEMPLATES: tuple[tuple[str, str], ...] = (
    (
        "{topic} overview introduction basics fundamentals",
        "Basic overview to understand fundamental concepts and terminology",
    ),
    (
        "{topic} practical applications real world examples uses",
        "Practical applications and real-world usage for accessible understanding",
    ),
    (
        "{topic} beginner guide getting started simple explanation",
        "Beginner-friendly introduction with simple, accessible language",
    ),
    (
        "{topic} benefits advantages importance why useful",
        "Understanding the benefits and practical importance from general perspective",
    ),
    (
        "{topic} common questions frequently asked problems issues",
        "Common questions and concerns from general user perspective",
    ),
    (
        "{topic} explained simple terms easy understanding definition",
        "Simple explanations and definitions for better accessibility",
    ),
    (
        "{topic} different types categories variations kinds",
        "Understanding different aspects, variations, and classifications",
    ),
    (
        "{topic} how it works process steps method",
        "Understanding the process and methodology in accessible terms",
    ),
    (
        "{topic} pros cons advantages disadvantages comparison",
        "Balanced perspective on benefits and limitations",
    ),
    (
        "{topic} history background development evolution",
        "Historical context and development for comprehensive understanding",
    ),
    (
        "{topic} tools resources materials needed requirements",
        "Practical resources and requirements for implementation",
    ),
    (
        "{topic} tips advice best practices recommendations",
        "Practical advice and best practices from general sources",
    ),
)

# Backend-specific fallback queries, used when the backend is recommended
_SPECIALIZED_TEMPLATES: dict[str, tuple[tuple[str, str], ...]] = {
    "academic": (
        (
            "{topic} research studies academic papers scholarly analysis",
            "Academic research for scholarly perspective and specialized terminology",
        ),
        (
            "{topic} peer reviewed literature scientific findings",
            "Peer-reviewed sources for credible specialized knowledge",
        ),
    ),
    "video": (
        (
            "{topic} tutorial explanation educational video",
            "Visual content for better understanding and accessibility",
        ),
    ),
    "community": (
        (
            "{topic} discussion forum community insights practical experience",
            "Community perspectives and real-world practical insights",
        ),
    ),
    "computational": (
        (
            "{topic} computational analysis data algorithms technical",
            "Computational and data-driven technical insights",
        ),
    ),
}

_ACCESSIBLE_TERMS = ("basics", "introduction", "beginner", "simple", "explained")
_SPECIALIZED_TERMS = ("research", "analysis", "technical", "academic")

_PLANNING_PROMPT = """\
You are a research strategist creating a plan based ONLY on the topic understanding
below. You have NO prior knowledge about "{topic}".

RESEARCH-BASED TOPIC UNDERSTANDING:
- Definition: {definition}
- Category: {category}
- Complexity: {complexity}
- Relevant Domains: {domains}
- Research Approach: {approach}

ENGINE RECOMMENDATIONS (based on research findings):
{recommendations}

Available research backends:
- general: broad web search across multiple sources
- academic: scientific papers, research, scholarly articles
- video: educational videos, tutorials, demonstrations
- community: forums, discussions, real-world experiences
- computational: mathematical, algorithmic, technical data
{user_context}
MANDATORY REQUIREMENTS:
1. Include at least 5 diverse queries with backend "general" covering overview, practical
   applications, examples, different perspectives and foundational concepts.
2. Add 3-7 queries using the RECOMMENDED backends only.
3. 8-12 queries in total, progressing from basic to more detailed understanding.
4. Follow the {approach} approach.

Return researchQueries (each with query, backend, reasoning), researchStrategy and
expectedOutcomes.
"""


def _template_queries(topic: str, templates: Iterable[tuple[str, str]], backend: str):
    return [
        ResearchQuery(query=query.format(topic=topic), backend=backend, reasoning=reasoning)
        for query, reasoning in templates
    ]


def general_template_queries(
    topic: str, count: int, exclude: Iterable[str] = ()
) -> list[ResearchQuery]:
    """Return up to ``count`` general queries from the template bank.

    Templates whose rendered query is already in ``exclude`` are skipped.
    """
    taken = {q.strip().lower() for q in exclude}
    queries: list[ResearchQuery] = []
    for query in _template_queries(topic, GENERAL_QUERY_TEMPLATES, "general"):
        if len(queries) >= count:
            break
        if query.query.lower() in taken:
            continue
        taken.add(query.query.lower())
        queries.append(query)
    return queries


def engine_distribution(queries: Iterable[ResearchQuery]) -> dict[str, int]:
    distribution = dict.fromkeys(BACKENDS, 0)
    for query in queries:
        distribution[query.backend] += 1
    return distribution


def check_query_diversity(queries: list[ResearchQuery]) -> tuple[bool, bool]:
    """Log-only check for accessible and specialised search terms."""
    general = [q for q in queries if q.backend == "general"]
    specialized = [q for q in queries if q.backend != "general"]

    has_accessible = any(
        term in q.query.lower() for q in general for term in _ACCESSIBLE_TERMS
    )
    has_specialized = bool(specialized) or any(
        term in q.query.lower() for q in queries for term in _SPECIALIZED_TERMS
    )
    if not has_accessible:
        logger.warning("research_planning.missing_accessible_terms", query_count=len(queries))
    if not has_specialized:
        logger.warning("research_planning.missing_specialized_terms", query_count=len(queries))
    return has_accessible, has_specialized


def ensure_general_queries(
    queries: list[ResearchQuery], topic: str, minimum: int = 5
) -> list[ResearchQuery]:
    """Top the general queries up to ``minimum`` from the template bank.

    Existing general queries keep their order; added ones follow them and
    precede every specialised query.
    """
    general = [q for q in queries if q.backend == "general"]
    specialized = [q for q in queries if q.backend != "general"]
    missing = minimum - len(general)
    if missing <= 0:
        return list(queries)

    added = general_template_queries(topic, missing, exclude=(q.query for q in queries))
    logger.info(
        "research_planning.general_queries_added",
        topic=topic,
        existing=len(general),
        added=len(added),
    )
    return [*general, *added, *specialized]


def validate_plan(plan: ResearchPlan, minimum_general: int = 5) -> ResearchPlan:
    if not plan.research_queries:
        raise ResearchPlanError("Invalid research plan: no research queries")
    general = plan.general_query_count
    if general < minimum_general:
        raise ResearchPlanError(
            f"Invalid research plan: insufficient general queries ({general} < {minimum_general})"
        )
    return plan


def build_fallback_plan(
    topic: str, understanding: TopicUnderstanding, minimum_general: int = 5
) -> ResearchPlan:
    """Plan built purely from templates: general floor plus per-recommendation queries."""
    queries = general_template_queries(topic, minimum_general)
    for backend in understanding.engine_recommendations.recommended():
        queries.extend(_template_queries(topic, _SPECIALIZED_TEMPLATES[backend], backend))

    if len(queries) < MIN_FALLBACK_QUERIES:
        queries.extend(
            general_template_queries(
                topic,
                MIN_FALLBACK_QUERIES - len(queries),
                exclude=(q.query for q in queries),
            )
        )

    return ResearchPlan(
        research_queries=queries,
        research_strategy=(
            f"Fallback research strategy for {topic} focusing on "
            f"{understanding.research_approach} approach with balanced general and "
            "specialized sources, ensuring diverse source types and query terms"
        ),
        expected_outcomes=[
            f"Comprehensive understanding of {topic} from multiple perspectives",
            "Practical applications and real-world examples from accessible sources",
            "Key concepts and terminology explained accessibly",
            "Specialized knowledge from academic and technical sources",
            "Different viewpoints from general and specialized sources",
            "Foundation for deeper learning and exploration",
            "Diverse source types for comprehensive coverage",
        ],
        engine_distribution=engine_distribution(queries),
    )


def build_planning_prompt(
    topic: str, understanding: TopicUnderstanding, user_context: UserContext | None
) -> str:
    recommendations = "\n".join(
        f"- {name}: {'RECOMMENDED' if enabled else 'not recommended'} based on topic analysis"
        for name, enabled in understanding.engine_recommendations.model_dump().items()
    )
    context_line = ""
    if user_context is not None:
        context_line = (
            f"\nUser context: Level={user_context.level or 'general'}, "
            f"Interests=[{', '.join(user_context.interests)}]\n"
        )
    return _PLANNING_PROMPT.format(
        topic=topic,
        definition=understanding.definition,
        category=understanding.category,
        complexity=understanding.complexity,
        domains=", ".join(understanding.relevant_domains),
        approach=understanding.research_approach,
        recommendations=recommendations,
        user_context=context_line,
    )


class ResearchPlanningStage:
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
        self,
        topic: str,
        understanding: TopicUnderstanding,
        user_context: UserContext | None,
    ) -> ResearchPlan:
        draft = await self._completion.generate_structured(
            build_planning_prompt(topic, understanding, user_context),
            ResearchPlanDraft,
            model=self._settings.PLANNING_MODEL,
            temperature=self._settings.PLANNING_TEMPERATURE,
        )
        queries = ensure_general_queries(
            draft.research_queries, topic, minimum=self._settings.MIN_GENERAL_QUERIES
        )
        return ResearchPlan(
            research_queries=queries,
            research_strategy=draft.research_strategy,
            expected_outcomes=draft.expected_outcomes,
            engine_distribution=engine_distribution(queries),
        )

    async def _template(
        self,
        topic: str,
        understanding: TopicUnderstanding,
        user_context: UserContext | None,
    ) -> ResearchPlan:
        logger.info("research_planning.fallback_plan", topic=topic)
        return build_fallback_plan(
            topic, understanding, minimum_general=self._settings.MIN_GENERAL_QUERIES
        )

    async def plan(
        self,
        topic: str,
        understanding: TopicUnderstanding,
        user_context: UserContext | None = None,
    ) -> ResearchPlan:
        """Build and validate the plan; raises ``ResearchPlanError`` when unusable."""
        strategies = [
            Strategy("generated", self._generated),
            Strategy("template", self._template),
        ]
        async with stage_timer(self._events, STAGE) as timer:
            outcome = await first_success(
                strategies, topic, understanding, user_context, label=STAGE
            )
            plan = validate_plan(outcome.value, self._settings.MIN_GENERAL_QUERIES)
            check_query_diversity(plan.research_queries)
            timer.record(
                fallback=outcome.strategy if outcome.failures else None,
                query_count=len(plan.research_queries),
                general_queries=plan.general_query_count,
                distribution=plan.engine_distribution,
            )
        return plan
