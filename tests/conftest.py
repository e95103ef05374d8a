"""Shared fakes and factories for the unit tests."""

from collections.abc import Callable
from typing import Any

import pytest
from pydantic import BaseModel

from topic_research.core.config import Settings
from topic_research.core.errors import CompletionError
from topic_research.core.events import RecordingEventSink
from topic_research.models.schemas import (
    EngineRecommendations,
    RawHit,
    SearchResultWithEngine,
    TopicUnderstanding,
)

Response = list[RawHit] | BaseException | Callable[[str, str], list[RawHit]]


def make_hit(title: str = "Result", url: str | None = None, **kwargs: Any) -> RawHit:
    slug = title.lower().replace(" ", "-")
    return RawHit(
        title=title,
        url=url or f"https://example.com/{slug}",
        snippet=kwargs.pop("snippet", f"About {title}"),
        score=kwargs.pop("score", 0.9),
        **kwargs,
    )


def hits_for_query(count: int = 3) -> Callable[[str, str], list[RawHit]]:
    """Response factory producing ``count`` distinct hits per (backend, query)."""

    def _respond(backend: str, query: str) -> list[RawHit]:
        slug = query.lower().replace(" ", "-")
        return [
            make_hit(f"{backend} {query} {i}", url=f"https://{backend}.example.com/{slug}/{i}")
            for i in range(count)
        ]

    return _respond


def make_result(
    title: str = "Result",
    backend: str = "general",
    relevance: float = 0.8,
    **kwargs: Any,
) -> SearchResultWithEngine:
    slug = title.lower().replace(" ", "-")
    return SearchResultWithEngine(
        title=title,
        url=kwargs.pop("url", f"https://example.com/{slug}"),
        snippet=kwargs.pop("snippet", f"About {title}"),
        source=kwargs.pop("source", backend),
        relevance_score=relevance,
        backend=backend,
        **kwargs,
    )


def make_understanding(**overrides: Any) -> TopicUnderstanding:
    data: dict[str, Any] = {
        "definition": "A process plants use to turn light into chemical energy",
        "category": "scientific",
        "complexity": "intermediate",
        "relevant_domains": ["biology", "chemistry"],
        "engine_recommendations": EngineRecommendations(academic=True, video=True),
        "research_approach": "broad-overview",
    }
    data.update(overrides)
    return TopicUnderstanding(**data)


def make_settings(**overrides: Any) -> Settings:
    return Settings(_env_file=None, **overrides)


class FakeSearchGateway:
    """In-memory ``SearchGateway``.

    Responses are looked up by (backend, query), then by backend, then the
    default. A response is a hit list, an exception to raise, or a callable
    ``(backend, query) -> hits``.
    """

    def __init__(self, default: Response | None = None):
        self.by_query: dict[tuple[str, str], Response] = {}
        self.by_backend: dict[str, Response] = {}
        self.default: Response = default if default is not None else []
        self.calls: list[tuple[str, str]] = []

    def on(self, backend: str, response: Response, query: str | None = None) -> None:
        if query is None:
            self.by_backend[backend] = response
        else:
            self.by_query[(backend, query)] = response

    async def search(self, backend: str, query: str) -> list[RawHit]:
        self.calls.append((backend, query))
        response = self.by_query.get((backend, query), self.by_backend.get(backend, self.default))
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(backend, query)
        return list(response)

    def queries_for(self, backend: str) -> list[str]:
        return [q for b, q in self.calls if b == backend]


class FakeCompletionService:
    """In-memory ``CompletionService``.

    ``structured`` maps a schema class to an instance, a dict (validated
    against the schema) or an exception. ``text`` is consumed in order; once it
    is empty ``text_default`` is used. Unconfigured calls raise
    ``CompletionError``.
    """

    def __init__(self) -> None:
        self.structured: dict[type[BaseModel], Any] = {}
        self.text: list[str | Exception] = []
        self.text_default: str | Exception = CompletionError("no text response configured")
        self.calls: list[tuple[str, str, str]] = []

    async def generate_structured(
        self, prompt: str, schema: type[BaseModel], *, model: str, temperature: float
    ) -> BaseModel:
        self.calls.append(("structured", schema.__name__, prompt))
        response = self.structured.get(
            schema, CompletionError(f"no response configured for {schema.__name__}")
        )
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    async def generate_text(self, prompt: str, *, model: str, temperature: float) -> str:
        self.calls.append(("text", "text", prompt))
        response = self.text.pop(0) if self.text else self.text_default
        if isinstance(response, Exception):
            raise response
        return response

    def called(self, schema_name: str) -> int:
        return sum(1 for _, name, _ in self.calls if name == schema_name)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def gateway() -> FakeSearchGateway:
    return FakeSearchGateway()


@pytest.fixture
def completion() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()
