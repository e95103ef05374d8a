"""SearXNG search gateway.

One SearXNG instance serves every backend profile; a profile maps to the
SearXNG categories/engines configured in ``SEARCH_PROFILES``. Each profile has
its own circuit breaker and rate limiter so a dead academic engine never
blocks general search.

Unlike a "never raise" tool, ``search`` raises ``SearchGatewayError`` on any
failure: the execution stage needs to know a query failed in order to pick a
fallback. A payload without a ``results`` list counts as a failure.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from topic_research.core.circuit_breaker import BreakerRegistry
from topic_research.core.config import Settings
from topic_research.core.errors import SearchCircuitOpenError, SearchGatewayError
from topic_research.core.metrics import search_call_duration_seconds, search_calls_total
from topic_research.core.rate_limiter import RateLimiterRegistry, rate_limited_call
from topic_research.core.retry import retry_with_backoff
from topic_research.models.schemas import RawHit

logger = structlog.get_logger(__name__)

_MAX_QUERY_LENGTH = 1000

# Hit metadata worth keeping across engines (YouTube, Reddit, arXiv, ...)
_METADATA_KEYS: tuple[str, ...] = (
    "category",
    "publishedDate",
    "author",
    "thumbnail",
    "iframe_src",
    "length",
    "journal",
    "doi",
    "engines",
)


def _as_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def normalize_hit(raw: dict[str, Any]) -> RawHit:
    """Map one engine-specific result dict onto ``RawHit``.

    Engines disagree on field names: the description may be ``content`` or
    ``snippet``, and the engine may be ``engine`` or the first of ``engines``.
    """
    engines = raw.get("engines")
    engine = raw.get("engine") or (engines[0] if isinstance(engines, list) and engines else None)
    snippet = raw.get("content") or raw.get("snippet") or raw.get("description")
    metadata = {key: raw[key] for key in _METADATA_KEYS if raw.get(key) not in (None, "", [])}
    extra = raw.get("metadata")
    if isinstance(extra, dict):
        metadata.update(extra)
    return RawHit(
        title=raw.get("title") or None,
        url=raw.get("url") or None,
        snippet=snippet or None,
        score=_as_float(raw.get("score")),
        engine=engine,
        metadata=metadata,
    )


class SearxngGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        profiles: dict[str, dict[str, str]],
        breakers: BreakerRegistry,
        limiters: RateLimiterRegistry,
        max_results: int = 10,
        transport_attempts: int = 1,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._profiles = profiles
        self._breakers = breakers
        self._limiters = limiters
        self._max_results = max_results
        self._transport_attempts = transport_attempts

    @classmethod
    def from_settings(cls, settings: Settings, breakers: BreakerRegistry) -> SearxngGateway:
        return cls(
            client=httpx.AsyncClient(timeout=settings.SEARCH_TIMEOUT),
            base_url=settings.SEARXNG_URL,
            profiles=settings.SEARCH_PROFILES,
            breakers=breakers,
            limiters=RateLimiterRegistry(settings.SEARCH_RATE_LIMIT),
            max_results=settings.SEARCH_MAX_RESULTS,
            transport_attempts=settings.SEARCH_TRANSPORT_RETRIES,
        )

    async def __aenter__(self) -> SearxngGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _params(self, backend: str, query: str) -> dict[str, str]:
        profile = self._profiles[backend]
        params = {"q": query, "format": "json"}
        if profile.get("categories"):
            params["categories"] = profile["categories"]
        if profile.get("engines"):
            params["engines"] = profile["engines"]
        return params

    async def _fetch(self, backend: str, query: str) -> dict:
        async def _get() -> dict:
            response = await self._client.get(
                f"{self._base_url}/search", params=self._params(backend, query)
            )
            response.raise_for_status()
            return response.json()

        return await retry_with_backoff(
            lambda: rate_limited_call(self._limiters.get(backend), backend, _get),
            max_attempts=self._transport_attempts,
            base_delay=0.5,
            max_delay=4.0,
        )

    async def _search_impl(self, backend: str, query: str) -> list[RawHit]:
        start_time = time.perf_counter()
        try:
            data = await self._fetch(backend, query)
        except httpx.HTTPStatusError as exc:
            search_calls_total.labels(backend=backend, status="error").inc()
            raise SearchGatewayError(
                backend, f"HTTP {exc.response.status_code} from search backend"
            ) from exc
        except httpx.TimeoutException as exc:
            search_calls_total.labels(backend=backend, status="timeout").inc()
            raise SearchGatewayError(backend, "search request timed out") from exc
        except httpx.HTTPError as exc:
            search_calls_total.labels(backend=backend, status="error").inc()
            raise SearchGatewayError(backend, f"transport error: {exc}") from exc
        except ValueError as exc:
            search_calls_total.labels(backend=backend, status="error").inc()
            raise SearchGatewayError(backend, "response body is not JSON") from exc
        finally:
            search_call_duration_seconds.labels(backend=backend).observe(
                time.perf_counter() - start_time
            )

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            search_calls_total.labels(backend=backend, status="error").inc()
            raise SearchGatewayError(backend, "invalid response structure: no results list")

        hits: list[RawHit] = []
        for raw in results[: self._max_results]:
            if not isinstance(raw, dict):
                logger.warning("searxng.result_skipped", backend=backend, reason="not an object")
                continue
            hits.append(normalize_hit(raw))

        search_calls_total.labels(backend=backend, status="success").inc()
        return hits

    async def search(self, backend: str, query: str) -> list[RawHit]:
        """Search SearXNG with the given backend profile.

        Raises ``SearchGatewayError`` (``SearchCircuitOpenError`` while the
        profile's breaker is open) instead of returning an empty list, so an
        empty list always means "the backend answered with zero hits".
        """
        if backend not in self._profiles:
            raise SearchGatewayError(backend, "unknown backend profile")

        query = query.strip()
        if not query:
            raise SearchGatewayError(backend, "empty query")
        if len(query) > _MAX_QUERY_LENGTH:
            logger.warning("searxng.query_too_long", original_length=len(query))
            query = query[:_MAX_QUERY_LENGTH]

        breaker = self._breakers.get(f"search:{backend}", lambda: SearchCircuitOpenError(backend))
        logger.debug("searxng.start", backend=backend, query_preview=query[:80])
        try:
            hits = await breaker.call(self._search_impl, backend, query)
        except SearchCircuitOpenError:
            search_calls_total.labels(backend=backend, status="circuit_open").inc()
            raise

        logger.debug("searxng.complete", backend=backend, result_count=len(hits))
        return hits
