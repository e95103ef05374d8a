"""Completion service backed by the OpenAI chat completions API.

Two modes:
- ``generate_structured``: JSON-object output validated against a pydantic
  schema. Invalid JSON or a schema mismatch raises ``MalformedCompletionError``.
- ``generate_text``: free text.

Transport failures count towards the ``completion`` circuit breaker; malformed
output does not, since the service is up and answering.
"""

from __future__ import annotations

import json
import time
from typing import TypeVar

import structlog
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from topic_research.core.circuit_breaker import BreakerRegistry, ServiceBreaker
from topic_research.core.config import Settings
from topic_research.core.errors import (
    CompletionCircuitOpenError,
    CompletionError,
    MalformedCompletionError,
)
from topic_research.core.metrics import completion_call_duration_seconds, completion_calls_total

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_STRUCTURED_SYSTEM = """\
You produce structured data. Output ONLY a valid JSON object, no prose, no markdown fences.
The JSON object MUST conform to this JSON Schema:
{schema}
"""


class OpenAICompletionService:
    def __init__(
        self,
        client: AsyncOpenAI,
        breaker: ServiceBreaker,
    ):
        self._client = client
        self._breaker = breaker

    @classmethod
    def from_settings(
        cls, settings: Settings, breakers: BreakerRegistry
    ) -> OpenAICompletionService:
        client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.COMPLETION_TIMEOUT,
        )
        breaker = breakers.get(
            "completion",
            lambda: CompletionCircuitOpenError("completion circuit breaker open"),
        )
        return cls(client, breaker)

    async def aclose(self) -> None:
        await self._client.close()

    async def _complete(
        self,
        messages: list[dict],
        *,
        mode: str,
        model: str,
        temperature: float,
        json_mode: bool,
    ) -> str:
        async def _call() -> str:
            kwargs: dict = {
                "model": model,
                "messages": messages,
                "temperature": temperature,
            }
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}
            response = await self._client.chat.completions.create(**kwargs)
            return (response.choices[0].message.content or "").strip()

        start = time.perf_counter()
        try:
            content = await self._breaker.call(_call)
        except CompletionCircuitOpenError:
            completion_calls_total.labels(mode=mode, status="circuit_open").inc()
            raise
        except OpenAIError as exc:
            completion_calls_total.labels(mode=mode, status="error").inc()
            logger.error("completion.request_failed", mode=mode, model=model, error=str(exc))
            raise CompletionError(f"{mode} completion failed: {exc}") from exc
        finally:
            completion_call_duration_seconds.labels(mode=mode).observe(
                time.perf_counter() - start
            )

        if not content:
            completion_calls_total.labels(mode=mode, status="malformed").inc()
            raise MalformedCompletionError(f"{mode} completion returned empty content")
        return content

    async def generate_structured(
        self,
        prompt: str,
        schema: type[M],
        *,
        model: str,
        temperature: float,
    ) -> M:
        system = _STRUCTURED_SYSTEM.format(
            schema=json.dumps(schema.model_json_schema(by_alias=True))
        )
        content = await self._complete(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            mode="structured",
            model=model,
            temperature=temperature,
            json_mode=True,
        )
        try:
            parsed = schema.model_validate_json(content)
        except ValidationError as exc:
            completion_calls_total.labels(mode="structured", status="malformed").inc()
            logger.warning(
                "completion.schema_validation_failed",
                schema=schema.__name__,
                error_count=exc.error_count(),
                content_preview=content[:200],
            )
            raise MalformedCompletionError(
                f"{schema.__name__} validation failed: {exc.error_count()} errors"
            ) from exc

        completion_calls_total.labels(mode="structured", status="success").inc()
        return parsed

    async def generate_text(self, prompt: str, *, model: str, temperature: float) -> str:
        content = await self._complete(
            [{"role": "user", "content": prompt}],
            mode="text",
            model=model,
            temperature=temperature,
            json_mode=False,
        )
        completion_calls_total.labels(mode="text", status="success").inc()
        return content
