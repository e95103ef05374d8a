"""Collaborator contracts every pipeline stage depends on.

Stages take these as constructor arguments so tests can pass doubles and each
pipeline owns its own breaker state.
"""

from __future__ import annotations

from typing import Protocol, TypeVar

from pydantic import BaseModel

from topic_research.models.schemas import RawHit

M = TypeVar("M", bound=BaseModel)


class SearchGateway(Protocol):
    async def search(self, backend: str, query: str) -> list[RawHit]:
        """Return raw hits for ``query`` on a backend profile.

        Raises ``SearchGatewayError`` on any failure, including a payload
        without a ``results`` list.
        """
        ...


class CompletionService(Protocol):
    async def generate_structured(
        self,
        prompt: str,
        schema: type[M],
        *,
        model: str,
        temperature: float,
    ) -> M:
        """Return an instance of ``schema``; raise ``CompletionError`` otherwise."""
        ...

    async def generate_text(self, prompt: str, *, model: str, temperature: float) -> str: ...
