"""Exception hierarchy for the research pipeline.

Three tiers of failure exist:
- Fatal: ResearchPlanError, InsufficientResearchError. The run cannot produce
  trustworthy output and the caller must see them.
- Recoverable: SearchGatewayError, CompletionError. Absorbed by the stage that
  owns the call (query rewriting, cross-backend fallback, template fallback).
- Advisory: content validation issues. Never raised, only reported.
"""

from __future__ import annotations

from dataclasses import dataclass


class TopicResearchError(Exception):
    """Base class for every error raised by this package."""


# === External collaborators ===


class SearchGatewayError(TopicResearchError):
    """A single search backend call failed or returned an unusable payload."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class SearchCircuitOpenError(SearchGatewayError):
    """The backend's circuit breaker is open; the call was not attempted."""

    def __init__(self, backend: str):
        super().__init__(backend, "circuit breaker open")


class CompletionError(TopicResearchError):
    """The completion service call failed."""


class MalformedCompletionError(CompletionError):
    """The completion service answered, but the output failed schema validation."""


class CompletionCircuitOpenError(CompletionError):
    """The completion service breaker is open; the call was not attempted."""


# === Fatal pipeline conditions ===


class ResearchPlanError(TopicResearchError):
    """The research plan is empty or lacks the required general queries."""


@dataclass(frozen=True)
class QueryFailure:
    query: str
    backend: str
    error: str
    recovered_by: str | None = None


class InsufficientResearchError(TopicResearchError):
    """Execution gathered too little (or too skewed) evidence to continue."""

    def __init__(self, reasons: list[str], failures: list[QueryFailure] | None = None):
        super().__init__(
            "Research execution failed critical validations:\n" + "\n".join(reasons)
        )
        self.reasons = reasons
        self.failures = failures or []


class TopicResearchFailed(TopicResearchError):
    """Raised at the orchestrator boundary when a topic run cannot complete."""

    def __init__(self, topic: str, stage: str, message: str):
        super().__init__(f'Research failed for topic "{topic}" during {stage}: {message}')
        self.topic = topic
        self.stage = stage
