from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    # === Completion Service ===
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    COMPLETION_TIMEOUT: float = Field(
        default=60.0, description="Timeout for a single completion call in seconds"
    )

    UNDERSTANDING_MODEL: str = "gpt-5-nano"
    PLANNING_MODEL: str = "gpt-5-mini"
    SYNTHESIS_MODEL: str = "gpt-5-mini"
    CONTENT_MODEL: str = "gpt-5-mini"
    SUBTOPIC_MODEL: str = "gpt-5-nano"

    UNDERSTANDING_TEMPERATURE: float = 0.3
    PLANNING_TEMPERATURE: float = 0.6
    SYNTHESIS_TEMPERATURE: float = 0.6
    CONTENT_TEMPERATURE: float = 0.7
    SUBTOPIC_TEMPERATURE: float = 0.6

    # === Search Gateway (SearXNG) ===
    SEARXNG_URL: str = "http://localhost:8080"
    SEARCH_TIMEOUT: float = 15.0
    SEARCH_MAX_RESULTS: int = 10
    SEARCH_TRANSPORT_RETRIES: int = Field(
        default=1,
        ge=1,
        le=5,
        description="HTTP-level attempts per gateway call (1 = no transport retry). "
        "Query rewriting is handled by the execution stage, not here.",
    )
    SEARCH_RATE_LIMIT: float = 5.0  # requests/sec per backend profile

    # Backend profile -> SearXNG categories/engines
    SEARCH_PROFILES: dict[str, dict[str, str]] = {
        "general": {"categories": "general", "engines": ""},
        "academic": {"categories": "science", "engines": "arxiv,google scholar,pubmed"},
        "video": {"categories": "videos", "engines": "youtube"},
        "community": {"categories": "social media", "engines": "reddit"},
        "computational": {"categories": "it", "engines": "github,stackoverflow"},
    }

    # === Circuit Breaker Config ===
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = 60
    CIRCUIT_BREAKER_REDIS_URL: str | None = None  # shared state across workers when set

    # === Pipeline Thresholds ===
    MIN_GENERAL_QUERIES: int = 5
    MIN_SUCCESSFUL_GENERAL_QUERIES: int = 3
    MIN_RESEARCH_RESULTS: int = 5
    MAX_RESEARCH_RESULTS: int = 30
    SYNTHESIS_CONTEXT_SIZE: int = 20
    DEFAULT_MAX_DEPTH: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Depth limit for subtopic recursion when the caller does not pass one.",
    )
    MAX_CONCURRENT_SUBTOPICS: int = 3

    # === Validators ===

    @field_validator("SEARCH_RATE_LIMIT")
    @classmethod
    def validate_rate_limit(cls, v: float) -> float:
        """Validate per-backend search rate limit (requests per second)."""
        if v < 0.1:
            raise ValueError("Rate limit must be >= 0.1 requests/sec (minimum reasonable)")
        if v > 1000.0:
            raise ValueError("Rate limit must be <= 1000 requests/sec (reasonable max)")
        return v

    @field_validator(
        "UNDERSTANDING_TEMPERATURE",
        "PLANNING_TEMPERATURE",
        "SYNTHESIS_TEMPERATURE",
        "CONTENT_TEMPERATURE",
        "SUBTOPIC_TEMPERATURE",
    )
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError("Temperature must be between 0.0 and 2.0")
        return v

    @field_validator("SEARCH_PROFILES")
    @classmethod
    def validate_search_profiles(cls, v: dict[str, dict[str, str]]) -> dict[str, dict[str, str]]:
        """Every backend the planner may emit must have a profile."""
        missing = {"general", "academic", "video", "community", "computational"} - set(v)
        if missing:
            raise ValueError(f"SEARCH_PROFILES missing backends: {sorted(missing)}")
        return v

    @field_validator("CIRCUIT_BREAKER_FAILURE_THRESHOLD")
    @classmethod
    def validate_circuit_breaker_failure_threshold(cls, v: int) -> int:
        """Validate circuit breaker failure threshold."""
        if v < 1:
            raise ValueError("CIRCUIT_BREAKER_FAILURE_THRESHOLD must be >= 1")
        if v > 100:
            raise ValueError("CIRCUIT_BREAKER_FAILURE_THRESHOLD must be <= 100")
        return v

    @field_validator("CIRCUIT_BREAKER_RECOVERY_TIMEOUT")
    @classmethod
    def validate_circuit_breaker_recovery_timeout(cls, v: int) -> int:
        """Validate circuit breaker recovery timeout (seconds)."""
        if v < 1:
            raise ValueError("CIRCUIT_BREAKER_RECOVERY_TIMEOUT must be >= 1 second")
        if v > 600:
            raise ValueError("CIRCUIT_BREAKER_RECOVERY_TIMEOUT must be <= 600 seconds (10 min)")
        return v

    @field_validator("MIN_GENERAL_QUERIES", "MIN_RESEARCH_RESULTS", "MAX_RESEARCH_RESULTS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Pipeline thresholds must be >= 1")
        return v
