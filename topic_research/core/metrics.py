"""Prometheus metrics for the research pipeline.

Provides counters and histograms for tracking:
- Search gateway call success/failure rates per backend profile
- Completion service calls per mode
- Circuit breaker state changes
- Pipeline stage durations and fallback usage
"""

from prometheus_client import Counter, Histogram

# Search gateway metrics
search_calls_total = Counter(
    "topic_research_search_calls_total",
    "Total search gateway calls",
    ["backend", "status"],  # success/error/timeout/circuit_open
)

search_call_duration_seconds = Histogram(
    "topic_research_search_call_duration_seconds",
    "Search gateway call duration in seconds",
    ["backend"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

# Completion service metrics
completion_calls_total = Counter(
    "topic_research_completion_calls_total",
    "Total completion service calls",
    ["mode", "status"],  # structured/text, success/error/malformed
)

completion_call_duration_seconds = Histogram(
    "topic_research_completion_call_duration_seconds",
    "Completion service call duration in seconds",
    ["mode"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0],
)

# Circuit breaker metrics
circuit_breaker_state_changes_total = Counter(
    "topic_research_circuit_breaker_state_changes_total",
    "Circuit breaker state transitions",
    ["api_name", "from_state", "to_state"],
)

circuit_breaker_open_total = Counter(
    "topic_research_circuit_breaker_open_total",
    "Total times circuit breaker opened",
    ["api_name"],
)

# Rate limiter metrics
rate_limiter_throttled_total = Counter(
    "topic_research_rate_limiter_throttled_total",
    "Total requests throttled by rate limiter",
    ["api_name"],
)

# Pipeline metrics
pipeline_stage_duration_seconds = Histogram(
    "topic_research_stage_duration_seconds",
    "Duration of pipeline stages in seconds",
    ["stage"],  # understanding, planning, execution, synthesis, content, validation, subtopics
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0],
)

pipeline_stage_events_total = Counter(
    "topic_research_stage_events_total",
    "Pipeline stage outcomes",
    ["stage", "status"],  # success/failure
)

pipeline_fallbacks_total = Counter(
    "topic_research_fallbacks_total",
    "Fallback strategies used by pipeline stages",
    ["stage", "strategy"],
)

research_runs_total = Counter(
    "topic_research_runs_total",
    "Topic research runs by outcome",
    ["status"],  # success/failure
)
