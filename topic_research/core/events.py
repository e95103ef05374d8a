"""Structured pipeline events.

Stages report what happened (stage, event name, duration, success, counts)
through an ``EventSink``. The pipeline only knows the protocol; the host picks
the sink. ``StructlogEventSink`` is the default and also feeds Prometheus.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from topic_research.core.metrics import (
    pipeline_fallbacks_total,
    pipeline_stage_duration_seconds,
    pipeline_stage_events_total,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PipelineEvent:
    stage: str
    name: str
    success: bool = True
    duration_ms: int | None = None
    data: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: PipelineEvent) -> None: ...


class NullEventSink:
    def emit(self, event: PipelineEvent) -> None:
        return None


class RecordingEventSink:
    """Keeps every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[PipelineEvent]:
        return [e for e in self.events if e.name == name]


class StructlogEventSink:
    """Writes events as structlog lines and updates stage metrics."""

    def emit(self, event: PipelineEvent) -> None:
        status = "success" if event.success else "failure"
        pipeline_stage_events_total.labels(stage=event.stage, status=status).inc()
        if event.duration_ms is not None:
            pipeline_stage_duration_seconds.labels(stage=event.stage).observe(
                event.duration_ms / 1000
            )
        strategy = event.data.get("fallback")
        if strategy:
            pipeline_fallbacks_total.labels(stage=event.stage, strategy=str(strategy)).inc()

        log = logger.info if event.success else logger.warning
        log(
            f"{event.stage}.{event.name}",
            success=event.success,
            duration_ms=event.duration_ms,
            **event.data,
        )


class StageTimer:
    """Mutable handle yielded by ``stage_timer`` so the stage can attach counts."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    def record(self, **data: Any) -> None:
        self.data.update(data)


@asynccontextmanager
async def stage_timer(sink: EventSink, stage: str) -> AsyncIterator[StageTimer]:
    """Time a stage and emit a ``completed`` or ``failed`` event.

    Exceptions (including cancellation) propagate after the failure event.
    """
    timer = StageTimer()
    start = time.perf_counter()
    try:
        yield timer
    except BaseException as exc:
        sink.emit(
            PipelineEvent(
                stage=stage,
                name="failed",
                success=False,
                duration_ms=int((time.perf_counter() - start) * 1000),
                data={**timer.data, "error": str(exc) or type(exc).__name__},
            )
        )
        raise
    sink.emit(
        PipelineEvent(
            stage=stage,
            name="completed",
            duration_ms=int((time.perf_counter() - start) * 1000),
            data=timer.data,
        )
    )
