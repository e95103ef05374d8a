"""Unit tests for pipeline events and the stage timer."""

import pytest

from topic_research.core.events import (
    NullEventSink,
    PipelineEvent,
    RecordingEventSink,
    StructlogEventSink,
    stage_timer,
)


@pytest.mark.asyncio
async def test_stage_timer_emits_completed_with_recorded_data() -> None:
    """A clean exit emits one ``completed`` event carrying the recorded counts."""
    sink = RecordingEventSink()

    async with stage_timer(sink, "synthesis") as timer:
        timer.record(insights=3)
        timer.record(themes=2)

    [event] = sink.events
    assert event.stage == "synthesis"
    assert event.name == "completed"
    assert event.success
    assert event.duration_ms is not None and event.duration_ms >= 0
    assert event.data == {"insights": 3, "themes": 2}


@pytest.mark.asyncio
async def test_stage_timer_emits_failed_and_reraises() -> None:
    """Errors produce a ``failed`` event and still propagate."""
    sink = RecordingEventSink()

    with pytest.raises(ValueError, match="bad plan"):
        async with stage_timer(sink, "research_planning") as timer:
            timer.record(query_count=0)
            raise ValueError("bad plan")

    [event] = sink.named("failed")
    assert not event.success
    assert event.data == {"query_count": 0, "error": "bad plan"}
    assert sink.named("completed") == []


@pytest.mark.asyncio
async def test_stage_timer_failure_without_message_uses_type_name() -> None:
    """Exceptions without a message are reported by class name."""
    sink = RecordingEventSink()

    with pytest.raises(KeyError):
        async with stage_timer(sink, "subtopics"):
            raise KeyError

    assert sink.events[0].data["error"] == "KeyError"


def test_sinks_accept_every_event_shape() -> None:
    """The structlog and null sinks handle success, failure and fallback events."""
    events = [
        PipelineEvent(stage="synthesis", name="completed", duration_ms=12),
        PipelineEvent(
            stage="content_generation",
            name="completed",
            duration_ms=40,
            data={"fallback": "synthetic", "sections": 4},
        ),
        PipelineEvent(
            stage="research_execution",
            name="failed",
            success=False,
            data={"error": "too few results"},
        ),
    ]

    for sink in (StructlogEventSink(), NullEventSink()):
        for event in events:
            sink.emit(event)
