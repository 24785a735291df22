"""Typed simulation event records with versioned envelope."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from uuid_extensions import uuid7

SEGMENT_DECIDED = "agent.segment.decided"
AGENT_STOPPED = "agent.stopped"
RUN_STARTED = "run.started"
RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EventEnvelope:
    """Versioned envelope wrapping all simulation events."""

    version: int
    event_type: str
    payload: dict[str, object]

    def serialize(self) -> bytes:
        return json.dumps(asdict(self)).encode("utf-8")

    @classmethod
    def deserialize(cls, data: bytes) -> EventEnvelope:
        raw = json.loads(data.decode("utf-8"))
        return cls(
            version=raw["version"],
            event_type=raw["event_type"],
            payload=raw["payload"],
        )


@dataclass
class _Event:
    def to_envelope(self) -> EventEnvelope:
        return EventEnvelope(
            version=1,
            event_type=self.event_type,  # type: ignore[attr-defined]
            payload=asdict(self),
        )


@dataclass
class SegmentDecisionEvent(_Event):
    """Emitted once per agent turn, after the double-quit rule was applied."""

    run_id: str
    agent_id: str
    segment_index: int
    segment_start: float
    segment_end: float
    frame_path: str
    subtitle: str
    model_tool: str  # "keep_playing" | "quit_video" as seen or inferred
    coerced_tool: str
    tool_source: str  # "tool_call" | "text_heuristic" | "default"
    decision: str  # "continue" | "stop"
    status: str
    first_quit_seen: bool
    stopped: bool
    stop_segment_index: int | None
    decision_reason: str | None = None
    subconscious_thought: str | None = None
    curiosity_level: int | None = None
    reason_for_quitting: str | None = None
    raw_assistant_text: str | None = None
    raw_function_args: str | None = None
    model_used: str | None = None
    finish_reason: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid7()))
    event_type: str = SEGMENT_DECIDED
    timestamp: str = field(default_factory=_now)


@dataclass
class AgentStoppedEvent(_Event):
    run_id: str
    agent_id: str
    stop_segment_index: int
    event_id: str = field(default_factory=lambda: str(uuid7()))
    event_type: str = AGENT_STOPPED
    timestamp: str = field(default_factory=_now)


@dataclass
class RunStartedEvent(_Event):
    run_id: str
    video_path: str
    model: str
    agent_count: int
    segment_count: int
    event_id: str = field(default_factory=lambda: str(uuid7()))
    event_type: str = RUN_STARTED
    timestamp: str = field(default_factory=_now)


@dataclass
class RunCompletedEvent(_Event):
    run_id: str
    video_duration_seconds: float
    average_watch_seconds: float
    stop_counts: dict[str, int]
    failed_agents: list[str] = field(default_factory=list)
    event_id: str = field(default_factory=lambda: str(uuid7()))
    event_type: str = RUN_COMPLETED
    timestamp: str = field(default_factory=_now)


@dataclass
class RunFailedEvent(_Event):
    run_id: str
    message: str
    error_type: str
    event_id: str = field(default_factory=lambda: str(uuid7()))
    event_type: str = RUN_FAILED
    timestamp: str = field(default_factory=_now)
