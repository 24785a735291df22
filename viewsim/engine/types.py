"""Core types and protocols for the decision engine.

All engine components depend on these interfaces, not on concrete implementations.
This makes every component independently testable and swappable.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, Union


# ============================================================
# Enums
# ============================================================


class ToolName(str, Enum):
    KEEP_PLAYING = "keep_playing"
    QUIT_VIDEO = "quit_video"

    @classmethod
    def parse(cls, value: str | None) -> ToolName | None:
        """Return the matching tool, or None for names the viewer does not support."""
        for tool in cls:
            if tool.value == value:
                return tool
        return None


class Decision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class AgentStatus(str, Enum):
    WATCHING = "watching"
    PROBATION = "probation"  # first quit seen
    STOPPED = "stopped"


class ToolSource(str, Enum):
    """Where the tool applied to a segment came from."""

    TOOL_CALL = "tool_call"
    TEXT_HEURISTIC = "text_heuristic"
    DEFAULT = "default"


# ============================================================
# Data Types
# ============================================================


@dataclass(frozen=True)
class Segment:
    """One slice of video: a single frame plus optional subtitle text."""

    index: int
    start: float
    end: float
    frame_path: Path
    subtitle: str = ""


@dataclass(frozen=True)
class AgentState:
    first_quit_seen: bool = False
    stopped: bool = False
    stop_segment_index: int | None = None
    status: AgentStatus = AgentStatus.WATCHING


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of applying one tool call to an agent state."""

    coerced_tool: ToolName
    decision: Decision
    state: AgentState


@dataclass(frozen=True)
class ExtractedFields:
    """Decision payload recovered from model output, independent of transport."""

    thought: str | None = None
    curiosity: int | None = None
    quit_reason: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.thought is None and self.curiosity is None and self.quit_reason is None


@dataclass(frozen=True)
class AgentRunResult:
    agent_id: str
    stop_segment_index: int | None = None


@dataclass(frozen=True)
class AgentWatchSummary:
    agent_id: str
    stop_segment_index: int | None
    watch_seconds: float


@dataclass(frozen=True)
class SimulationSummary:
    video_duration_seconds: float
    average_watch_seconds: float
    per_agent: list[AgentWatchSummary] = field(default_factory=list)


@dataclass
class SimulationResult:
    """Everything a finished simulation run produced."""

    results: list[AgentRunResult]
    summary: SimulationSummary
    failures: dict[str, str] = field(default_factory=dict)


# ============================================================
# Stream events: one variant per kind of provider signal
# ============================================================


@dataclass(frozen=True)
class ModelSelected:
    """A model was picked for an attempt; ``status`` is set once the response status is known."""

    model: str
    attempt: int
    status: int | None = None


@dataclass(frozen=True)
class RawEvent:
    payload: dict[str, Any]


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class FunctionCall:
    """A tool call whose name is known; ``arguments`` holds everything accumulated so far."""

    index: int
    name: str
    arguments: str
    call_id: str | None = None


@dataclass(frozen=True)
class ArgumentsDone:
    arguments: str


@dataclass(frozen=True)
class Finish:
    reason: str


StreamEvent = Union[ModelSelected, RawEvent, TextDelta, FunctionCall, ArgumentsDone, Finish]


# ============================================================
# Protocols (Interfaces): mock these for tests
# ============================================================


class StreamingClientProtocol(Protocol):
    """Interface for a provider that streams tool-call decisions."""

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: str | dict[str, Any] = "auto",
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]: ...
