"""Append-only JSONL recorder for simulation events.

Each line is one serialized ``EventEnvelope``. Writes are synchronous and
happen on the event loop thread, so concurrent agents never interleave lines.
"""

from __future__ import annotations

from pathlib import Path

from viewsim.pipeline.events import AgentStoppedEvent, SegmentDecisionEvent
from viewsim.pipeline.reporters import BaseReporter


class JsonlEventRecorder(BaseReporter):
    """Writes every event it sees to ``path`` as one JSON envelope per line."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(b"")
        self.records_written = 0

    def record(self, event: object) -> None:
        """Append one event; ``event`` must provide ``to_envelope()``."""
        envelope = event.to_envelope()  # type: ignore[attr-defined]
        with self.path.open("ab") as f:
            f.write(envelope.serialize() + b"\n")
        self.records_written += 1

    def on_segment_decision(self, event: SegmentDecisionEvent) -> None:
        self.record(event)

    def on_agent_stopped(self, event: AgentStoppedEvent) -> None:
        self.record(event)
