"""Pure math: watch time per agent, video duration, average watch time."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from viewsim.engine.types import (
    AgentRunResult,
    AgentWatchSummary,
    Segment,
    SimulationSummary,
)

FULL_WATCH_KEY = "full"


def video_duration_seconds(segments: Sequence[Segment]) -> float:
    """End time of the last segment; 0 for an empty video."""
    if not segments:
        return 0.0
    return segments[-1].end


def watch_seconds_for(segments: Sequence[Segment], stop_segment_index: int | None) -> float:
    """Video time an agent reached: the end of its stop segment, or the full duration.

    Out-of-range stop indices are clamped onto the segment list.
    """
    if not segments:
        return 0.0
    if stop_segment_index is None:
        return video_duration_seconds(segments)

    clamped = max(0, min(stop_segment_index, len(segments) - 1))
    return segments[clamped].end


def summarize_simulation(
    segments: Sequence[Segment],
    results: Sequence[AgentRunResult],
) -> SimulationSummary:
    per_agent = [
        AgentWatchSummary(
            agent_id=r.agent_id,
            stop_segment_index=r.stop_segment_index,
            watch_seconds=watch_seconds_for(segments, r.stop_segment_index),
        )
        for r in results
    ]

    total = sum(row.watch_seconds for row in per_agent)
    average = total / len(per_agent) if per_agent else 0.0

    return SimulationSummary(
        video_duration_seconds=video_duration_seconds(segments),
        average_watch_seconds=average,
        per_agent=per_agent,
    )


def stop_counts(results: Sequence[AgentRunResult]) -> dict[str, int]:
    """How many agents stopped at each segment index; agents that never stopped count as "full"."""
    counts = Counter(
        FULL_WATCH_KEY if r.stop_segment_index is None else str(r.stop_segment_index)
        for r in results
    )
    return dict(counts)
