"""Fire-and-forget reporting hooks for UI, logs, and persistence collaborators.

Reporters are best-effort: a failing reporter is logged and never breaks a
simulation.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog
from structlog.typing import FilteringBoundLogger

from viewsim.engine.types import AgentRunResult, SimulationSummary
from viewsim.pipeline.events import AgentStoppedEvent, SegmentDecisionEvent


class SimulationReporter(Protocol):
    def on_segment_decision(self, event: SegmentDecisionEvent) -> None: ...

    def on_agent_stopped(self, event: AgentStoppedEvent) -> None: ...

    def on_agent_done(self, result: AgentRunResult) -> None: ...

    def on_summary(self, summary: SimulationSummary) -> None: ...


class BaseReporter:
    """Does nothing; subclass and override the hooks you need."""

    def on_segment_decision(self, event: SegmentDecisionEvent) -> None:
        pass

    def on_agent_stopped(self, event: AgentStoppedEvent) -> None:
        pass

    def on_agent_done(self, result: AgentRunResult) -> None:
        pass

    def on_summary(self, summary: SimulationSummary) -> None:
        pass


class StructlogReporter(BaseReporter):
    """Logs every decision; thoughts and raw model text only when ``log_model_output`` is set."""

    def __init__(
        self,
        logger: FilteringBoundLogger | None = None,
        log_model_output: bool = False,
    ) -> None:
        self.logger = logger or structlog.get_logger()
        self.log_model_output = log_model_output

    def on_segment_decision(self, event: SegmentDecisionEvent) -> None:
        if self.log_model_output:
            self.logger.info(
                "agent_segment_decided",
                agent_id=event.agent_id,
                segment=event.segment_index,
                tool=event.model_tool,
                decision=event.decision,
                tool_source=event.tool_source,
                decision_reason=event.decision_reason,
                subconscious_thought=event.subconscious_thought,
                curiosity_level=event.curiosity_level,
                finish_reason=event.finish_reason,
                raw_assistant_text=event.raw_assistant_text,
                raw_function_args=event.raw_function_args,
            )
        else:
            self.logger.debug(
                "agent_segment_decided",
                agent_id=event.agent_id,
                segment=event.segment_index,
                tool=event.model_tool,
                decision=event.decision,
            )

    def on_agent_stopped(self, event: AgentStoppedEvent) -> None:
        self.logger.info(
            "agent_stopped",
            agent_id=event.agent_id,
            stop_segment_index=event.stop_segment_index,
        )

    def on_summary(self, summary: SimulationSummary) -> None:
        self.logger.info(
            "simulation_summary",
            video_duration_seconds=summary.video_duration_seconds,
            average_watch_seconds=round(summary.average_watch_seconds, 3),
            agents=len(summary.per_agent),
        )


def notify(
    reporters: list[Any] | tuple[Any, ...],
    hook: str,
    payload: object,
    logger: FilteringBoundLogger,
) -> None:
    """Call ``hook`` on every reporter, logging (not raising) reporter failures."""
    for reporter in reporters:
        try:
            getattr(reporter, hook)(payload)
        except Exception as e:
            logger.warning(
                "reporter_failed",
                reporter=type(reporter).__name__,
                hook=hook,
                error=str(e),
            )
