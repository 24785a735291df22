"""Per-agent decision loop.

Drives one viewer through the video, one segment at a time:
- Builds the turn context from the viewer's own memory of earlier thoughts
- Streams the model's tool call for the current frame
- Recovers the decision and its arguments from noisy output
- Applies the double-quit rule and reports the turn

Segments are processed strictly in order: each turn's context depends on the
thoughts recorded in previous turns.
"""

from __future__ import annotations

import asyncio
import base64
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from structlog.typing import FilteringBoundLogger

from viewsim.core.exceptions import ProviderError
from viewsim.engine.arguments import extract_fields, merge_fields, resolve_tool
from viewsim.engine.double_quit import apply_double_quit_rule, initial_agent_state
from viewsim.engine.persona import VIEWER_DECISION_FRAMEWORK, VIEWER_TOOLS, AgentPersona
from viewsim.engine.types import (
    AgentRunResult,
    AgentState,
    ArgumentsDone,
    Decision,
    DecisionOutcome,
    ExtractedFields,
    Finish,
    FunctionCall,
    ModelSelected,
    Segment,
    StreamEvent,
    StreamingClientProtocol,
    TextDelta,
    ToolName,
    ToolSource,
)
from viewsim.pipeline.events import AgentStoppedEvent, SegmentDecisionEvent
from viewsim.pipeline.reporters import SimulationReporter, notify

DEFAULT_MAX_OUTPUT_TOKENS = 1024
DEFAULT_CURIOSITY = 5
DEFAULT_QUIT_REASON = "Boredom (No specific reason provided)"
MIN_TEXT_REASON_LENGTH = 10

_TAG_PATTERN = re.compile(r"<.*?>")


def encode_frame(frame_path: Path) -> str:
    """Read a frame as a base64 JPEG data URL."""
    data = base64.b64encode(Path(frame_path).read_bytes()).decode("ascii")
    return f"data:image/jpeg;base64,{data}"


def memory_context(memory: Sequence[str]) -> str:
    if not memory:
        return "PREVIOUS THOUGHTS: None (Start of video)"
    history = "\n".join(f"- Second {i}: {thought}" for i, thought in enumerate(memory, start=1))
    return f"FULL VIDEO HISTORY (Context):\n{history}"


@dataclass
class _TurnCapture:
    """What one streamed turn produced."""

    tool: ToolName | None = None
    tool_index: int | None = None
    call_arguments: str = ""
    done_arguments: str = ""
    assistant_text: str = ""
    finish_reason: str | None = None
    model_used: str | None = None

    @property
    def arguments(self) -> str:
        return self.call_arguments or self.done_arguments

    def reset(self, model: str) -> None:
        # A new attempt starts from scratch on a different model
        self.tool = None
        self.tool_index = None
        self.call_arguments = ""
        self.done_arguments = ""
        self.assistant_text = ""
        self.finish_reason = None
        self.model_used = model

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, ModelSelected):
            if event.status is None:
                self.reset(event.model)
            else:
                self.model_used = event.model
        elif isinstance(event, FunctionCall):
            tool = ToolName.parse(event.name)
            if tool is None:
                return
            if self.tool is None:
                self.tool = tool
                self.tool_index = event.index
            if event.index == self.tool_index:
                self.call_arguments = event.arguments
        elif isinstance(event, ArgumentsDone):
            self.done_arguments = event.arguments
        elif isinstance(event, TextDelta):
            self.assistant_text += event.text
        elif isinstance(event, Finish):
            self.finish_reason = event.reason


class AgentRunner:
    """Runs one viewer persona over a sequence of segments.

    The runner owns the viewer's state and memory; create one per agent.
    """

    def __init__(
        self,
        persona: AgentPersona,
        client: StreamingClientProtocol,
        tools: list[dict[str, Any]] | None = None,
        reporters: Sequence[SimulationReporter] = (),
        run_id: str = "",
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        framework: str = VIEWER_DECISION_FRAMEWORK,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self.persona = persona
        self.client = client
        self.tools = VIEWER_TOOLS if tools is None else tools
        self.reporters = list(reporters)
        self.run_id = run_id
        self.max_output_tokens = max_output_tokens
        self.framework = framework
        self.logger = (logger or structlog.get_logger()).bind(agent_id=persona.id)

        self.state: AgentState = initial_agent_state()
        self.memory: list[str] = []

    async def run(self, segments: Sequence[Segment]) -> AgentRunResult:
        """Watch ``segments`` in list order until the viewer stops or the video ends.

        ``segments`` must already be sorted by index; the orchestrator does that once for all agents.
        """
        self.state = initial_agent_state()
        self.memory = []

        if not segments:
            return self._done(AgentRunResult(agent_id=self.persona.id))

        if not self.tools:
            self.logger.warning("agent_has_no_tools", detail="skipping provider calls")
            return self._done(AgentRunResult(agent_id=self.persona.id))

        self.logger.info("agent_run_started", segments=len(segments))

        for position, segment in enumerate(segments):
            outcome = await self._run_segment(segment, position)

            if outcome.decision is Decision.STOP:
                stop_index = segment.index
                notify(
                    self.reporters,
                    "on_agent_stopped",
                    AgentStoppedEvent(
                        run_id=self.run_id,
                        agent_id=self.persona.id,
                        stop_segment_index=stop_index,
                    ),
                    self.logger,
                )
                self.logger.info("agent_run_completed", stop_segment_index=stop_index)
                return self._done(
                    AgentRunResult(agent_id=self.persona.id, stop_segment_index=stop_index)
                )

        self.logger.info("agent_run_completed", stop_segment_index=None)
        return self._done(AgentRunResult(agent_id=self.persona.id))

    async def build_messages(self, segment: Segment, position: int) -> list[dict[str, Any]]:
        """System prompt + user turn with memory context, frame, and optional subtitle."""
        image_url = await asyncio.to_thread(encode_frame, segment.frame_path)

        content: list[dict[str, Any]] = [
            {
                "type": "text",
                "text": (
                    f"CURRENT CONTEXT:\n{memory_context(self.memory)}\n\n"
                    f"Analyze this frame (Second {position + 1}):"
                ),
            },
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        subtitle = segment.subtitle.strip()
        if subtitle:
            content.append({"type": "text", "text": f"Subtitle: {subtitle}"})

        return [
            {"role": "system", "content": self.persona.full_system_prompt(self.framework)},
            {"role": "user", "content": content},
        ]

    async def _run_segment(self, segment: Segment, position: int) -> DecisionOutcome:
        messages = await self.build_messages(segment, position)
        capture = await self._stream_turn(messages, segment)

        tool, source = resolve_tool(capture.tool, capture.assistant_text)
        if source is ToolSource.DEFAULT:
            self.logger.warning(
                "tool_not_observed",
                segment=segment.index,
                model=capture.model_used,
                finish_reason=capture.finish_reason,
                defaulted_to=tool.value,
            )
        elif source is ToolSource.TEXT_HEURISTIC:
            self.logger.debug("tool_inferred_from_text", segment=segment.index, tool=tool.value)

        fields = merge_fields(
            extract_fields(capture.arguments),
            extract_fields(capture.assistant_text),
        )

        outcome = apply_double_quit_rule(self.state, tool, segment.index)
        self.state = outcome.state

        if outcome.decision is Decision.CONTINUE and fields.thought:
            self.memory.append(fields.thought)

        notify(
            self.reporters,
            "on_segment_decision",
            self._decision_event(segment, tool, source, outcome, fields, capture),
            self.logger,
        )
        return outcome

    async def _stream_turn(self, messages: list[dict[str, Any]], segment: Segment) -> _TurnCapture:
        capture = _TurnCapture()
        try:
            async for event in self.client.stream(
                messages,
                self.tools,
                tool_choice="auto",
                max_output_tokens=self.max_output_tokens,
            ):
                capture.apply(event)
        except ProviderError as e:
            if capture.tool is None:
                raise
            # The decision already arrived; the rest of the stream is not needed
            self.logger.warning(
                "agent_stream_failed_after_tool",
                segment=segment.index,
                tool=capture.tool.value,
                error=str(e),
            )
        return capture

    def _decision_event(
        self,
        segment: Segment,
        tool: ToolName,
        source: ToolSource,
        outcome: DecisionOutcome,
        fields: ExtractedFields,
        capture: _TurnCapture,
    ) -> SegmentDecisionEvent:
        curiosity = fields.curiosity
        if tool is ToolName.KEEP_PLAYING and fields.thought and curiosity is None:
            curiosity = DEFAULT_CURIOSITY

        state = outcome.state
        assistant_text = capture.assistant_text.strip()
        return SegmentDecisionEvent(
            run_id=self.run_id,
            agent_id=self.persona.id,
            segment_index=segment.index,
            segment_start=segment.start,
            segment_end=segment.end,
            frame_path=str(segment.frame_path),
            subtitle=segment.subtitle,
            model_tool=tool.value,
            coerced_tool=outcome.coerced_tool.value,
            tool_source=source.value,
            decision=outcome.decision.value,
            status=state.status.value,
            first_quit_seen=state.first_quit_seen,
            stopped=state.stopped,
            stop_segment_index=state.stop_segment_index,
            decision_reason=decision_reason(tool, fields, assistant_text),
            subconscious_thought=fields.thought,
            curiosity_level=curiosity,
            reason_for_quitting=fields.quit_reason,
            raw_assistant_text=assistant_text or None,
            raw_function_args=capture.arguments or None,
            model_used=capture.model_used,
            finish_reason=capture.finish_reason,
        )

    def _done(self, result: AgentRunResult) -> AgentRunResult:
        notify(self.reporters, "on_agent_done", result, self.logger)
        return result


def decision_reason(tool: ToolName, fields: ExtractedFields, assistant_text: str) -> str | None:
    """Human-readable reason for a turn's decision."""
    if tool is ToolName.KEEP_PLAYING:
        return fields.thought

    if fields.quit_reason:
        return fields.quit_reason
    # Models often put the quit reason in plain text instead of the arguments
    if len(assistant_text) > MIN_TEXT_REASON_LENGTH:
        return _TAG_PATTERN.sub("", assistant_text).strip()
    return DEFAULT_QUIT_REASON
