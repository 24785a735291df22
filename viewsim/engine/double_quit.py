"""Double-quit leniency rule.

A viewer's first quit signal only puts them on probation; the second one ends
the session. Pure functions, no I/O.
"""

from __future__ import annotations

from dataclasses import replace

from viewsim.engine.types import (
    AgentState,
    AgentStatus,
    Decision,
    DecisionOutcome,
    ToolName,
)


def initial_agent_state() -> AgentState:
    return AgentState()


def apply_double_quit_rule(
    state: AgentState,
    tool: ToolName,
    segment_index: int,
) -> DecisionOutcome:
    """Apply one tool call to ``state``.

    - keep_playing: continue, state unchanged
    - first quit_video: coerced to keep_playing, state moves to probation
    - second quit_video: stop at ``segment_index``
    """
    if tool is ToolName.QUIT_VIDEO:
        if not state.first_quit_seen:
            return DecisionOutcome(
                coerced_tool=ToolName.KEEP_PLAYING,
                decision=Decision.CONTINUE,
                state=replace(state, first_quit_seen=True, status=AgentStatus.PROBATION),
            )

        return DecisionOutcome(
            coerced_tool=ToolName.QUIT_VIDEO,
            decision=Decision.STOP,
            state=replace(
                state,
                stopped=True,
                stop_segment_index=segment_index,
                status=AgentStatus.STOPPED,
            ),
        )

    return DecisionOutcome(
        coerced_tool=ToolName.KEEP_PLAYING,
        decision=Decision.CONTINUE,
        state=state,
    )
