"""Runs every viewer concurrently over the same segments and summarizes.

One asyncio task per agent. Agents share the read-only segment list and the
stateless client; each owns its runner, state, and memory. The orchestrator
waits for every agent before producing a summary.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog
from structlog.typing import FilteringBoundLogger

from viewsim.core.exceptions import SimulationTimeoutError
from viewsim.engine.agent_runner import DEFAULT_MAX_OUTPUT_TOKENS, AgentRunner
from viewsim.engine.persona import AgentPersona
from viewsim.engine.types import (
    AgentRunResult,
    Segment,
    SimulationResult,
    StreamingClientProtocol,
)
from viewsim.evaluation.summary import summarize_simulation
from viewsim.pipeline.reporters import SimulationReporter, notify


class SimulationOrchestrator:
    """Starts one AgentRunner per persona and joins them.

    Failure modes:
    - default (fail-fast): the first agent error cancels the others and propagates
    - ``isolate_failures=True``: failed agents are recorded and left out of the summary
    """

    def __init__(
        self,
        client: StreamingClientProtocol,
        tools: list[dict[str, Any]] | None = None,
        reporters: Sequence[SimulationReporter] = (),
        run_id: str = "",
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        isolate_failures: bool = False,
        timeout_seconds: float | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self.client = client
        self.tools = tools
        self.reporters = list(reporters)
        self.run_id = run_id
        self.max_output_tokens = max_output_tokens
        self.isolate_failures = isolate_failures
        self.timeout_seconds = timeout_seconds
        self.logger = logger or structlog.get_logger()

    def make_runner(self, persona: AgentPersona) -> AgentRunner:
        return AgentRunner(
            persona=persona,
            client=self.client,
            tools=self.tools,
            reporters=self.reporters,
            run_id=self.run_id,
            max_output_tokens=self.max_output_tokens,
            logger=self.logger,
        )

    async def run(
        self,
        personas: Sequence[AgentPersona],
        segments: Sequence[Segment],
    ) -> SimulationResult:
        """Run all agents and summarize their watch times."""
        self.logger.info(
            "simulation_started",
            run_id=self.run_id,
            agents=len(personas),
            segments=len(segments),
            isolate_failures=self.isolate_failures,
        )

        # One timeline for every agent and for the summary
        timeline = sorted(segments, key=lambda s: s.index)
        runners = [self.make_runner(p) for p in personas]

        if self.timeout_seconds is None:
            results, failures = await self._run_all(runners, timeline)
        else:
            try:
                results, failures = await asyncio.wait_for(
                    self._run_all(runners, timeline), timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                self.logger.error("simulation_timed_out", timeout_seconds=self.timeout_seconds)
                raise SimulationTimeoutError(self.timeout_seconds) from e

        summary = summarize_simulation(timeline, results)
        notify(self.reporters, "on_summary", summary, self.logger)

        self.logger.info(
            "simulation_completed",
            run_id=self.run_id,
            completed=len(results),
            failed=len(failures),
            average_watch_seconds=round(summary.average_watch_seconds, 3),
        )
        return SimulationResult(results=results, summary=summary, failures=failures)

    async def _run_all(
        self,
        runners: list[AgentRunner],
        segments: Sequence[Segment],
    ) -> tuple[list[AgentRunResult], dict[str, str]]:
        tasks = [
            asyncio.create_task(runner.run(segments), name=f"agent:{runner.persona.id}")
            for runner in runners
        ]

        if self.isolate_failures:
            return self._collect_isolated(runners, await asyncio.gather(*tasks, return_exceptions=True))

        try:
            results = await asyncio.gather(*tasks)
        except BaseException as e:
            # Join-all-or-fail: nobody keeps running once one agent failed or we were cancelled
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if isinstance(e, Exception):
                self.logger.error("simulation_failed", error=str(e), error_type=type(e).__name__)
            raise
        return list(results), {}

    def _collect_isolated(
        self,
        runners: list[AgentRunner],
        outcomes: list[AgentRunResult | BaseException],
    ) -> tuple[list[AgentRunResult], dict[str, str]]:
        results: list[AgentRunResult] = []
        failures: dict[str, str] = {}
        for runner, outcome in zip(runners, outcomes):
            if isinstance(outcome, Exception):
                failures[runner.persona.id] = str(outcome)
                self.logger.error(
                    "agent_failed",
                    agent_id=runner.persona.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results, failures
