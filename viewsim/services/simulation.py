"""High-level simulation service.

Builds engine components from settings, runs every viewer over externally
produced segments, and writes the structured run log. This is the bridge
between callers (CLI, web) and the engine.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path

from structlog.typing import FilteringBoundLogger

from viewsim.config import Settings
from viewsim.config import settings as default_settings
from viewsim.core.logging import make_logger
from viewsim.engine.llm_client import StreamingToolCallClient
from viewsim.engine.orchestrator import SimulationOrchestrator
from viewsim.engine.persona import VIEWER_TOOLS, AgentPersona, build_personas
from viewsim.engine.types import Segment, SimulationResult, StreamingClientProtocol
from viewsim.evaluation.summary import stop_counts
from viewsim.pipeline.events import RunCompletedEvent, RunFailedEvent, RunStartedEvent
from viewsim.pipeline.recorder import JsonlEventRecorder
from viewsim.pipeline.reporters import SimulationReporter, StructlogReporter

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def make_run_id(now: datetime | None = None) -> str:
    """Filesystem-safe timestamp id, e.g. 2025-01-31T10-20-30-123456+00-00."""
    now = now or datetime.now(timezone.utc)
    return re.sub(r"[:.]", "-", now.isoformat())


def output_log_path(log_dir: Path, video_path: str, run_id: str) -> Path:
    name = _UNSAFE_FILENAME_CHARS.sub("_", Path(video_path).name) if video_path else "simulation"
    return Path(log_dir) / f"{name}-{run_id}.jsonl"


class SimulationService:
    """Runs one simulation: personas → concurrent agents → summary + JSONL records."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: StreamingClientProtocol | None = None,
        extra_reporters: Sequence[SimulationReporter] = (),
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.client = client
        self.extra_reporters = list(extra_reporters)
        self.logger = logger or make_logger(self.settings.log_level)

    async def run(
        self,
        segments: Sequence[Segment],
        video_path: str = "",
        personas: Sequence[AgentPersona] | None = None,
    ) -> SimulationResult:
        cfg = self.settings
        run_id = make_run_id()
        personas = list(personas) if personas is not None else build_personas(cfg.agent_count)

        self.logger.info(
            "simulation_config",
            run_id=run_id,
            model=cfg.openrouter_model,
            fallback_models=cfg.fallback_models,
            agents=len(personas),
            segments=len(segments),
        )
        if not segments:
            self.logger.warning("segments_prepared", count=0)

        recorder: JsonlEventRecorder | None = None
        if cfg.agent_output_log:
            recorder = JsonlEventRecorder(output_log_path(cfg.agent_output_log_dir, video_path, run_id))
            self.logger.info("agent_output_log", path=str(recorder.path))
            recorder.record(
                RunStartedEvent(
                    run_id=run_id,
                    video_path=video_path,
                    model=cfg.openrouter_model,
                    agent_count=len(personas),
                    segment_count=len(segments),
                )
            )

        reporters: list[SimulationReporter] = [
            StructlogReporter(logger=self.logger, log_model_output=cfg.log_model_output),
            *self.extra_reporters,
        ]
        if recorder is not None:
            reporters.append(recorder)

        client = self.client or StreamingToolCallClient.from_settings(cfg, logger=self.logger)
        orchestrator = SimulationOrchestrator(
            client=client,
            tools=VIEWER_TOOLS,
            reporters=reporters,
            run_id=run_id,
            max_output_tokens=cfg.max_output_tokens,
            isolate_failures=cfg.isolate_agent_failures,
            timeout_seconds=cfg.simulation_timeout_seconds,
            logger=self.logger,
        )

        try:
            result = await orchestrator.run(personas, segments)
        except Exception as e:
            if recorder is not None:
                self._record_failure(recorder, run_id, e)
            raise
        finally:
            if self.client is None and isinstance(client, StreamingToolCallClient):
                await client.aclose()

        if recorder is not None:
            recorder.record(
                RunCompletedEvent(
                    run_id=run_id,
                    video_duration_seconds=result.summary.video_duration_seconds,
                    average_watch_seconds=result.summary.average_watch_seconds,
                    stop_counts=stop_counts(result.results),
                    failed_agents=sorted(result.failures),
                )
            )

        return result

    def _record_failure(self, recorder: JsonlEventRecorder, run_id: str, error: Exception) -> None:
        # The run error is what the caller sees; a failed write only gets logged
        try:
            recorder.record(
                RunFailedEvent(run_id=run_id, message=str(error), error_type=type(error).__name__)
            )
        except OSError as write_error:
            self.logger.warning("run_failure_not_recorded", error=str(write_error))
