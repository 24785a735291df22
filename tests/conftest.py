"""Test fixtures for viewsim."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from helpers import JPEG_BYTES
from viewsim.engine.persona import AgentPersona
from viewsim.engine.types import Segment


@pytest.fixture
def frame_path(tmp_path: Path) -> Path:
    path = tmp_path / "frame.jpg"
    path.write_bytes(JPEG_BYTES)
    return path


@pytest.fixture
def make_segments(frame_path: Path) -> Callable[..., list[Segment]]:
    def _make(count: int = 3, duration: float = 1.0, subtitle: str = "") -> list[Segment]:
        return [
            Segment(
                index=i,
                start=i * duration,
                end=(i + 1) * duration,
                frame_path=frame_path,
                subtitle=subtitle,
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def persona() -> AgentPersona:
    return AgentPersona(id="agent-1", system_prompt="Test persona")
