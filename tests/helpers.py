"""Scripted stream events and fake providers shared by the unit tests."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from viewsim.engine.types import (
    ArgumentsDone,
    Finish,
    FunctionCall,
    ModelSelected,
    StreamEvent,
    TextDelta,
)

# Minimal JPEG: SOI + EOI markers
JPEG_BYTES = bytes([0xFF, 0xD8, 0xFF, 0xD9])


def keep_playing_events(
    thought: str | None = "Looks fun",
    curiosity: int | None = 7,
    model: str = "test-model",
) -> list[StreamEvent]:
    args: dict[str, Any] = {}
    if thought is not None:
        args["subconscious_thought"] = thought
    if curiosity is not None:
        args["curiosity_level"] = curiosity
    raw = json.dumps(args)
    return [
        ModelSelected(model=model, attempt=1),
        ModelSelected(model=model, attempt=1, status=200),
        FunctionCall(index=0, name="keep_playing", arguments=raw, call_id="call_1"),
        Finish(reason="tool_calls"),
        ArgumentsDone(arguments=raw),
    ]


def quit_video_events(reason: str = "The reveal was boring", model: str = "test-model") -> list[StreamEvent]:
    raw = json.dumps({"reason_for_quitting": reason})
    return [
        ModelSelected(model=model, attempt=1),
        ModelSelected(model=model, attempt=1, status=200),
        FunctionCall(index=0, name="quit_video", arguments=raw, call_id="call_1"),
        Finish(reason="tool_calls"),
        ArgumentsDone(arguments=raw),
    ]


def text_only_events(text: str, model: str = "test-model") -> list[StreamEvent]:
    return [
        ModelSelected(model=model, attempt=1),
        ModelSelected(model=model, attempt=1, status=200),
        TextDelta(text=text),
        Finish(reason="stop"),
    ]


class ScriptedClient:
    """Stands in for StreamingToolCallClient; replays one scripted turn per call."""

    def __init__(
        self,
        script: Callable[[int, list[dict[str, Any]]], list[StreamEvent]],
        error_after: dict[int, Exception] | None = None,
    ) -> None:
        self.script = script
        self.error_after = error_after or {}
        self.calls: list[dict[str, Any]] = []

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: str | dict[str, Any] = "auto",
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        call_index = len(self.calls)
        self.calls.append({
            "messages": messages,
            "tools": tools,
            "tool_choice": tool_choice,
            "max_output_tokens": max_output_tokens,
        })
        for event in self.script(call_index, messages):
            yield event
        if call_index in self.error_after:
            raise self.error_after[call_index]


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in exactly the given chunks."""

    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk


def sse_response(lines: list[str], split_every: int | None = None) -> httpx.Response:
    """Build a 200 SSE response; ``split_every`` re-chunks the body at arbitrary byte offsets."""
    body = "".join(f"{line}\n\n" for line in lines).encode("utf-8")
    if split_every:
        chunks = [body[i:i + split_every] for i in range(0, len(body), split_every)]
    else:
        chunks = [body]
    return httpx.Response(200, stream=ChunkedStream(chunks))


def data_line(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}"
