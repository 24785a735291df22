"""Unit tests for StreamingToolCallClient and SSE parsing.

No network: every response comes from an httpx.MockTransport handler.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from helpers import data_line, sse_response
from viewsim.config import Settings
from viewsim.core.exceptions import ProviderError, ProviderHTTPError, UnsupportedModalityError
from viewsim.engine.llm_client import (
    SSEEventParser,
    StreamingToolCallClient,
    backoff_delay,
    messages_include_image,
)
from viewsim.engine.persona import VIEWER_TOOLS
from viewsim.engine.types import (
    ArgumentsDone,
    Finish,
    FunctionCall,
    ModelSelected,
    RawEvent,
    StreamEvent,
    TextDelta,
)

TEXT_MESSAGES = [{"role": "user", "content": "hello"}]
IMAGE_MESSAGES = [
    {
        "role": "user",
        "content": [
            {"type": "text", "text": "Analyze this frame"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
        ],
    }
]

FULL_ARGUMENTS = '{"subconscious_thought": "A dog \\"surfs\\" here", "curiosity_level": 8}'


def tool_call_lines(arguments: str = FULL_ARGUMENTS, name: str = "keep_playing") -> list[str]:
    pieces = [arguments[i:i + 9] for i in range(0, len(arguments), 9)]
    lines = [
        data_line({
            "choices": [{
                "delta": {"tool_calls": [{
                    "index": 0, "id": "call_1", "function": {"name": name, "arguments": ""},
                }]},
            }],
        }),
    ]
    lines += [
        data_line({
            "choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": piece}}]}}],
        })
        for piece in pieces
    ]
    lines.append(data_line({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}))
    lines.append("data: [DONE]")
    return lines


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    model: str = "model-a",
    fallback_models: list[str] | None = None,
    max_attempts: int | None = None,
    base_delay_seconds: float = 1.0,
) -> StreamingToolCallClient:
    client = StreamingToolCallClient(
        api_key="test-key",
        model=model,
        fallback_models=fallback_models,
        max_attempts=max_attempts,
        base_url="https://llm.test",
        base_delay_seconds=base_delay_seconds,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return client



@pytest.fixture
def backoff_sleep() -> Iterator[AsyncMock]:
    with patch("viewsim.engine.llm_client.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep

async def collect(client: StreamingToolCallClient, messages: list[dict[str, Any]] | None = None) -> list[StreamEvent]:
    return [
        event
        async for event in client.stream(messages or TEXT_MESSAGES, VIEWER_TOOLS, max_output_tokens=256)
    ]


def of_type(events: list[StreamEvent], kind: type) -> list[Any]:
    return [e for e in events if isinstance(e, kind)]


class TestStreamParsing:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("split_every", [None, 1, 3, 7, 64])
    async def test_arbitrary_chunking_reconstructs_arguments(self, split_every: int | None) -> None:
        client = make_client(lambda request: sse_response(tool_call_lines(), split_every=split_every))
        events = await collect(client)

        calls = of_type(events, FunctionCall)
        assert calls
        assert calls[-1].name == "keep_playing"
        assert calls[-1].call_id == "call_1"
        assert calls[-1].arguments == FULL_ARGUMENTS
        assert of_type(events, ArgumentsDone) == [ArgumentsDone(arguments=FULL_ARGUMENTS)]
        assert of_type(events, Finish) == [Finish(reason="tool_calls")]
        assert json.loads(calls[-1].arguments)["subconscious_thought"] == 'A dog "surfs" here'

    @pytest.mark.asyncio
    async def test_text_deltas_and_finish(self) -> None:
        lines = [
            data_line({"choices": [{"delta": {"content": "Hel"}}]}),
            data_line({"choices": [{"delta": {"content": "lo"}}]}),
            data_line({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
        ]
        client = make_client(lambda request: sse_response(lines))
        events = await collect(client)

        assert [e.text for e in of_type(events, TextDelta)] == ["Hel", "lo"]
        assert of_type(events, Finish) == [Finish(reason="stop")]
        assert of_type(events, ArgumentsDone) == []
        assert of_type(events, FunctionCall) == []

    @pytest.mark.asyncio
    async def test_recovers_missing_tool_name_from_arguments(self) -> None:
        arguments = '{"tool": "quit_video", "reason_for_quitting": "dull"}'
        lines = [
            data_line({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": arguments}}]}}]}),
            data_line({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]}),
        ]
        client = make_client(lambda request: sse_response(lines))
        events = await collect(client)

        calls = of_type(events, FunctionCall)
        assert len(calls) == 1
        assert calls[0].name == "quit_video"
        assert calls[0].arguments == arguments

    @pytest.mark.asyncio
    async def test_skips_unparsable_lines_and_done_marker(self) -> None:
        lines = [
            ": keep-alive",
            "event: ping",
            "data: {not json",
            "data:",
            data_line({"choices": [{"delta": {"content": "ok"}}]}),
            "data: [DONE]",
        ]
        client = make_client(lambda request: sse_response(lines))
        events = await collect(client)

        assert len(of_type(events, RawEvent)) == 1
        assert of_type(events, TextDelta) == [TextDelta(text="ok")]

    @pytest.mark.asyncio
    async def test_sends_streaming_request(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return sse_response(tool_call_lines())

        client = make_client(handler)
        await collect(client)

        request = seen[0]
        body = json.loads(request.content)
        assert str(request.url) == "https://llm.test/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"
        assert body["model"] == "model-a"
        assert body["stream"] is True
        assert body["tool_choice"] == "auto"
        assert body["max_tokens"] == 256
        assert [t["function"]["name"] for t in body["tools"]] == ["keep_playing", "quit_video"]

    @pytest.mark.asyncio
    async def test_announces_model_before_and_after_status(self) -> None:
        client = make_client(lambda request: sse_response(tool_call_lines()))
        events = await collect(client)

        assert events[0] == ModelSelected(model="model-a", attempt=1)
        assert events[1] == ModelSelected(model="model-a", attempt=1, status=200)


class TestSSEEventParser:

    def test_partial_line_waits_for_next_chunk(self) -> None:
        parser = SSEEventParser()
        line = data_line({"choices": [{"delta": {"content": "hi"}}]})

        assert list(parser.feed(line[:10])) == []
        events = list(parser.feed(line[10:] + "\n"))
        assert TextDelta(text="hi") in events

    def test_flush_emits_trailing_line(self) -> None:
        parser = SSEEventParser()
        assert list(parser.feed(data_line({"choices": [{"delta": {"content": "tail"}}]}))) == []
        assert TextDelta(text="tail") in list(parser.flush())

    def test_fragments_merge_per_index(self) -> None:
        parser = SSEEventParser()
        chunk = "\n".join([
            data_line({"choices": [{"delta": {"tool_calls": [
                {"index": 1, "function": {"name": "quit_video", "arguments": "B1"}},
                {"index": 0, "function": {"name": "keep_playing", "arguments": "A1"}},
            ]}}]}),
            data_line({"choices": [{"delta": {"tool_calls": [
                {"index": 0, "function": {"arguments": "A2"}},
            ]}}]}),
            "",
        ])
        events = list(parser.feed(chunk))

        last_for_index = {e.index: e for e in of_type(events, FunctionCall)}
        assert last_for_index[0].arguments == "A1A2"
        assert last_for_index[0].name == "keep_playing"
        assert last_for_index[1].arguments == "B1"
        assert parser.full_arguments == "A1A2B1"

    def test_later_name_overrides_earlier(self) -> None:
        parser = SSEEventParser()
        chunk = "\n".join([
            data_line({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "keep_"}}]}}]}),
            data_line({"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"name": "quit_video"}}]}}]}),
            "",
        ])
        calls = of_type(list(parser.feed(chunk)), FunctionCall)
        assert calls[-1].name == "quit_video"


class TestFallback:

    @pytest.mark.asyncio
    async def test_retryable_status_moves_to_next_model(self, backoff_sleep: AsyncMock) -> None:
        models_seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            models_seen.append(json.loads(request.content)["model"])
            if len(models_seen) == 1:
                return httpx.Response(429, text="rate limited")
            return sse_response(tool_call_lines())

        client = make_client(handler, fallback_models=["model-b"])
        events = await collect(client)

        assert models_seen == ["model-a", "model-b"]
        backoff_sleep.assert_awaited_once()
        assert 0.8 <= backoff_sleep.await_args.args[0] <= 1.2
        assert of_type(events, ModelSelected) == [
            ModelSelected(model="model-a", attempt=1),
            ModelSelected(model="model-a", attempt=1, status=429),
            ModelSelected(model="model-b", attempt=2),
            ModelSelected(model="model-b", attempt=2, status=200),
        ]
        assert of_type(events, FunctionCall)[-1].arguments == FULL_ARGUMENTS

    @pytest.mark.asyncio
    async def test_server_error_on_last_attempt_raises(self, backoff_sleep: AsyncMock) -> None:
        client = make_client(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(ProviderHTTPError) as exc_info:
            await collect(client)

        assert exc_info.value.status_code == 503
        assert exc_info.value.model == "model-a"
        assert "overloaded" in str(exc_info.value)
        backoff_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, backoff_sleep: AsyncMock) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400, text="bad request")

        client = make_client(handler, fallback_models=["model-b"])

        with pytest.raises(ProviderHTTPError) as exc_info:
            await collect(client)

        assert calls == 1
        assert exc_info.value.status_code == 400
        backoff_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_image_rejection_is_fatal(self, backoff_sleep: AsyncMock) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(
                404, json={"error": {"message": "No endpoints found that support image input"}},
            )

        client = make_client(handler, fallback_models=["model-b"])

        with pytest.raises(UnsupportedModalityError) as exc_info:
            await collect(client, IMAGE_MESSAGES)

        assert calls == 1
        assert "does not support image input" in str(exc_info.value)
        backoff_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_404_without_image_is_a_plain_http_error(self, backoff_sleep: AsyncMock) -> None:
        client = make_client(
            lambda request: httpx.Response(
                404, json={"error": {"message": "No endpoints found that support image input"}},
            ),
        )

        with pytest.raises(ProviderHTTPError) as exc_info:
            await collect(client, TEXT_MESSAGES)

        assert not isinstance(exc_info.value, UnsupportedModalityError)

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, backoff_sleep: AsyncMock) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return sse_response(tool_call_lines())

        client = make_client(handler, fallback_models=["model-b"])
        events = await collect(client)

        assert calls == 2
        backoff_sleep.assert_awaited_once()
        assert of_type(events, ArgumentsDone)

    @pytest.mark.asyncio
    async def test_transport_error_on_last_attempt_raises(self, backoff_sleep: AsyncMock) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            await collect(client)

        assert not isinstance(exc_info.value, ProviderHTTPError)
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_max_attempts_caps_the_model_list(self, backoff_sleep: AsyncMock) -> None:
        models_seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            models_seen.append(json.loads(request.content)["model"])
            return httpx.Response(500, text="boom")

        client = make_client(handler, fallback_models=["model-b", "model-c"], max_attempts=2)

        with pytest.raises(ProviderHTTPError):
            await collect(client)

        assert models_seen == ["model-a", "model-b"]
        assert backoff_sleep.await_count == 1


class TestCancellation:
    """Real sleeps: cancellation must stop the client without another attempt."""

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_does_not_retry(self) -> None:
        requests = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal requests
            requests += 1
            return httpx.Response(429, text="rate limited")

        client = make_client(handler, fallback_models=["model-b"], base_delay_seconds=3600)
        seen: list[StreamEvent] = []

        async def consume() -> None:
            async for event in client.stream(TEXT_MESSAGES, VIEWER_TOOLS):
                seen.append(event)

        task = asyncio.create_task(consume())
        for _ in range(500):
            if ModelSelected(model="model-a", attempt=1, status=429) in seen:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert requests == 1
        assert ModelSelected(model="model-b", attempt=2) not in seen

    @pytest.mark.asyncio
    async def test_cancel_during_request_does_not_retry(self) -> None:
        requests = 0
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal requests
            requests += 1
            started.set()
            await asyncio.sleep(3600)
            return httpx.Response(200)

        client = make_client(handler, fallback_models=["model-b"])
        task = asyncio.create_task(collect(client))
        await asyncio.wait_for(started.wait(), timeout=5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert requests == 1


class TestClientConfig:

    def test_requires_a_model(self) -> None:
        with pytest.raises(ValueError):
            StreamingToolCallClient(api_key="k", model="")

    def test_attempt_limit_never_exceeds_models(self) -> None:
        client = StreamingToolCallClient(api_key="k", model="a", fallback_models=["b"], max_attempts=5)
        assert client.attempt_limit == 2

    def test_from_settings(self) -> None:
        cfg = Settings(
            _env_file=None,
            openrouter_api_key="secret",
            openrouter_model="primary",
            openrouter_model_fallback="second, third,",
            openrouter_model_max_attempts=2,
            openrouter_base_url="https://example.test/",
        )
        client = StreamingToolCallClient.from_settings(cfg)

        assert client.models == ["primary", "second", "third"]
        assert client.attempt_limit == 2
        assert client.endpoint == "https://example.test/api/v1/chat/completions"


class TestHelpers:

    def test_backoff_doubles_per_attempt(self) -> None:
        assert backoff_delay(1.0, 0, jitter=1.0) == 1.0
        assert backoff_delay(1.0, 2, jitter=1.0) == 4.0
        assert backoff_delay(0.5, 3, jitter=1.2) == pytest.approx(4.8)

    def test_backoff_jitter_stays_in_range(self) -> None:
        for _ in range(50):
            assert 0.8 <= backoff_delay(1.0, 0) <= 1.2

    def test_messages_include_image(self) -> None:
        assert messages_include_image(IMAGE_MESSAGES) is True
        assert messages_include_image(TEXT_MESSAGES) is False
