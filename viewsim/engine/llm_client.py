"""Streaming tool-call client for OpenRouter-compatible chat completion APIs.

Talks server-sent events over httpx, falls back across a list of models with
exponential backoff, and turns provider chunks into typed stream events.

This is the ONLY file that talks to LLM APIs. Mock this for tests.
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from structlog.typing import FilteringBoundLogger

from viewsim.config import Settings
from viewsim.core.exceptions import (
    ProviderError,
    ProviderHTTPError,
    UnsupportedModalityError,
)
from viewsim.engine.types import (
    ArgumentsDone,
    Finish,
    FunctionCall,
    ModelSelected,
    RawEvent,
    StreamEvent,
    TextDelta,
)

DEFAULT_BASE_URL = "https://openrouter.ai"
CHAT_COMPLETIONS_PATH = "/api/v1/chat/completions"
DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
TOOL_CALLS_FINISH_REASON = "tool_calls"
IMAGE_UNSUPPORTED_HINT = "support image input"

JITTER_RANGE = (0.8, 1.2)


def messages_include_image(messages: list[dict[str, Any]]) -> bool:
    for message in messages:
        content = message.get("content")
        if not isinstance(content, list):
            continue
        if any(isinstance(part, dict) and part.get("type") == "image_url" for part in content):
            return True
    return False


def backoff_delay(base_delay: float, attempt: int, jitter: float | None = None) -> float:
    """``base_delay * 2**attempt`` scaled by a jitter factor in [0.8, 1.2]."""
    if jitter is None:
        jitter = random.uniform(*JITTER_RANGE)
    return base_delay * (2 ** attempt) * jitter


def _try_parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _provider_error_message(body: str) -> str | None:
    """Pull ``error.message`` out of a provider error body, if there is one."""
    parsed = _try_parse_json(body)
    if not isinstance(parsed, dict):
        return None
    error = parsed.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def _recover_tool_name(arguments: str) -> str | None:
    # Some providers omit the name entirely when the arguments are short
    parsed = _try_parse_json(arguments)
    if not isinstance(parsed, dict):
        return None
    for key in ("name", "tool"):
        if isinstance(parsed.get(key), str):
            return parsed[key]
    return None


@dataclass
class _PartialToolCall:
    call_id: str | None = None
    name: str | None = None
    arguments: str = ""


class SSEEventParser:
    """Turns ``data:`` lines of one response into stream events.

    One parser per response; tool-call fragments are merged by their index.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._calls: dict[int, _PartialToolCall] = {}

    def feed(self, chunk: str) -> Iterator[StreamEvent]:
        """Consume a text chunk; a trailing partial line waits for the next chunk."""
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            yield from self._parse_line(line)

    def flush(self) -> Iterator[StreamEvent]:
        line, self._buffer = self._buffer, ""
        yield from self._parse_line(line)

    @property
    def full_arguments(self) -> str:
        return "".join(self._calls[i].arguments for i in sorted(self._calls))

    def _parse_line(self, line: str) -> Iterator[StreamEvent]:
        trimmed = line.strip()
        if not trimmed.startswith(DATA_PREFIX):
            return
        payload = trimmed[len(DATA_PREFIX):].strip()
        if not payload or payload == DONE_MARKER:
            return

        parsed = _try_parse_json(payload)
        if not isinstance(parsed, dict):
            # Corrupt keep-alive fragments show up now and then
            return

        yield RawEvent(payload=parsed)

        choices = parsed.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            return

        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                yield TextDelta(text=content)

            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list):
                for fragment in tool_calls:
                    if isinstance(fragment, dict):
                        yield from self._merge_tool_call(fragment)

        finish_reason = choice.get("finish_reason")
        if isinstance(finish_reason, str) and finish_reason:
            yield Finish(reason=finish_reason)
            if finish_reason == TOOL_CALLS_FINISH_REASON:
                yield ArgumentsDone(arguments=self.full_arguments)

    def _merge_tool_call(self, fragment: dict[str, Any]) -> Iterator[StreamEvent]:
        index = fragment.get("index") if isinstance(fragment.get("index"), int) else 0
        function = fragment.get("function") if isinstance(fragment.get("function"), dict) else {}

        chunk_name = function.get("name")
        if not isinstance(chunk_name, str) or not chunk_name:
            chunk_name = fragment.get("name") if isinstance(fragment.get("name"), str) else None
        chunk_args = function.get("arguments") if isinstance(function.get("arguments"), str) else ""

        call = self._calls.setdefault(index, _PartialToolCall())
        if isinstance(fragment.get("id"), str):
            call.call_id = fragment["id"]
        if chunk_name:
            call.name = chunk_name
        call.arguments += chunk_args

        if call.name is None:
            call.name = _recover_tool_name(call.arguments)
        if call.name:
            yield FunctionCall(
                index=index,
                name=call.name,
                arguments=call.arguments,
                call_id=call.call_id,
            )


class StreamingToolCallClient:
    """Streams tool-call decisions, falling back across models on transient failures.

    Holds only immutable configuration; every ``stream()`` call keeps its own
    parsing state, so one instance is safely shared by concurrent agents.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        fallback_models: list[str] | None = None,
        max_attempts: int | None = None,
        base_url: str = DEFAULT_BASE_URL,
        base_delay_seconds: float = 1.0,
        http_client: httpx.AsyncClient | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self.api_key = api_key
        self.models = [m for m in [model, *(fallback_models or [])] if m]
        if not self.models:
            raise ValueError("StreamingToolCallClient needs at least one model")
        self.max_attempts = max_attempts or len(self.models)
        self.base_url = base_url.rstrip("/")
        self.base_delay_seconds = base_delay_seconds
        # No client-side timeout: deadlines belong to the caller's cancellation
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(None))
        self._owns_http = http_client is None
        self.logger = logger or structlog.get_logger()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        logger: FilteringBoundLogger | None = None,
    ) -> StreamingToolCallClient:
        return cls(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            fallback_models=settings.fallback_models,
            max_attempts=settings.openrouter_model_max_attempts,
            base_url=settings.openrouter_base_url,
            base_delay_seconds=settings.retry_base_delay_seconds,
            http_client=http_client,
            logger=logger,
        )

    @property
    def attempt_limit(self) -> int:
        return min(self.max_attempts, len(self.models))

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{CHAT_COMPLETIONS_PATH}"

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> StreamingToolCallClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: str | dict[str, Any] = "auto",
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one chat completion, yielding normalized events until the provider finishes.

        Raises:
            UnsupportedModalityError: the model rejected image input (never retried)
            ProviderHTTPError: non-retryable status, or retryable status on the last attempt
            ProviderError: transport failure on the last attempt
        """
        has_image = messages_include_image(messages)
        attempts = self.attempt_limit

        for attempt in range(attempts):
            model = self.models[attempt]
            is_last = attempt + 1 >= attempts
            yield ModelSelected(model=model, attempt=attempt + 1)

            body: dict[str, Any] = {
                "model": model,
                "messages": messages,
                "tools": tools,
                "tool_choice": tool_choice,
                "stream": True,
            }
            if max_output_tokens is not None:
                body["max_tokens"] = max_output_tokens

            self.logger.debug(
                "llm_stream_request",
                model=model,
                attempt=attempt + 1,
                message_count=len(messages),
                has_image=has_image,
            )

            try:
                async with self._http.stream(
                    "POST", self.endpoint, json=body, headers=self._headers(),
                ) as response:
                    status = response.status_code

                    if not response.is_success:
                        text = (await response.aread()).decode("utf-8", errors="replace")
                        error_message = _provider_error_message(text)

                        if (
                            status == 404
                            and has_image
                            and error_message
                            and IMAGE_UNSUPPORTED_HINT in error_message.lower()
                        ):
                            raise UnsupportedModalityError(model, error_message)

                        if status != 429 and status < 500:
                            raise ProviderHTTPError(model, status, response.reason_phrase, text)

                        yield ModelSelected(model=model, attempt=attempt + 1, status=status)
                        self.logger.warning(
                            "llm_retryable_status",
                            model=model,
                            attempt=attempt + 1,
                            status=status,
                            last_attempt=is_last,
                        )
                        if is_last:
                            raise ProviderHTTPError(model, status, response.reason_phrase, text)
                    else:
                        yield ModelSelected(model=model, attempt=attempt + 1, status=status)
                        parser = SSEEventParser()
                        async for chunk in response.aiter_text():
                            for event in parser.feed(chunk):
                                yield event
                        for event in parser.flush():
                            yield event

                        self.logger.debug("llm_stream_completed", model=model, attempt=attempt + 1)
                        return

            except httpx.HTTPError as exc:
                self.logger.warning(
                    "llm_transport_error",
                    model=model,
                    attempt=attempt + 1,
                    error=str(exc),
                    last_attempt=is_last,
                )
                if is_last:
                    raise ProviderError(
                        f"OpenRouter request failed for model \"{model}\": {exc}",
                        model=model,
                    ) from exc

            await asyncio.sleep(backoff_delay(self.base_delay_seconds, attempt))

        raise ProviderError("OpenRouter: all models failed or were exhausted")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
