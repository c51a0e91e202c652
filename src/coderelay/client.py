import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import httpx
from pydantic import BaseModel, Field

from coderelay.errors import ConfigurationError, ParseError, TransportError
from coderelay.events import (
    ContentDelta,
    ContentStart,
    ReasoningDelta,
    ReasoningStart,
    StreamComplete,
    StreamError,
    StreamEvent,
    ToolCallDelta,
)
from coderelay.instrumentation import record_error, stream_span
from coderelay.message import Message, dump_messages
from coderelay.sse import SSEDecoder
from coderelay.streaming import (
    ContentText,
    ReasoningText,
    StreamResult,
    ToolCallAccumulator,
    ToolCallFragment,
    parse_frame,
)
from coderelay.tools import ToolDefinition, dump_tools

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    """A streaming chat completion request.

    ``extra_body`` is merged into the JSON body for vendor extensions such
    as GLM's ``tool_stream``.
    """

    model: str
    messages: list[Message | dict]
    tools: list[ToolDefinition | dict] | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    extra_body: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict:
        payload = {
            "model": self.model,
            "messages": dump_messages(self.messages),
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if self.tools:
            payload["tools"] = dump_tools(self.tools)
        payload.update(self.extra_body)
        return payload


@dataclass
class StreamCallbacks:
    """Optional handlers for :meth:`StreamingClient.consume`.

    Each handler may be a plain function or a coroutine function.
    """

    on_reasoning_start: Callable | None = None
    on_reasoning: Callable | None = None
    on_content_start: Callable | None = None
    on_content: Callable | None = None
    on_tool_call: Callable | None = None
    on_complete: Callable | None = None
    on_error: Callable | None = None


async def _fire(handler: Callable | None, *args) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class StreamingClient:
    """Consumes an OpenAI-style chunked chat completion stream.

    ``consume()`` drains ``iter()`` and forwards each event to its callback.
    ``iter()`` is the typed entry point: it yields :mod:`coderelay.events`
    in exactly the order the deltas were decoded from the wire.

    Each call owns its own accumulator, so one client may serve many
    concurrent streams. The client never retries.

    Args:
        base_url: Provider root, e.g. ``https://api.z.ai/api/paas/v4``.
        api_key: Bearer token. A missing key fails every call with
            :class:`ConfigurationError` before any request is sent.
        http_client: Optional shared ``httpx.AsyncClient``. When omitted a
            client is created per stream and closed afterwards.
        path: Completion endpoint below ``base_url``.
        timeout: Read timeout in seconds between chunks.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        http_client: httpx.AsyncClient | None = None,
        path: str = "/chat/completions",
        timeout: float = 180.0,
    ):
        self.url = base_url.rstrip("/") + path
        self.api_key = api_key
        self.timeout = timeout
        self._http_client = http_client

    def _check_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError(f"API key not configured for {self.url}")

    async def consume(
        self, request: ChatRequest, callbacks: StreamCallbacks | None = None,
    ) -> StreamResult:
        """Stream *request* to completion, invoking *callbacks* on the way.

        Raises:
            ConfigurationError: If no API key is configured.
            TransportError: If the transport fails; ``on_error`` has been
                called once beforehand.
        """
        self._check_configured()
        callbacks = callbacks or StreamCallbacks()
        events = self.iter(request)
        # Only one of on_complete and on_error fires per call.
        terminal_fired = False
        try:
            async for event in events:
                if isinstance(event, ReasoningStart):
                    await _fire(callbacks.on_reasoning_start)
                elif isinstance(event, ReasoningDelta):
                    await _fire(callbacks.on_reasoning, event.text)
                elif isinstance(event, ContentStart):
                    await _fire(callbacks.on_content_start)
                elif isinstance(event, ContentDelta):
                    await _fire(callbacks.on_content, event.text)
                elif isinstance(event, ToolCallDelta):
                    await _fire(callbacks.on_tool_call, event.call)
                elif isinstance(event, StreamComplete):
                    terminal_fired = True
                    await _fire(callbacks.on_complete, event.result)
                    return event.result
                elif isinstance(event, StreamError):
                    terminal_fired = True
                    await _fire(callbacks.on_error, event.error)
                    raise event.error
        except asyncio.CancelledError:
            if not terminal_fired:
                await _fire(callbacks.on_error, TransportError("stream cancelled"))
            raise
        finally:
            await events.aclose()
        raise TransportError("stream ended without a terminal event")

    async def iter(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Yield stream events for *request*.

        The last event is always either :class:`StreamComplete` or
        :class:`StreamError`.
        """
        self._check_configured()
        async with stream_span(self.url, request.model) as span:
            try:
                if self._http_client is not None:
                    async for event in self._stream(self._http_client, request):
                        yield event
                else:
                    async with httpx.AsyncClient(
                        timeout=httpx.Timeout(self.timeout, connect=10.0),
                    ) as client:
                        async for event in self._stream(client, request):
                            yield event
            except TransportError as e:
                logger.error(f"Stream from {self.url} failed: {e}")
                record_error(span, e)
                yield StreamError(error=e)

    async def _stream(
        self, client: httpx.AsyncClient, request: ChatRequest,
    ) -> AsyncIterator[StreamEvent]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "text/event-stream",
        }
        state = _StreamState()
        try:
            async with client.stream(
                "POST", self.url, json=request.to_payload(), headers=headers,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"HTTP {response.status_code}: {body[:200]}",
                        status_code=response.status_code,
                    )

                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for payload in decoder.feed(chunk):
                        for event in state.handle(payload):
                            yield event
                        if state.finished:
                            return
                    if decoder.done:
                        break
                for payload in decoder.flush():
                    for event in state.handle(payload):
                        yield event
                    if state.finished:
                        return
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        # Clean end of stream without a finish reason.
        yield state.complete(None)


class _StreamState:
    """Per-stream channel buffers, start flags and tool-call accumulator."""

    def __init__(self) -> None:
        self.reasoning: list[str] = []
        self.content: list[str] = []
        self.reasoning_started = False
        self.content_started = False
        self.tool_calls = ToolCallAccumulator()
        self.finished = False

    def handle(self, payload: str) -> list[StreamEvent]:
        try:
            frame = parse_frame(payload)
        except ParseError as e:
            logger.warning(f"Skipping stream frame: {e}")
            return []

        events: list[StreamEvent] = []
        for delta in frame.deltas:
            if isinstance(delta, ReasoningText):
                if not self.reasoning_started:
                    self.reasoning_started = True
                    events.append(ReasoningStart())
                self.reasoning.append(delta.text)
                events.append(ReasoningDelta(text=delta.text))
            elif isinstance(delta, ContentText):
                if not self.content_started:
                    self.content_started = True
                    events.append(ContentStart())
                self.content.append(delta.text)
                events.append(ContentDelta(text=delta.text))
            elif isinstance(delta, ToolCallFragment):
                call = self.tool_calls.merge(delta)
                events.append(ToolCallDelta(index=delta.index, call=call))

        if frame.finished:
            events.append(self.complete(frame.finish_reason))
        return events

    def complete(self, finish_reason: str | None) -> StreamComplete:
        self.finished = True
        return StreamComplete(result=StreamResult(
            reasoning="".join(self.reasoning),
            content="".join(self.content),
            tool_calls=MappingProxyType(self.tool_calls.snapshot()),
            finish_reason=finish_reason,
        ))
