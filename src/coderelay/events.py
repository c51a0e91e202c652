"""Events emitted while consuming a chat completion stream."""

from __future__ import annotations

from dataclasses import dataclass, field

from coderelay.streaming import AccumulatedToolCall, StreamResult


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class ReasoningStart(StreamEvent):
    """First non-empty reasoning text of the stream is about to arrive."""


@dataclass
class ReasoningDelta(StreamEvent):
    text: str = ""


@dataclass
class ContentStart(StreamEvent):
    """First non-empty answer text of the stream is about to arrive."""


@dataclass
class ContentDelta(StreamEvent):
    text: str = ""


@dataclass
class ToolCallDelta(StreamEvent):
    """Current snapshot of a tool call after one more fragment.

    The same logical call is emitted repeatedly with growing arguments.
    """

    index: int = 0
    call: AccumulatedToolCall | None = None


@dataclass
class StreamComplete(StreamEvent):
    """Terminal event of a successful stream."""

    result: StreamResult = field(default_factory=StreamResult)


@dataclass
class StreamError(StreamEvent):
    """Terminal event of a failed stream."""

    error: Exception | None = None
