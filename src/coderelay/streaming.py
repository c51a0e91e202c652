"""Streaming primitives for chat completion streams.

A decoded ``data:`` payload becomes a :class:`StreamFrame` holding ordered
deltas for three channels: reasoning text, answer content and tool-call
fragments. The :class:`ToolCallAccumulator` reassembles tool calls whose
arguments arrive in fragments across many frames.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from coderelay.errors import ParseError


@dataclass(frozen=True)
class ReasoningText:
    text: str


@dataclass(frozen=True)
class ContentText:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk.

    ``id`` and ``function_name`` normally arrive only on the first
    fragment for an index.
    """

    index: int
    id: str | None = None
    function_name: str | None = None
    arguments_chunk: str = ""
    type: str | None = None


Delta = Union[ReasoningText, ContentText, ToolCallFragment]


@dataclass(frozen=True)
class StreamFrame:
    """One decoded protocol frame."""

    deltas: list[Delta] = field(default_factory=list)
    finished: bool = False
    finish_reason: str | None = None


@dataclass(frozen=True)
class AccumulatedToolCall:
    """Snapshot of a tool call assembled from fragments."""

    id: str
    function_name: str = ""
    arguments: str = ""
    type: str = "function"

    def parsed_arguments(self) -> Any:
        """Decode ``arguments``; only meaningful once the stream completed."""
        return json.loads(self.arguments) if self.arguments else {}

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "function": {
                "name": self.function_name,
                "arguments": self.arguments,
            },
        }


@dataclass(frozen=True)
class StreamResult:
    """Terminal aggregate of one stream."""

    reasoning: str = ""
    content: str = ""
    tool_calls: Mapping[int, AccumulatedToolCall] = field(
        default_factory=lambda: MappingProxyType({})
    )
    finish_reason: str | None = None


class ToolCallAccumulator:
    """Assembles tool calls from streaming fragments, keyed by index.

    Scoped to one stream. ``merge`` never validates the JSON it collects:
    arguments are only expected to parse once the stream has completed.
    """

    def __init__(self) -> None:
        self._calls: dict[int, AccumulatedToolCall] = {}

    def merge(self, fragment: ToolCallFragment) -> AccumulatedToolCall:
        current = self._calls.get(fragment.index)
        if current is None:
            current = AccumulatedToolCall(
                id=fragment.id or f"call_{fragment.index}",
                function_name=fragment.function_name or "",
                arguments=fragment.arguments_chunk,
                type=fragment.type or "function",
            )
        else:
            current = replace(
                current,
                function_name=_merge_name(current.function_name, fragment.function_name),
                arguments=current.arguments + fragment.arguments_chunk,
            )
        self._calls[fragment.index] = current
        return current

    def snapshot(self) -> dict[int, AccumulatedToolCall]:
        """Return the current tool calls in index order."""
        return {i: self._calls[i] for i in sorted(self._calls)}


def _merge_name(stored: str, incoming: str | None) -> str:
    # Providers either send the full name once, repeat it, or split it.
    if not incoming or incoming == stored:
        return stored
    return stored + incoming


# ---------------------------------------------------------------------------
# Wire payload
# ---------------------------------------------------------------------------

class _WireFunction(BaseModel):
    name: str | None = None
    arguments: str | None = None


class _WireToolCall(BaseModel):
    index: int
    id: str | None = None
    type: str | None = None
    function: _WireFunction | None = None


class _WireDelta(BaseModel):
    reasoning_content: str | None = None
    content: str | None = None
    tool_calls: list[_WireToolCall] | None = None


class _WireChoice(BaseModel):
    delta: _WireDelta | None = None
    finish_reason: str | None = None


class _WireChunk(BaseModel):
    choices: list[_WireChoice] = []


def parse_frame(payload: str) -> StreamFrame:
    """Decode one ``data:`` payload into a :class:`StreamFrame`.

    Raises:
        ParseError: If the payload is not JSON or not a chunk object.
    """
    try:
        chunk = _WireChunk.model_validate_json(payload)
    except ValidationError as e:
        raise ParseError(f"malformed stream frame: {e.errors()[0]['msg']}") from e

    if not chunk.choices:
        return StreamFrame()

    choice = chunk.choices[0]
    deltas: list[Delta] = []
    delta = choice.delta
    if delta is not None:
        if delta.reasoning_content:
            deltas.append(ReasoningText(delta.reasoning_content))
        if delta.content:
            deltas.append(ContentText(delta.content))
        for tc in delta.tool_calls or []:
            function = tc.function or _WireFunction()
            deltas.append(ToolCallFragment(
                index=tc.index,
                id=tc.id,
                function_name=function.name,
                arguments_chunk=function.arguments or "",
                type=tc.type,
            ))

    return StreamFrame(
        deltas=deltas,
        finished=choice.finish_reason is not None,
        finish_reason=choice.finish_reason,
    )
