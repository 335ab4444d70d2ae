"""Streaming primitives for provider responses.

Providers yield :class:`StreamChunk` objects.  The
:class:`StreamDecoder` folds them into accumulated text and reassembles
tool calls whose id, name and arguments arrive in fragments across
multiple chunks, keyed by the fragment ``index``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field

from palaver.accounting import Usage
from palaver.errors import DecodeError
from palaver.tools import ToolCallRequest


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    id_delta: str | None = None
    name_delta: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider."""

    text_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    usage: Usage | None = None
    finish_reason: str | None = None


@dataclass
class PartialToolCall:
    """Tool call under construction; every field is raw concatenated text."""

    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class DecodedResponse:
    """Everything a finished stream (or one-shot response) produced."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None


class StreamDecoder:
    """Pure reducer over an ordered chunk sequence.

    Feeding the same chunks in the same order always yields the same
    state, so a captured stream can be replayed without a connection.
    """

    def __init__(self) -> None:
        self.text = ""
        self.usage = Usage()
        self.finish_reason: str | None = None
        self._pending: dict[int, PartialToolCall] = {}

    @property
    def pending(self) -> dict[int, PartialToolCall]:
        return self._pending

    def feed(self, chunk: StreamChunk) -> None:
        if chunk.text_delta:
            self.text += chunk.text_delta
        for fragment in chunk.tool_call_fragments or ():
            self._feed_fragment(fragment)
        if chunk.usage is not None:
            # Providers report cumulative counts; the last report wins.
            self.usage = chunk.usage
        if chunk.finish_reason is not None:
            self.finish_reason = chunk.finish_reason

    def _feed_fragment(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = PartialToolCall()
        tc = self._pending[fragment.index]
        if fragment.id_delta:
            tc.id += fragment.id_delta
        if fragment.name_delta:
            tc.name += fragment.name_delta
        if fragment.arguments_delta:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> DecodedResponse:
        """Resolve every fragment buffer, in index order.

        Raises:
            DecodeError: A buffer has no name or its arguments are not a
                JSON object.
        """
        calls = [
            _resolve(index, self._pending[index])
            for index in sorted(self._pending)
        ]
        return DecodedResponse(
            text=self.text,
            tool_calls=calls,
            usage=self.usage,
            finish_reason=self.finish_reason,
        )


def _resolve(index: int, partial: PartialToolCall) -> ToolCallRequest:
    name = partial.name.strip()
    if not name:
        raise DecodeError(f"Tool call at index {index} has no name")
    raw = partial.arguments.strip()
    if not raw:
        arguments = {}
    else:
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(
                f"Tool call '{name}' at index {index} has malformed "
                f"arguments: {e}"
            ) from e
        if not isinstance(arguments, dict):
            raise DecodeError(
                f"Tool call '{name}' at index {index} arguments are "
                f"{type(arguments).__name__}, expected an object"
            )
    return ToolCallRequest(id=partial.id, name=name, arguments=arguments)


def decode(chunks: Iterable[StreamChunk]) -> DecodedResponse:
    """Replay *chunks* through a fresh decoder and finalize it."""
    decoder = StreamDecoder()
    for chunk in chunks:
        decoder.feed(chunk)
    return decoder.finalize()
