"""Normalise tool calls out of a finished model response.

Two encodings exist.  Native backends return structured tool calls which
the :class:`~palaver.streaming.StreamDecoder` has already reassembled;
they only need validating.  Inline-tagged backends write the calls into
their text::

    Let me check.
    <get_weather>
    <city>Athens</city>
    <unit>celsius</unit>
    </get_weather>

The outer marker names the tool and each inner marker names one
argument.  Marker content is taken as raw text; there are no escaping
rules, so anything that does not parse cleanly is a :class:`DecodeError`
rather than a guess.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from palaver.capabilities import ProviderCapabilities, ToolCallFormat
from palaver.errors import DecodeError
from palaver.tools import ToolCallRequest

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<(/?)([A-Za-z_][\w.-]*)>")


@dataclass
class Extraction:
    """Prose and tool calls separated from one response."""

    text: str
    requests: list[ToolCallRequest] = field(default_factory=list)


def synthesize_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallExtractor:
    """Produce validated :class:`ToolCallRequest` lists for one provider.

    Args:
        capabilities: Descriptor of the backend that produced the output.
        tool_names: Names of the tools offered in the request.  With
            inline tagging only these names open a call; ``None`` treats
            every tag as a tool marker.
    """

    def __init__(
        self,
        capabilities: ProviderCapabilities,
        tool_names: Iterable[str] | None = None,
    ):
        self.capabilities = capabilities
        self.tool_names = set(tool_names) if tool_names is not None else None

    def extract(
        self, text: str, native_calls: list[ToolCallRequest] | None = None,
    ) -> Extraction:
        if self.capabilities.tool_call_format is ToolCallFormat.INLINE_TAGGED:
            return parse_inline_tool_calls(text, self.tool_names)
        return Extraction(text=text, requests=self._normalise_native(native_calls or []))

    def _normalise_native(self, calls: list[ToolCallRequest]) -> list[ToolCallRequest]:
        seen: set[str] = set()
        requests: list[ToolCallRequest] = []
        for call in calls:
            if not call.name:
                raise DecodeError("Native tool call without a name")
            if not isinstance(call.arguments, dict):
                raise DecodeError(
                    f"Native tool call '{call.name}' arguments are not an object"
                )
            call_id = call.id or synthesize_call_id()
            if call_id in seen:
                logger.debug(f"Dropping duplicate tool call id {call_id}")
                continue
            seen.add(call_id)
            name = self.capabilities.resolve_tool_name(
                call.name, self.tool_names or (),
            )
            requests.append(ToolCallRequest(id=call_id, name=name, arguments=call.arguments))
        return requests


def parse_inline_tool_calls(
    text: str, tool_names: set[str] | None = None,
) -> Extraction:
    """Split *text* into prose and inline-tagged tool calls.

    Raises:
        DecodeError: On unclosed, mismatched or stray markers.
    """
    prose: list[str] = []
    requests: list[ToolCallRequest] = []
    pos = 0
    while True:
        match = _next_tool_tag(text, pos, tool_names)
        if match is None:
            prose.append(text[pos:])
            break
        closing, name = match.group(1), match.group(2)
        if closing:
            raise DecodeError(
                f"Closing marker </{name}> at offset {match.start()} "
                f"has no opening marker"
            )
        prose.append(text[pos:match.start()])
        arguments, pos = _parse_call_body(text, match.end(), name)
        requests.append(
            ToolCallRequest(id=synthesize_call_id(), name=name, arguments=arguments)
        )
    return Extraction(text="".join(prose), requests=requests)


def _next_tool_tag(text: str, pos: int, tool_names: set[str] | None):
    for match in _TAG.finditer(text, pos):
        if tool_names is None or match.group(2) in tool_names:
            return match
    return None


def _parse_call_body(text: str, start: int, name: str) -> tuple[dict[str, Any], int]:
    """Parse argument markers up to ``</name>``; return (args, end offset)."""
    close = f"</{name}>"
    arguments: dict[str, Any] = {}
    cursor = start
    while True:
        cursor = _skip_whitespace(text, cursor)
        if cursor >= len(text):
            raise DecodeError(f"Tool marker <{name}> is never closed")
        if text.startswith(close, cursor):
            return arguments, cursor + len(close)

        tag = _TAG.match(text, cursor)
        if tag is None:
            if arguments:
                raise DecodeError(
                    f"Unexpected text inside <{name}> at offset {cursor}"
                )
            end = text.find(close, cursor)
            if end == -1:
                raise DecodeError(f"Tool marker <{name}> is never closed")
            return _parse_freeform(text[cursor:end]), end + len(close)

        if tag.group(1):
            raise DecodeError(
                f"Mismatched marker </{tag.group(2)}> inside <{name}>"
            )
        key = tag.group(2)
        key_close = f"</{key}>"
        value_end = text.find(key_close, tag.end())
        if value_end == -1:
            raise DecodeError(f"Argument marker <{key}> in <{name}> is never closed")
        value = text[tag.end():value_end]
        if close in value:
            raise DecodeError(f"Marker </{name}> closes before argument <{key}>")
        value = value.strip()
        if key not in arguments:
            arguments[key] = value
        elif isinstance(arguments[key], list):
            arguments[key].append(value)
        else:
            arguments[key] = [arguments[key], value]
        cursor = value_end + len(key_close)


def _parse_freeform(body: str) -> dict[str, Any]:
    body = body.strip()
    if not body:
        return {}
    if body.startswith("{"):
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return {"input": body}


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def render_inline_tool_instructions(tools: list[dict]) -> str:
    """System-prompt section teaching an inline-tagged model the markers."""
    lines = [
        "You can call tools. To call one, write its name as a tag and each "
        "argument as a nested tag, for example:",
        "<tool_name>",
        "<argument_name>value</argument_name>",
        "</tool_name>",
        "Write nothing else inside the tool tag. Results arrive in the next "
        "message inside <tool_result> tags.",
        "",
        "Available tools:",
    ]
    for t in tools:
        params = t.get("parameters", {}).get("properties", {})
        required = set(t.get("parameters", {}).get("required", []))
        lines.append(f"- {t['name']}: {t.get('description') or ''}".rstrip())
        for param, spec in params.items():
            flag = "required" if param in required else "optional"
            desc = spec.get("description") or ""
            lines.append(
                f"    <{param}> ({spec.get('type', 'string')}, {flag}) {desc}".rstrip()
            )
    return "\n".join(lines)


def render_inline_tool_result(name: str, call_id: str, content: str,
                              success: bool = True) -> str:
    status = "ok" if success else "error"
    return (
        f'<tool_result name="{name}" id="{call_id}" status="{status}">\n'
        f"{content}\n</tool_result>"
    )
