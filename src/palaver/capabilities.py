"""Static capability descriptors for each backend family."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum


class ToolCallFormat(Enum):
    NATIVE = "native"
    INLINE_TAGGED = "inline_tagged"


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a backend supports.

    Consulted once per request by the adapter and once per round by the
    extractor.  Nothing else in palaver branches on provider identity.

    Args:
        supports_vision: Whether image content items can be sent.
        supports_tools: Whether the backend can request tool calls at all.
        supports_streaming: Whether the backend can stream responses.
        supports_system_messages: Whether a system role is accepted.
        max_tool_name_length: Longest tool name the backend accepts.
        tool_call_format: How tool calls are encoded in responses.
    """

    supports_vision: bool = False
    supports_tools: bool = False
    supports_streaming: bool = True
    supports_system_messages: bool = True
    max_tool_name_length: int | None = None
    tool_call_format: ToolCallFormat = ToolCallFormat.NATIVE

    def wire_tool_name(self, name: str) -> str:
        """Return the name sent to the backend for tool *name*.

        Names over ``max_tool_name_length`` are cut and suffixed with a
        short digest so distinct long names stay distinct.
        """
        limit = self.max_tool_name_length
        if limit is None or len(name) <= limit:
            return name
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        return f"{name[:limit - 9]}_{digest}"

    def resolve_tool_name(self, wire_name: str, tool_names) -> str:
        """Map a name returned by the backend back to a registered name."""
        if self.max_tool_name_length is None:
            return wire_name
        for name in tool_names:
            if self.wire_tool_name(name) == wire_name:
                return name
        return wire_name


PROVIDER_CAPABILITIES: dict[str, ProviderCapabilities] = {
    "openai": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "anthropic": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "openrouter": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "gemini": ProviderCapabilities(supports_vision=True, supports_tools=True),
    "requesty": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "deepinfra": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "mistral": ProviderCapabilities(
        supports_vision=True, supports_tools=True, max_tool_name_length=64,
    ),
    "deepseek": ProviderCapabilities(supports_tools=False),
    "lmstudio": ProviderCapabilities(supports_vision=True, supports_tools=True),
    "ollama": ProviderCapabilities(supports_vision=True, supports_tools=True),
    "vllm": ProviderCapabilities(supports_tools=True),
    "llamacpp": ProviderCapabilities(
        supports_tools=True,
        tool_call_format=ToolCallFormat.INLINE_TAGGED,
    ),
    "replicate": ProviderCapabilities(supports_streaming=False),
    "n8n": ProviderCapabilities(),
}


def get_capabilities(provider_id: str) -> ProviderCapabilities:
    """Look up the descriptor for *provider_id*.

    Unknown ids get a conservative text-only, streaming descriptor.
    """
    return PROVIDER_CAPABILITIES.get(provider_id, ProviderCapabilities())
