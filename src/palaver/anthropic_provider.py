"""Anthropic Messages API adapter.

Anthropic takes the system prompt as a separate parameter, sends tool
calls as ``tool_use`` content blocks and expects their results back as
``tool_result`` blocks inside a user message.  While streaming, each
``tool_use`` block's index becomes the fragment index and its
``input_json_delta`` events carry the argument fragments.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from palaver.accounting import Usage
from palaver.capabilities import ProviderCapabilities
from palaver.errors import (
    TRANSPORT_ERRORS,
    ProviderError,
    ProviderErrorKind,
    classify_sdk_error,
)
from palaver.message import (
    ImageContent,
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from palaver.provider import ChatRequest, ModelProvider, close_stream
from palaver.streaming import DecodedResponse, StreamChunk, ToolCallFragment
from palaver.tools import ToolCallRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(ModelProvider):
    """Adapter for Anthropic's Messages API.

    Args:
        api_key: API key, ``ANTHROPIC_API_KEY`` when omitted.
        base_url: Alternative API root.
        capabilities: Overrides the registry descriptor.
        timeout: Per-request timeout in seconds.
        max_retries: Retries performed by the SDK client.
    """

    provider_id = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        capabilities: ProviderCapabilities | None = None,
        timeout: float = 600.0,
        max_retries: int = 5,
    ):
        super().__init__(capabilities)
        client_kwargs: dict[str, Any] = {
            "api_key": api_key or os.getenv("ANTHROPIC_API_KEY"),
            "timeout": timeout,
            "max_retries": max_retries,
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        self.client = AsyncAnthropic(**client_kwargs)

    # -- request mapping -------------------------------------------------

    def _build_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        request = self.prepare_request(request)
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self._convert_messages(request.messages),
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.tools:
            kwargs["tools"] = [
                {
                    "name": t["name"],
                    "description": t.get("description") or "",
                    "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
                }
                for t in request.tools
            ]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return kwargs

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message.role is MessageRole.SYSTEM:
                # Only the call-time system prompt is sent; stray system
                # messages in history are passed on as user text.
                converted.append({"role": "user", "content": message.text})
                continue
            entry = self._convert_message(message)
            if (
                isinstance(message, ToolCallResultMessage)
                and converted
                and converted[-1]["role"] == "user"
                and isinstance(converted[-1]["content"], list)
                and all(b.get("type") == "tool_result" for b in converted[-1]["content"])
            ):
                converted[-1]["content"].extend(entry["content"])
            else:
                converted.append(entry)
        return converted

    def _convert_message(self, message: Message) -> dict[str, Any]:
        if isinstance(message, ToolCallResultMessage):
            return {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.tool_call_id,
                        "content": message.text,
                        "is_error": not message.success,
                    }
                ],
            }
        if isinstance(message, ToolCallRequestMessage):
            blocks: list[dict[str, Any]] = []
            if message.text:
                blocks.append({"type": "text", "text": message.text})
            for tc in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": self.capabilities.wire_tool_name(tc.name),
                    "input": tc.arguments,
                })
            return {"role": "assistant", "content": blocks}
        if message.images:
            blocks = []
            for item in message.content:
                if isinstance(item, ImageContent):
                    blocks.append(_image_block(item.image_ref))
                else:
                    blocks.append({"type": "text", "text": item.text})
            return {"role": message.role.value, "content": blocks}
        return {"role": message.role.value, "content": message.text}

    # -- calls -----------------------------------------------------------

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(request)
        try:
            response = await self.client.messages.create(stream=True, **kwargs)
        except anthropic.APIError as e:
            raise classify_sdk_error(e, anthropic, self.provider_id) from e

        input_tokens = 0
        try:
            async for event in response:
                if event.type == "message_start":
                    input_tokens = getattr(event.message.usage, "input_tokens", 0) or 0
                    continue
                chunk = self._convert_event(event, input_tokens)
                if chunk is not None:
                    yield chunk
        except (anthropic.APIError, *TRANSPORT_ERRORS) as e:
            raise classify_sdk_error(e, anthropic, self.provider_id) from e
        finally:
            await close_stream(response)

    def _convert_event(self, event, input_tokens: int) -> StreamChunk | None:
        if event.type == "content_block_start":
            block = event.content_block
            if block.type == "tool_use":
                return StreamChunk(tool_call_fragments=[
                    ToolCallFragment(index=event.index, id_delta=block.id, name_delta=block.name)
                ])
            if block.type == "text" and getattr(block, "text", ""):
                return StreamChunk(text_delta=block.text)
            return None
        if event.type == "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return StreamChunk(text_delta=delta.text)
            if delta.type == "input_json_delta":
                return StreamChunk(tool_call_fragments=[
                    ToolCallFragment(index=event.index, arguments_delta=delta.partial_json)
                ])
            return None
        if event.type == "message_delta":
            output_tokens = getattr(getattr(event, "usage", None), "output_tokens", 0)
            return StreamChunk(
                usage=Usage.of(input_tokens, output_tokens),
                finish_reason=getattr(event.delta, "stop_reason", None),
            )
        if event.type == "error":
            raise ProviderError(
                ProviderErrorKind.SERVER_ERROR,
                str(getattr(event, "error", "stream error")),
                self.provider_id,
            )
        return None

    async def complete(self, request: ChatRequest) -> DecodedResponse:
        kwargs = self._build_kwargs(request)
        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise classify_sdk_error(e, anthropic, self.provider_id) from e

        if getattr(response, "content", None) is None:
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE,
                "response contained no content blocks",
                self.provider_id,
            )
        text_parts: list[str] = []
        calls: list[ToolCallRequest] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                if not isinstance(block.input, dict):
                    raise ProviderError(
                        ProviderErrorKind.MALFORMED_RESPONSE,
                        f"tool_use block {block.id} input is not an object",
                        self.provider_id,
                    )
                calls.append(ToolCallRequest(id=block.id, name=block.name, arguments=block.input))
        usage = getattr(response, "usage", None)
        return DecodedResponse(
            text="".join(text_parts),
            tool_calls=calls,
            usage=Usage.of(
                getattr(usage, "input_tokens", 0), getattr(usage, "output_tokens", 0),
            ),
            finish_reason=getattr(response, "stop_reason", None),
        )


def _image_block(ref: str) -> dict[str, Any]:
    if ref.startswith("data:") and ";base64," in ref:
        header, data = ref.split(",", 1)
        media_type = header[len("data:"):].split(";", 1)[0]
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }
    return {"type": "image", "source": {"type": "url", "url": ref}}
