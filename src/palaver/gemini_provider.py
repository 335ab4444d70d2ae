"""Google Gemini adapter (``google-genai``).

Gemini calls the assistant role ``model``, takes the system prompt as
``system_instruction`` and returns tool calls as whole ``function_call``
parts rather than fragments.  Tool results go back as
``function_response`` parts matched by tool name.
"""

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import os
from collections.abc import AsyncIterator
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

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
from palaver.streaming import (
    DecodedResponse,
    StreamChunk,
    StreamDecoder,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)

_SCHEMA_TYPES = {"string", "number", "integer", "boolean", "array", "object"}


class GeminiProvider(ModelProvider):
    """Adapter for the Gemini API.

    Args:
        api_key: API key, ``GEMINI_API_KEY`` when omitted.
        base_url: Alternative API root.
        capabilities: Overrides the registry descriptor.
    """

    provider_id = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        capabilities: ProviderCapabilities | None = None,
    ):
        super().__init__(capabilities)
        client_kwargs: dict[str, Any] = {
            "api_key": api_key or os.getenv("GEMINI_API_KEY"),
        }
        if base_url:
            client_kwargs["http_options"] = types.HttpOptions(base_url=base_url)
        self.client = genai.Client(**client_kwargs)

    # -- request mapping -------------------------------------------------

    def _build_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        request = self.prepare_request(request)
        config: dict[str, Any] = {}
        if request.system_prompt:
            config["system_instruction"] = request.system_prompt
        if request.tools:
            config["tools"] = [types.Tool(function_declarations=[
                types.FunctionDeclaration(
                    name=t["name"],
                    description=t.get("description") or "",
                    parameters=_to_schema(
                        t.get("parameters") or {"type": "object", "properties": {}}
                    ),
                )
                for t in request.tools
            ])]
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.max_tokens is not None:
            config["max_output_tokens"] = request.max_tokens
        return {
            "model": request.model,
            "contents": self._convert_messages(request.messages),
            "config": types.GenerateContentConfig(**config),
        }

    def _convert_messages(self, messages: list[Message]) -> list[types.Content]:
        """Map messages to Contents, merging neighbours that share a role."""
        contents: list[types.Content] = []
        for message in messages:
            role = "model" if message.role is MessageRole.ASSISTANT else "user"
            parts = self._convert_parts(message)
            if not parts:
                continue
            if contents and contents[-1].role == role:
                contents[-1].parts.extend(parts)
            else:
                contents.append(types.Content(role=role, parts=parts))
        return contents

    def _convert_parts(self, message: Message) -> list[types.Part]:
        if isinstance(message, ToolCallResultMessage):
            key = "result" if message.success else "error"
            return [types.Part.from_function_response(
                name=self.capabilities.wire_tool_name(message.name),
                response={key: message.text},
            )]
        parts: list[types.Part] = []
        for item in message.content:
            if isinstance(item, ImageContent):
                parts.append(_image_part(item.image_ref))
            elif item.text:
                parts.append(types.Part.from_text(text=item.text))
        if isinstance(message, ToolCallRequestMessage):
            for tc in message.tool_calls:
                parts.append(types.Part(function_call=types.FunctionCall(
                    name=self.capabilities.wire_tool_name(tc.name),
                    args=tc.arguments,
                )))
        return parts

    # -- calls -----------------------------------------------------------

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(request)
        try:
            response = await self.client.aio.models.generate_content_stream(**kwargs)
        except (genai_errors.APIError, *TRANSPORT_ERRORS) as e:
            raise classify_sdk_error(e, genai_errors, self.provider_id) from e

        calls = 0
        try:
            async for raw in response:
                chunk, calls = self._convert_response(raw, calls)
                if chunk is not None:
                    yield chunk
        except (genai_errors.APIError, *TRANSPORT_ERRORS) as e:
            raise classify_sdk_error(e, genai_errors, self.provider_id) from e
        finally:
            await close_stream(response)

    def _convert_response(self, raw, calls: int) -> tuple[StreamChunk | None, int]:
        """Map one response to a chunk; *calls* numbers function calls."""
        usage = _usage_from_gemini(getattr(raw, "usage_metadata", None))
        candidates = getattr(raw, "candidates", None) or []
        if not candidates:
            return (StreamChunk(usage=usage) if usage is not None else None), calls

        candidate = candidates[0]
        content = getattr(candidate, "content", None)
        text_parts: list[str] = []
        fragments: list[ToolCallFragment] = []
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "thought", False):
                continue
            if getattr(part, "text", None):
                text_parts.append(part.text)
            call = getattr(part, "function_call", None)
            if call is not None:
                fragments.append(ToolCallFragment(
                    index=calls,
                    id_delta=getattr(call, "id", None),
                    name_delta=call.name,
                    arguments_delta=json.dumps(call.args or {}),
                ))
                calls += 1

        reason = getattr(candidate, "finish_reason", None)
        chunk = StreamChunk(
            text_delta="".join(text_parts) or None,
            tool_call_fragments=fragments or None,
            usage=usage,
            finish_reason=getattr(reason, "value", reason),
        )
        return chunk, calls

    async def complete(self, request: ChatRequest) -> DecodedResponse:
        kwargs = self._build_kwargs(request)
        try:
            response = await self.client.aio.models.generate_content(**kwargs)
        except (genai_errors.APIError, *TRANSPORT_ERRORS) as e:
            raise classify_sdk_error(e, genai_errors, self.provider_id) from e

        if not getattr(response, "candidates", None):
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE,
                "response contained no candidates",
                self.provider_id,
            )
        chunk, _ = self._convert_response(response, 0)
        decoder = StreamDecoder()
        decoder.feed(chunk)
        return decoder.finalize()


def _to_schema(schema: dict[str, Any]) -> types.Schema:
    """Convert a JSON schema into Gemini's upper-case typed Schema."""
    kind = schema.get("type", "string")
    if kind not in _SCHEMA_TYPES:
        kind = "string"
    fields: dict[str, Any] = {"type": kind.upper()}
    if schema.get("description"):
        fields["description"] = schema["description"]
    if schema.get("enum"):
        fields["enum"] = [str(v) for v in schema["enum"]]
    if kind == "object":
        fields["properties"] = {
            name: _to_schema(prop)
            for name, prop in (schema.get("properties") or {}).items()
        }
        if schema.get("required"):
            fields["required"] = list(schema["required"])
    elif kind == "array":
        fields["items"] = _to_schema(schema.get("items") or {"type": "string"})
    return types.Schema(**fields)


def _image_part(ref: str) -> types.Part:
    if ref.startswith("data:") and ";base64," in ref:
        header, data = ref.split(",", 1)
        mime_type = header[len("data:"):].split(";", 1)[0]
        return types.Part.from_bytes(data=base64.b64decode(data), mime_type=mime_type)
    mime_type = mimetypes.guess_type(ref)[0] or "image/jpeg"
    return types.Part.from_uri(file_uri=ref, mime_type=mime_type)


def _usage_from_gemini(metadata) -> Usage | None:
    if metadata is None:
        return None
    return Usage.of(
        getattr(metadata, "prompt_token_count", None),
        getattr(metadata, "candidates_token_count", None),
        getattr(metadata, "total_token_count", None),
    )
