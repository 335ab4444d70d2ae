"""Provider adapters.

Every backend speaks through :class:`ModelProvider`: ``stream()`` yields
normalised :class:`~palaver.streaming.StreamChunk` objects, ``complete()``
returns one :class:`~palaver.streaming.DecodedResponse`, and ``send()``
picks between them.  Capability differences (no tools, no vision, no
system role, short tool names, inline-tagged tool calls) are applied in
one place, :meth:`ModelProvider.prepare_request`, so concrete adapters
only map fields.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import openai
from openai import AsyncOpenAI

from palaver.accounting import Usage
from palaver.capabilities import (
    ProviderCapabilities,
    ToolCallFormat,
    get_capabilities,
)
from palaver.errors import (
    TRANSPORT_ERRORS,
    ProviderError,
    ProviderErrorKind,
    classify_sdk_error,
)
from palaver.extraction import (
    render_inline_tool_instructions,
    render_inline_tool_result,
)
from palaver.message import (
    ImageContent,
    Message,
    MessageRole,
    TextContent,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from palaver.streaming import (
    DecodedResponse,
    StreamChunk,
    StreamDecoder,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[image omitted: this model cannot read images]"


@dataclass
class ChatRequest:
    """Backend-neutral request for one round.

    Args:
        model: Model identifier understood by the backend.
        messages: Conversation so far, oldest first, without the system
            prompt.
        tools: Tool descriptions (``name``, ``description``,
            ``parameters``) offered to the model.
        system_prompt: Instructions injected at call time.
        temperature: Sampling temperature, backend default when ``None``.
        max_tokens: Completion token limit, backend default when ``None``.
    """

    model: str
    messages: list[Message]
    tools: list[dict] = field(default_factory=list)
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


ChunkCallback = Callable[[StreamChunk], None]


class ModelProvider(ABC):
    """Base class for all backends.

    Subclasses set ``provider_id`` and implement :meth:`stream` and
    :meth:`complete` against a request already adjusted by
    :meth:`prepare_request`.
    """

    provider_id: str = "custom"

    def __init__(self, capabilities: ProviderCapabilities | None = None):
        self.capabilities = capabilities or get_capabilities(self.provider_id)

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Yield chunks for *request* in arrival order."""
        ...

    @abstractmethod
    async def complete(self, request: ChatRequest) -> DecodedResponse:
        """Run *request* without streaming."""
        ...

    async def send(
        self, request: ChatRequest, on_chunk: ChunkCallback | None = None,
    ) -> DecodedResponse:
        """Run one round, streaming into *on_chunk* when possible."""
        if on_chunk is None or not self.capabilities.supports_streaming:
            return await self.complete(request)
        decoder = StreamDecoder()
        async for chunk in self.stream(request):
            on_chunk(chunk)
            decoder.feed(chunk)
        return decoder.finalize()

    # ------------------------------------------------------------------
    # Capability negotiation
    # ------------------------------------------------------------------

    @property
    def uses_native_tools(self) -> bool:
        caps = self.capabilities
        return caps.supports_tools and caps.tool_call_format is ToolCallFormat.NATIVE

    def prepare_request(self, request: ChatRequest) -> ChatRequest:
        """Return a copy of *request* that this backend can accept."""
        caps = self.capabilities
        system_prompt = request.system_prompt
        messages = list(request.messages)
        tools = list(request.tools)

        if not caps.supports_tools:
            if tools:
                logger.debug(f"{self.provider_id} has no tool support; dropping tools")
            tools = []
        elif caps.tool_call_format is ToolCallFormat.INLINE_TAGGED and tools:
            instructions = render_inline_tool_instructions(tools)
            system_prompt = (
                f"{system_prompt}\n\n{instructions}" if system_prompt else instructions
            )
            tools = []
        else:
            tools = [
                {**t, "name": caps.wire_tool_name(t["name"])} for t in tools
            ]

        if not self.uses_native_tools:
            messages = _tool_messages_as_text(messages)
        if not caps.supports_vision:
            messages = [_strip_images(m) for m in messages]
        if not caps.supports_system_messages and system_prompt:
            messages = _fold_system_prompt(system_prompt, messages)
            system_prompt = None

        return ChatRequest(
            model=request.model,
            messages=messages,
            tools=tools,
            system_prompt=system_prompt,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )


def _strip_images(message: Message) -> Message:
    if not message.images:
        return message
    content = [
        TextContent(text=IMAGE_PLACEHOLDER) if isinstance(item, ImageContent) else item
        for item in message.content
    ]
    return message.model_copy(update={"content": content})


def _fold_system_prompt(system_prompt: str, messages: list[Message]) -> list[Message]:
    folded = list(messages)
    for i, message in enumerate(folded):
        if message.role is MessageRole.USER:
            content = [TextContent(text=f"{system_prompt}\n\n"), *message.content]
            folded[i] = message.model_copy(update={"content": content})
            return folded
    return [Message.user(system_prompt), *folded]


def _tool_messages_as_text(messages: list[Message]) -> list[Message]:
    """Render tool traffic as plain text for backends without a tool role."""
    rendered: list[Message] = []
    for message in messages:
        if isinstance(message, ToolCallResultMessage):
            block = render_inline_tool_result(
                message.name, message.tool_call_id, message.text, message.success,
            )
            previous = rendered[-1] if rendered else None
            if previous is not None and previous.role is MessageRole.USER \
                    and previous.text.endswith("</tool_result>"):
                rendered[-1] = Message.user(f"{previous.text}\n{block}")
            else:
                rendered.append(Message.user(block))
        elif isinstance(message, ToolCallRequestMessage):
            rendered.append(Message.assistant(message.text))
        else:
            rendered.append(message)
    return rendered


async def close_stream(stream) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


class OpenAICompatibleProvider(ModelProvider):
    """Any backend exposing the ``/v1/chat/completions`` API.

    Args:
        base_url: API root, e.g. ``http://localhost:11434/v1``.
        api_key: Bearer token; local servers accept any value.
        capabilities: Overrides the registry descriptor.
        timeout: Per-request timeout in seconds.
        max_retries: Retries performed by the SDK client.
    """

    provider_id = "openai_compatible"
    stream_usage = False

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        capabilities: ProviderCapabilities | None = None,
        timeout: float = 600.0,
        max_retries: int = 5,
    ):
        super().__init__(capabilities)
        self.base_url = base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            timeout=timeout,
            max_retries=max_retries,
        )

    # -- request mapping -------------------------------------------------

    def _build_kwargs(self, request: ChatRequest) -> dict:
        request = self.prepare_request(request)
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(self._convert_message(m) for m in request.messages)
        kwargs = {"model": request.model, "messages": messages}
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description") or "",
                        "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                    },
                }
                for t in request.tools
            ]
            kwargs["tool_choice"] = "auto"
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        return kwargs

    def _convert_message(self, message: Message) -> dict:
        if isinstance(message, ToolCallResultMessage):
            return {
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.text,
            }
        if isinstance(message, ToolCallRequestMessage):
            return {
                "role": "assistant",
                "content": message.text or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": self.capabilities.wire_tool_name(tc.name),
                            "arguments": json.dumps(tc.arguments),
                        },
                    }
                    for tc in message.tool_calls
                ],
            }
        if message.images:
            parts = []
            for item in message.content:
                if isinstance(item, ImageContent):
                    parts.append({"type": "image_url", "image_url": {"url": item.image_ref}})
                else:
                    parts.append({"type": "text", "text": item.text})
            return {"role": message.role.value, "content": parts}
        return {"role": message.role.value, "content": message.text}

    # -- calls -----------------------------------------------------------

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        if self.stream_usage:
            kwargs["stream_options"] = {"include_usage": True}
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise classify_sdk_error(e, openai, self.provider_id) from e

        try:
            async for raw in response:
                chunk = self._convert_chunk(raw)
                if chunk is not None:
                    yield chunk
        except (openai.APIError, *TRANSPORT_ERRORS) as e:
            raise classify_sdk_error(e, openai, self.provider_id) from e
        finally:
            await close_stream(response)

    def _convert_chunk(self, raw) -> StreamChunk | None:
        usage = None
        if getattr(raw, "usage", None) is not None:
            usage = _usage_from_openai(raw.usage)
        if not raw.choices:
            return StreamChunk(usage=usage) if usage is not None else None
        choice = raw.choices[0]
        delta = choice.delta
        fragments = None
        if getattr(delta, "tool_calls", None):
            fragments = [
                ToolCallFragment(
                    index=tc.index,
                    id_delta=tc.id,
                    name_delta=tc.function.name if tc.function else None,
                    arguments_delta=tc.function.arguments if tc.function else None,
                )
                for tc in delta.tool_calls
            ]
        return StreamChunk(
            text_delta=getattr(delta, "content", None),
            tool_call_fragments=fragments,
            usage=usage,
            finish_reason=choice.finish_reason,
        )

    async def complete(self, request: ChatRequest) -> DecodedResponse:
        kwargs = self._build_kwargs(request)
        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise classify_sdk_error(e, openai, self.provider_id) from e

        if not getattr(response, "choices", None):
            raise ProviderError(
                ProviderErrorKind.MALFORMED_RESPONSE,
                "response contained no choices",
                self.provider_id,
            )
        choice = response.choices[0]
        message = choice.message
        fragments = [
            ToolCallFragment(
                index=i,
                id_delta=tc.id,
                name_delta=tc.function.name,
                arguments_delta=tc.function.arguments,
            )
            for i, tc in enumerate(message.tool_calls or [])
        ]
        decoder = StreamDecoder()
        decoder.feed(StreamChunk(
            text_delta=message.content,
            tool_call_fragments=fragments or None,
            usage=(
                _usage_from_openai(response.usage)
                if getattr(response, "usage", None) is not None else None
            ),
            finish_reason=getattr(choice, "finish_reason", None),
        ))
        return decoder.finalize()


def _usage_from_openai(usage) -> Usage:
    return Usage.of(
        getattr(usage, "prompt_tokens", None),
        getattr(usage, "completion_tokens", None),
        getattr(usage, "total_tokens", None),
    )


class OpenAIProvider(OpenAICompatibleProvider):

    provider_id = "openai"
    stream_usage = True

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(
            base_url="https://api.openai.com/v1",
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            **kwargs,
        )


class OpenRouter(OpenAICompatibleProvider):

    provider_id = "openrouter"
    stream_usage = True

    def __init__(self, api_key: str | None = None, **kwargs):
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            base_url="https://openrouter.ai/api/v1",
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
            **kwargs,
        )


class RequestyProvider(OpenAICompatibleProvider):

    provider_id = "requesty"

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(
            base_url="https://router.requesty.ai/v1",
            api_key=api_key or os.getenv("REQUESTY_API_KEY"),
            **kwargs,
        )


class DeepInfraProvider(OpenAICompatibleProvider):

    provider_id = "deepinfra"

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(
            base_url="https://api.deepinfra.com/v1/openai",
            api_key=api_key or os.getenv("DEEPINFRA_API_KEY"),
            **kwargs,
        )


class MistralProvider(OpenAICompatibleProvider):

    provider_id = "mistral"

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(
            base_url="https://api.mistral.ai/v1",
            api_key=api_key or os.getenv("MISTRAL_API_KEY"),
            **kwargs,
        )


class DeepSeekProvider(OpenAICompatibleProvider):

    provider_id = "deepseek"

    def __init__(self, api_key: str | None = None, **kwargs):
        super().__init__(
            base_url="https://api.deepseek.com/v1",
            api_key=api_key or os.getenv("DEEPSEEK_API_KEY"),
            **kwargs,
        )


class VLLMProvider(OpenAICompatibleProvider):

    provider_id = "vllm"
    stream_usage = True

    def __init__(self, url: str, port: int, **kwargs):
        super().__init__(base_url=f"http://{url}:{port}/v1", **kwargs)


class OllamaProvider(OpenAICompatibleProvider):

    provider_id = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434/v1", **kwargs):
        super().__init__(base_url=base_url, **kwargs)


class LMStudioProvider(OpenAICompatibleProvider):

    provider_id = "lmstudio"

    def __init__(self, base_url: str = "http://localhost:1234/v1", **kwargs):
        super().__init__(base_url=base_url, **kwargs)


class LlamaCppProvider(OpenAICompatibleProvider):
    """llama.cpp server; tool calls are written inline as tagged text."""

    provider_id = "llamacpp"

    def __init__(self, base_url: str = "http://localhost:8080/v1", **kwargs):
        super().__init__(base_url=base_url, **kwargs)
