"""Build a provider adapter from its registry id."""

from __future__ import annotations

import logging

from palaver.anthropic_provider import AnthropicProvider
from palaver.capabilities import get_capabilities
from palaver.gemini_provider import GeminiProvider
from palaver.provider import (
    DeepInfraProvider,
    DeepSeekProvider,
    LlamaCppProvider,
    LMStudioProvider,
    MistralProvider,
    ModelProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    RequestyProvider,
)

logger = logging.getLogger(__name__)

_HOSTED = {
    "openai": OpenAIProvider,
    "openrouter": OpenRouter,
    "requesty": RequestyProvider,
    "deepinfra": DeepInfraProvider,
    "mistral": MistralProvider,
    "deepseek": DeepSeekProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}

# Adapters whose SDK client accepts an alternative API root.
_OVERRIDABLE_ROOT = (AnthropicProvider, GeminiProvider)

_LOCAL = {
    "ollama": OllamaProvider,
    "lmstudio": LMStudioProvider,
    "llamacpp": LlamaCppProvider,
}


def create_provider(
    provider_id: str,
    api_key: str | None = None,
    base_url: str | None = None,
    **kwargs,
) -> ModelProvider:
    """Instantiate the adapter registered under *provider_id*.

    Ids without a dedicated adapter but with a *base_url* get a generic
    :class:`OpenAICompatibleProvider` carrying the registry descriptor
    for *provider_id*.

    Raises:
        ValueError: The id is unknown and no *base_url* was given.
    """
    if provider_id in _HOSTED:
        cls = _HOSTED[provider_id]
        if base_url and issubclass(cls, _OVERRIDABLE_ROOT):
            kwargs["base_url"] = base_url
        elif base_url:
            logger.debug(f"Ignoring base_url for hosted provider {provider_id}")
        provider = cls(api_key=api_key, **kwargs)
    elif provider_id in _LOCAL:
        cls = _LOCAL[provider_id]
        if base_url:
            kwargs["base_url"] = base_url
        provider = cls(api_key=api_key, **kwargs)
    elif base_url:
        kwargs.setdefault("capabilities", get_capabilities(provider_id))
        provider = OpenAICompatibleProvider(base_url=base_url, api_key=api_key, **kwargs)
        provider.provider_id = provider_id
    else:
        raise ValueError(f"Unknown provider '{provider_id}'")
    logger.info(f"Created provider {provider_id} ({type(provider).__name__})")
    return provider
