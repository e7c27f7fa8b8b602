from __future__ import annotations

import os

from ..types import LLMProvider, LLMProviderError
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .generic_openai import GenericOpenAIProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "GenericOpenAIProvider",
    "LLMProviderError",
    "build_llm_provider",
]


def build_llm_provider(
    provider_name: str,
    provider_config: dict,
    model: str = "",
    temperature: float = 0.3,
) -> LLMProvider | None:
    """Build an LLM provider from a ``providers`` config entry.

    Returns None when the provider type is unknown or, for Anthropic, when
    no API key is available.
    """
    ptype = provider_config.get("type", provider_name)

    if ptype == "generic_openai":
        return GenericOpenAIProvider(
            base_url=provider_config.get("base_url", "http://127.0.0.1:11434/v1"),
            model=provider_config.get("model", model) or "qwen3:4b-instruct-2507-fp16",
            temperature=provider_config.get("temperature", temperature),
            api_key=provider_config.get("api_key", "not-needed"),
        )

    if ptype == "anthropic":
        api_key_env = provider_config.get("api_key_env", "ANTHROPIC_API_KEY")
        api_key = provider_config.get("api_key") or os.environ.get(api_key_env, "")
        if api_key:
            return AnthropicProvider(
                api_key=api_key,
                model=provider_config.get("model", model) or "claude-haiku-4-5",
                temperature=provider_config.get("temperature", temperature),
            )

    return None
