from __future__ import annotations

from binario.config import ProviderConfig
from binario.providers.anthropic import AnthropicAdapter
from binario.providers.base import ProviderAdapter
from binario.providers.cloudflare import CloudflareAdapter
from binario.providers.google import GoogleAdapter
from binario.providers.lovable import LovableAdapter
from binario.providers.openai_compatible import OpenAICompatibleAdapter
from binario.providers.openrouter import OpenRouterAdapter

OPENAI_COMPATIBLE_PROVIDERS = {
    "openai",
    "mistral",
    "custom",
}

# Backends that reject the OpenAI ``stream_options`` field.
_NO_STREAM_USAGE = {"mistral"}

SUPPORTED_PROVIDERS = frozenset(
    OPENAI_COMPATIBLE_PROVIDERS | {"anthropic", "google", "cloudflare", "openrouter", "lovable"}
)


def build_adapter(provider: str, config: ProviderConfig) -> ProviderAdapter:
    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        if provider == "custom" and not config.base_url:
            raise ValueError("Custom OpenAI-compatible provider requires a base url")
        adapter = OpenAICompatibleAdapter(config, provider_id=provider)
        if provider in _NO_STREAM_USAGE:
            adapter.include_stream_usage = False
        return adapter
    if provider == "anthropic":
        return AnthropicAdapter(config)
    if provider == "google":
        return GoogleAdapter(config)
    if provider == "cloudflare":
        if not config.account_id:
            raise ValueError("Cloudflare provider requires an account id")
        return CloudflareAdapter(config)
    if provider == "openrouter":
        return OpenRouterAdapter(config)
    if provider == "lovable":
        return LovableAdapter(config)
    raise ValueError(f"Unsupported provider: {provider}")
