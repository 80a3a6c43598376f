"""Static model tables: default models, provider aliases and Cloudflare neuron costs."""
from __future__ import annotations

import math
from types import MappingProxyType
from typing import Mapping

DEFAULT_MODELS: Mapping[str, str] = MappingProxyType(
    {
        "openai": "gpt-4o",
        "anthropic": "claude-3-5-sonnet-20241022",
        "google": "gemini-2.0-flash",
        "mistral": "mistral-large-latest",
        "openrouter": "meta-llama/llama-3.1-8b-instruct:free",
        "lovable": "google/gemini-2.5-flash",
        "cloudflare": "@cf/meta/llama-3.2-1b-instruct",
    }
)

CLOUDFLARE_MODELS: Mapping[str, str] = MappingProxyType(
    {
        "llama-3.2-1b": "@cf/meta/llama-3.2-1b-instruct",
        "llama-3.2-3b": "@cf/meta/llama-3.2-3b-instruct",
        "llama-3.1-8b-fast": "@cf/meta/llama-3.1-8b-instruct-fp8-fast",
        "llama-3.2-11b-vision": "@cf/meta/llama-3.2-11b-vision-instruct",
        "mistral-small": "@cf/mistralai/mistral-small-3.1-24b-instruct",
        "qwen3-30b": "@cf/qwen/qwen3-30b-a3b-fp8",
        "llama-3.3-70b": "@cf/meta/llama-3.3-70b-instruct-fp8-fast",
        "llama-3.1-70b": "@cf/meta/llama-3.1-70b-instruct",
        "llama-4-scout": "@cf/meta/llama-4-scout-17b-16e-instruct",
        "hermes-2-pro": "@hf/nousresearch/hermes-2-pro-mistral-7b",
        "granite-4": "@cf/ibm/granite-4.0-h-micro",
        "deepseek-r1": "@cf/deepseek-ai/deepseek-r1-distill-qwen-32b",
        "qwq-32b": "@cf/qwen/qwq-32b",
    }
)

CLOUDFLARE_FUNCTION_CALLING_MODELS: frozenset[str] = frozenset(
    {
        CLOUDFLARE_MODELS["llama-3.3-70b"],
        CLOUDFLARE_MODELS["llama-4-scout"],
        CLOUDFLARE_MODELS["hermes-2-pro"],
        CLOUDFLARE_MODELS["mistral-small"],
        CLOUDFLARE_MODELS["qwen3-30b"],
        CLOUDFLARE_MODELS["granite-4"],
    }
)

OPENROUTER_FREE_MODELS: Mapping[str, str] = MappingProxyType(
    {
        "llama-3-8b": "meta-llama/llama-3-8b-instruct:free",
        "llama-3.1-8b": "meta-llama/llama-3.1-8b-instruct:free",
        "gemma-7b": "google/gemma-7b-it:free",
        "mistral-7b": "mistralai/mistral-7b-instruct:free",
        "phi-3-mini": "microsoft/phi-3-mini-128k-instruct:free",
        "qwen2-7b": "qwen/qwen-2-7b-instruct:free",
        "deepseek-coder": "deepseek/deepseek-coder-6.7b-instruct:free",
        "zephyr-7b": "huggingfaceh4/zephyr-7b-beta:free",
    }
)

OPENROUTER_PAID_MODELS: Mapping[str, str] = MappingProxyType(
    {
        "gpt-4o": "openai/gpt-4o",
        "gpt-4o-mini": "openai/gpt-4o-mini",
        "gpt-4-turbo": "openai/gpt-4-turbo",
        "claude-3.5-sonnet": "anthropic/claude-3.5-sonnet",
        "claude-3-opus": "anthropic/claude-3-opus",
        "claude-3-haiku": "anthropic/claude-3-haiku",
        "gemini-pro": "google/gemini-pro",
        "gemini-2.0-flash": "google/gemini-2.0-flash-exp",
        "llama-3.1-70b": "meta-llama/llama-3.1-70b-instruct",
        "llama-3.1-405b": "meta-llama/llama-3.1-405b-instruct",
        "mistral-large": "mistralai/mistral-large",
        "mixtral-8x7b": "mistralai/mixtral-8x7b-instruct",
        "deepseek-chat": "deepseek/deepseek-chat",
        "deepseek-r1": "deepseek/deepseek-r1",
    }
)

OPENROUTER_MODELS: Mapping[str, str] = MappingProxyType({**OPENROUTER_FREE_MODELS, **OPENROUTER_PAID_MODELS})

LOVABLE_MODELS: Mapping[str, str] = MappingProxyType(
    {
        "gemini-flash": "google/gemini-2.5-flash",
        "gemini-pro": "google/gemini-2.5-pro",
        "gemini-flash-lite": "google/gemini-2.5-flash-lite",
        "gpt-5": "openai/gpt-5",
        "gpt-5-mini": "openai/gpt-5-mini",
        "gpt-5-nano": "openai/gpt-5-nano",
    }
)

MODEL_ALIASES: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {
        "cloudflare": CLOUDFLARE_MODELS,
        "openrouter": OPENROUTER_MODELS,
        "lovable": LOVABLE_MODELS,
    }
)

# Neurons per million tokens, (input, output).
NEURON_COSTS: Mapping[str, tuple[int, int]] = MappingProxyType(
    {
        "@cf/meta/llama-3.2-1b-instruct": (2457, 18252),
        "@cf/meta/llama-3.2-3b-instruct": (4625, 30475),
        "@cf/meta/llama-3.1-8b-instruct-fp8-fast": (4119, 34868),
        "@cf/meta/llama-3.2-11b-vision-instruct": (8500, 65000),
        "@cf/mistralai/mistral-small-3.1-24b-instruct": (12000, 95000),
        "@cf/qwen/qwen3-30b-a3b-fp8": (15000, 110000),
        "@cf/meta/llama-3.3-70b-instruct-fp8-fast": (26668, 204805),
        "@cf/meta/llama-3.1-70b-instruct": (28000, 210000),
        "@cf/meta/llama-4-scout-17b-16e-instruct": (35000, 250000),
        "@hf/nousresearch/hermes-2-pro-mistral-7b": (4000, 32000),
        "@cf/ibm/granite-4.0-h-micro": (3500, 28000),
        "@cf/deepseek-ai/deepseek-r1-distill-qwen-32b": (16000, 120000),
        "@cf/qwen/qwq-32b": (16000, 120000),
    }
)

FALLBACK_NEURON_COST = (5000, 40000)
FREE_NEURONS_PER_DAY = 10_000


def resolve_model(provider: str, model: str | None, default_model: str | None = None) -> str:
    """Resolve an alias or fall back to the configured, then the built-in, default."""
    candidate = model or default_model or DEFAULT_MODELS.get(provider, "")
    aliases = MODEL_ALIASES.get(provider)
    if aliases is not None:
        return aliases.get(candidate, candidate)
    return candidate


def supports_tool_calling(provider: str, model: str) -> bool:
    if provider != "cloudflare":
        return True
    return model in CLOUDFLARE_FUNCTION_CALLING_MODELS


def calculate_neurons(model: str, input_tokens: int, output_tokens: int) -> int:
    cost_in, cost_out = NEURON_COSTS.get(model, FALLBACK_NEURON_COST)
    return math.ceil((input_tokens * cost_in + output_tokens * cost_out) / 1_000_000)


def model_catalog() -> dict[str, object]:
    return {
        "defaults": dict(DEFAULT_MODELS),
        "cloudflare": dict(CLOUDFLARE_MODELS),
        "cloudflare_function_calling": sorted(CLOUDFLARE_FUNCTION_CALLING_MODELS),
        "openrouter": {"free": dict(OPENROUTER_FREE_MODELS), "paid": dict(OPENROUTER_PAID_MODELS)},
        "lovable": dict(LOVABLE_MODELS),
    }
