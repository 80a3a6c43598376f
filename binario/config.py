from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

DEFAULT_TIMEOUT_MS = 30_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 120_000

# provider id -> (api key variable, default base url)
PROVIDER_ENV: dict[str, tuple[str, str]] = {
    "openai": ("OPENAI_API_KEY", "https://api.openai.com/v1"),
    "anthropic": ("ANTHROPIC_API_KEY", "https://api.anthropic.com/v1"),
    "google": ("GOOGLE_API_KEY", "https://generativelanguage.googleapis.com/v1beta"),
    "mistral": ("MISTRAL_API_KEY", "https://api.mistral.ai/v1"),
    "openrouter": ("OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
    "lovable": ("LOVABLE_API_KEY", "https://ai.gateway.lovable.dev/v1"),
    "cloudflare": ("CLOUDFLARE_API_TOKEN", "https://api.cloudflare.com/client/v4"),
}


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    api_key: str
    base_url: str | None = None
    default_model: str | None = None
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    account_id: str | None = None

    def public_view(self) -> dict[str, object]:
        return {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "default_model": self.default_model,
            "extra_headers": dict(self.extra_headers),
            "account_id": self.account_id,
        }


@dataclass(slots=True, frozen=True)
class CacheConfig:
    enabled: bool = False
    max_size: int = 100
    ttl_ms: int = 3_600_000


@dataclass(slots=True, frozen=True)
class GatewayConfig:
    providers: Mapping[str, ProviderConfig] = field(default_factory=dict)
    default_provider: str | None = None
    cache: CacheConfig = field(default_factory=CacheConfig)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    stream_max_pending_retries: int = 8

    def __post_init__(self) -> None:
        # Read-only view: reconfiguration builds a new gateway instead of mutating this one.
        object.__setattr__(self, "providers", MappingProxyType(dict(self.providers)))

    def resolve_default_provider(self) -> str | None:
        if self.default_provider:
            return self.default_provider
        return next(iter(self.providers), None)


@dataclass(slots=True)
class Settings:
    gateway: GatewayConfig
    host: str
    port: int
    log_level: str


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: str | None, default: int, *, minimum: int | None = None, maximum: int | None = None) -> int:
    try:
        parsed = int(str(value).strip()) if value is not None else default
    except ValueError:
        parsed = default
    if minimum is not None:
        parsed = max(parsed, minimum)
    if maximum is not None:
        parsed = min(parsed, maximum)
    return parsed


def load_provider_configs(env: Mapping[str, str]) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for provider, (key_var, default_base_url) in PROVIDER_ENV.items():
        api_key = (env.get(key_var) or "").strip()
        if not api_key:
            continue
        prefix = provider.upper()
        account_id = None
        if provider == "cloudflare":
            account_id = (env.get("CLOUDFLARE_ACCOUNT_ID") or "").strip()
            if not account_id:
                continue
        providers[provider] = ProviderConfig(
            api_key=api_key,
            base_url=(env.get(f"{prefix}_BASE_URL") or "").strip() or default_base_url,
            default_model=(env.get(f"{prefix}_DEFAULT_MODEL") or "").strip() or None,
            account_id=account_id,
        )
    return providers


def load_gateway_config(env: Mapping[str, str] | None = None) -> GatewayConfig:
    source = os.environ if env is None else env
    return GatewayConfig(
        providers=load_provider_configs(source),
        default_provider=(source.get("BINARIO_DEFAULT_PROVIDER") or "").strip() or None,
        cache=CacheConfig(
            enabled=_parse_bool(source.get("BINARIO_CACHE_ENABLED"), False),
            max_size=_parse_int(source.get("BINARIO_CACHE_MAX_SIZE"), 100, minimum=1),
            ttl_ms=_parse_int(source.get("BINARIO_CACHE_TTL_MS"), 3_600_000, minimum=0),
        ),
        timeout_ms=_parse_int(
            source.get("BINARIO_TIMEOUT_MS"),
            DEFAULT_TIMEOUT_MS,
            minimum=MIN_TIMEOUT_MS,
            maximum=MAX_TIMEOUT_MS,
        ),
        stream_max_pending_retries=_parse_int(source.get("BINARIO_STREAM_MAX_PENDING_RETRIES"), 8, minimum=0),
    )


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if env is None else env
    return Settings(
        gateway=load_gateway_config(source),
        host=source.get("BINARIO_HOST", "127.0.0.1"),
        port=_parse_int(source.get("BINARIO_PORT"), 8040, minimum=1, maximum=65535),
        log_level=source.get("BINARIO_LOG_LEVEL", "INFO").upper(),
    )
