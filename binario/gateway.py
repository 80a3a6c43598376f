"""Dispatcher: provider selection, request cache, HTTP transport and accounting."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx

from binario.cache import RequestCache, compute_fingerprint
from binario.config import GatewayConfig
from binario.errors import (
    BackendError,
    BinarioError,
    ProviderNetworkError,
    ProviderNotConfiguredError,
    ProviderTimeoutError,
    error_from_status,
)
from binario.messages import ChatOptions, ChatResponse, Message, ToolSchema
from binario.models import calculate_neurons
from binario.observability.hooks import (
    ObservabilityHooks,
    RequestEndEvent,
    RequestErrorEvent,
    RequestMetrics,
    RequestStartEvent,
)
from binario.observability.metrics import GatewayMetrics
from binario.observability.redaction import redact
from binario.providers.base import ProviderAdapter
from binario.providers.router import build_adapter
from binario.trace import generate_span_id, get_current_trace_id
from binario.usage import UsageRecord, UsageTracker

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def coerce_messages(messages: Iterable[Message | Mapping[str, Any]]) -> list[Message]:
    return [m if isinstance(m, Message) else Message.from_dict(dict(m)) for m in messages]


def merge_options(options: ChatOptions | None, overrides: Mapping[str, Any]) -> ChatOptions:
    base = options or ChatOptions()
    if not overrides:
        return base
    values = dict(overrides)
    if "stop" in values and values["stop"] is not None:
        values["stop"] = tuple(values["stop"])
    if "tools" in values:
        values["tools"] = tuple(
            t if isinstance(t, ToolSchema) else ToolSchema(**t) for t in (values["tools"] or ())
        )
    return dataclasses.replace(base, **values)


class Gateway:
    """One request/response contract over every configured backend.

    Configuration is fixed at construction. The only mutable shared state is the
    request cache, the metrics counters and the usage ledger, each of which
    locks its own mutations.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        hooks: ObservabilityHooks | None = None,
        metrics: GatewayMetrics | None = None,
        usage_tracker: UsageTracker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.hooks = hooks or ObservabilityHooks()
        self.metrics = metrics or GatewayMetrics()
        self.usage = usage_tracker or UsageTracker()
        self.cache = RequestCache(
            enabled=config.cache.enabled,
            max_size=config.cache.max_size,
            ttl_ms=config.cache.ttl_ms,
        )
        self._adapters: dict[str, ProviderAdapter] = {
            provider: build_adapter(provider, provider_config)
            for provider, provider_config in config.providers.items()
        }
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(transport=transport)

    async def __aenter__(self) -> Gateway:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def configured_providers(self) -> list[str]:
        return list(self._adapters)

    def adapter(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ProviderNotConfiguredError(provider) from None

    def provider_status(self) -> list[dict[str, Any]]:
        default_provider = self.config.resolve_default_provider()
        return [
            {
                "provider": provider,
                "default": provider == default_provider,
                "default_model": adapter.resolve_model(None),
                "config": redact(adapter.config.public_view()),
            }
            for provider, adapter in self._adapters.items()
        ]

    def clear_cache(self) -> None:
        self.cache.clear()

    def _resolve(self, options: ChatOptions) -> tuple[str, ProviderAdapter]:
        provider = options.provider or self.config.resolve_default_provider()
        if not provider:
            raise ProviderNotConfiguredError("default")
        return provider, self.adapter(provider)

    def _timeout_ms(self, options: ChatOptions) -> int:
        return options.timeout_ms or self.config.timeout_ms

    async def chat(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        options: ChatOptions | None = None,
        **overrides: Any,
    ) -> ChatResponse:
        opts = merge_options(options, overrides)
        if opts.signal is not None:
            opts.signal.raise_if_aborted("Request aborted")
        msgs = coerce_messages(messages)
        provider, adapter = self._resolve(opts)
        model = adapter.resolve_model(opts.model)
        span_id = generate_span_id()

        fingerprint: str | None = None
        if self.cache.enabled and opts.cache:
            fingerprint = opts.cache_key or compute_fingerprint(provider, model, msgs, opts)

        await self.hooks.emit("on_request_start", RequestStartEvent(msgs, model, provider, span_id))
        started = time.perf_counter()

        if fingerprint is not None:
            hit = self.cache.get(fingerprint)
            if hit is not None:
                hit.latency_ms = _elapsed_ms(started)
                await self._finish(msgs, hit, span_id, provider, model, cache_hit=True)
                return hit

        try:
            payload = adapter.format_request(msgs, opts, model)
            body = await self._post_json(adapter, provider, model, payload, self._timeout_ms(opts))
            response = adapter.parse_response(body, model)
            if opts.signal is not None:
                opts.signal.raise_if_aborted("Request aborted")
        except BinarioError as exc:
            await self._fail(exc, msgs, span_id, provider, model, _elapsed_ms(started))
            raise

        response.latency_ms = _elapsed_ms(started)
        response.cached = False
        if fingerprint is not None:
            self.cache.put(fingerprint, response, opts.cache_ttl_ms)
        await self._finish(msgs, response, span_id, provider, model, cache_hit=False if fingerprint else None)
        return response

    def stream_chat(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        options: ChatOptions | None = None,
        **overrides: Any,
    ) -> ChatStream:
        """Open a token stream. Streams never read or write the request cache."""
        opts = merge_options(options, overrides)
        if opts.signal is not None:
            opts.signal.raise_if_aborted("Request aborted")
        msgs = coerce_messages(messages)
        provider, adapter = self._resolve(opts)
        return ChatStream(self, adapter, provider, adapter.resolve_model(opts.model), msgs, opts)

    async def _post_json(
        self,
        adapter: ProviderAdapter,
        provider: str,
        model: str,
        payload: dict[str, Any],
        timeout_ms: int,
    ) -> Any:
        url = adapter.endpoint(model)
        timeout_s = timeout_ms / 1000
        try:
            response = await asyncio.wait_for(
                self._client.post(url, json=payload, headers=adapter.headers(), timeout=timeout_s),
                timeout=timeout_s,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ProviderTimeoutError(provider, timeout_ms) from exc
        except httpx.TransportError as exc:
            raise ProviderNetworkError(provider, f"{provider} request failed: {exc}") from exc

        if not response.is_success:
            raise error_from_status(provider, response.status_code, response.text, response.headers)
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise BackendError(
                provider, 502, f"{provider} response is not valid JSON", body=response.text[:500]
            ) from exc

    async def _open_stream(
        self,
        adapter: ProviderAdapter,
        provider: str,
        model: str,
        payload: dict[str, Any],
        timeout_ms: int,
    ) -> httpx.Response:
        request = self._client.build_request(
            "POST",
            adapter.endpoint(model, stream=True),
            json=payload,
            headers={**adapter.headers(), "Accept": "text/event-stream"},
            timeout=timeout_ms / 1000,
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(provider, timeout_ms) from exc
        except httpx.TransportError as exc:
            raise ProviderNetworkError(provider, f"{provider} request failed: {exc}") from exc

        if not response.is_success:
            try:
                text = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise error_from_status(provider, response.status_code, text, response.headers)
        return response

    async def _finish(
        self,
        messages: list[Message],
        response: ChatResponse,
        span_id: str,
        provider: str,
        model: str,
        *,
        cache_hit: bool | None,
    ) -> None:
        served_from_cache = cache_hit is True
        usage = response.usage
        neurons = 0
        if provider == "cloudflare" and not served_from_cache:
            neurons = calculate_neurons(model, usage.prompt_tokens, usage.completion_tokens)

        self.metrics.record_request(
            provider,
            prompt_tokens=0 if served_from_cache else usage.prompt_tokens,
            completion_tokens=0 if served_from_cache else usage.completion_tokens,
            latency_ms=response.latency_ms,
            cache_hit=cache_hit,
        )
        self.usage.track(
            UsageRecord(
                model=model,
                provider=provider,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                neurons=neurons,
                cached=served_from_cache,
                latency_ms=response.latency_ms,
            )
        )
        logger.info(
            "chat_request",
            extra={
                "trace_id": get_current_trace_id(),
                "span_id": span_id,
                "provider": provider,
                "model": model,
                "duration_ms": response.latency_ms,
                "cached": served_from_cache,
                "outcome": "cached" if served_from_cache else "ok",
            },
        )
        metrics = RequestMetrics(
            tokens_in=usage.prompt_tokens,
            tokens_out=usage.completion_tokens,
            latency_ms=response.latency_ms,
            cache_hit=served_from_cache,
            model=model,
            provider=provider,
            neurons_used=neurons,
        )
        await self.hooks.emit("on_request_end", RequestEndEvent(messages, response, span_id, metrics))

    async def _fail(
        self,
        exc: BinarioError,
        messages: list[Message],
        span_id: str,
        provider: str,
        model: str,
        latency_ms: int,
    ) -> None:
        exc.latency_ms = latency_ms
        if exc.provider is None:
            exc.provider = provider
        self.metrics.record_request(provider, latency_ms=latency_ms, failed=True)
        logger.warning(
            "chat_request failed: %s",
            exc.message,
            extra={
                "trace_id": get_current_trace_id(),
                "span_id": span_id,
                "provider": provider,
                "model": model,
                "duration_ms": latency_ms,
                "status": exc.status_code,
                "outcome": "error",
            },
        )
        await self.hooks.emit(
            "on_error", RequestErrorEvent(messages, model, provider, span_id, exc, latency_ms)
        )


class ChatStream:
    """Pull-based token stream; ``response`` holds the terminal value once drained."""

    def __init__(
        self,
        gateway: Gateway,
        adapter: ProviderAdapter,
        provider: str,
        model: str,
        messages: list[Message],
        options: ChatOptions,
    ) -> None:
        self.provider = provider
        self.model = model
        self.response: ChatResponse | None = None
        self._gateway = gateway
        self._adapter = adapter
        self._messages = messages
        self._options = options
        self._iterator: AsyncIterator[str] | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._generate()
        return self._iterator

    async def collect(self) -> ChatResponse:
        async for _ in self:
            pass
        assert self.response is not None
        return self.response

    async def _generate(self) -> AsyncIterator[str]:
        gateway, adapter = self._gateway, self._adapter
        span_id = generate_span_id()
        await gateway.hooks.emit(
            "on_request_start",
            RequestStartEvent(self._messages, self.model, self.provider, span_id, stream=True),
        )
        started = time.perf_counter()
        state = adapter.new_stream_state(self.model)
        timeout_ms = gateway._timeout_ms(self._options)
        try:
            payload = adapter.format_request(self._messages, self._options, self.model, stream=True)
            response = await gateway._open_stream(adapter, self.provider, self.model, payload, timeout_ms)
            try:
                async for token in adapter.decode_stream(
                    response.aiter_bytes(),
                    state,
                    max_pending_retries=gateway.config.stream_max_pending_retries,
                ):
                    yield token
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError(self.provider, timeout_ms) from exc
            except httpx.TransportError as exc:
                raise ProviderNetworkError(self.provider, f"{self.provider} stream interrupted: {exc}") from exc
            finally:
                await response.aclose()
        except BinarioError as exc:
            await gateway._fail(exc, self._messages, span_id, self.provider, self.model, _elapsed_ms(started))
            raise

        self.response = adapter.build_stream_response(state, _elapsed_ms(started))
        await gateway._finish(self._messages, self.response, span_id, self.provider, self.model, cache_hit=None)
