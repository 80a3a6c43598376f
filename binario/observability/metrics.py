from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class GatewayMetrics:
    requests_total: int = 0
    requests_failed_total: int = 0
    cache_hits_total: int = 0
    cache_misses_total: int = 0
    prompt_tokens_total: int = 0
    completion_tokens_total: int = 0
    latency_ms_total: int = 0
    requests_by_provider: Dict[str, int] = field(default_factory=dict)
    tool_calls_total: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_request(
        self,
        provider: str,
        *,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        latency_ms: int = 0,
        cache_hit: bool | None = None,
        failed: bool = False,
    ) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_by_provider[provider] = self.requests_by_provider.get(provider, 0) + 1
            if failed:
                self.requests_failed_total += 1
            if cache_hit is True:
                self.cache_hits_total += 1
            elif cache_hit is False:
                self.cache_misses_total += 1
            self.prompt_tokens_total += prompt_tokens
            self.completion_tokens_total += completion_tokens
            self.latency_ms_total += latency_ms

    def increment_tool_call(self, tool_name: str) -> None:
        with self._lock:
            self.tool_calls_total[tool_name] = self.tool_calls_total.get(tool_name, 0) + 1

    def snapshot(self) -> dict:
        return {
            "requests_total": self.requests_total,
            "requests_failed_total": self.requests_failed_total,
            "cache_hits_total": self.cache_hits_total,
            "cache_misses_total": self.cache_misses_total,
            "prompt_tokens_total": self.prompt_tokens_total,
            "completion_tokens_total": self.completion_tokens_total,
            "latency_ms_total": self.latency_ms_total,
            "requests_by_provider": dict(self.requests_by_provider),
            "tool_calls_total": dict(self.tool_calls_total),
        }


_gateway_metrics = GatewayMetrics()


def get_gateway_metrics() -> GatewayMetrics:
    return _gateway_metrics
