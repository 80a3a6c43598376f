from __future__ import annotations

import dataclasses
import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Sequence

from binario.messages import ChatOptions, ChatResponse, Message


@dataclass(slots=True)
class CacheEntry:
    fingerprint: str
    response: ChatResponse
    expires_at: float


def compute_fingerprint(provider: str, model: str, messages: Sequence[Message], options: ChatOptions) -> str:
    """SHA-256 over every request field that changes the generated response."""
    payload = {
        "provider": provider,
        "model": model,
        "messages": [m.to_dict() for m in messages],
        "options": options.sampling(),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class RequestCache:
    """Bounded LRU of chat responses with lazy TTL expiry.

    A disabled cache misses on every ``get`` and ignores ``put``.
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        max_size: int = 100,
        ttl_ms: int = 3_600_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.max_size = max(1, max_size)
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, fingerprint: str) -> ChatResponse | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[fingerprint]
                return None
            self._entries.move_to_end(fingerprint)
            return dataclasses.replace(entry.response, cached=True, tool_calls=list(entry.response.tool_calls))

    def put(self, fingerprint: str, response: ChatResponse, ttl_ms: int | None = None) -> None:
        if not self.enabled:
            return
        ttl = self.ttl_ms if ttl_ms is None else ttl_ms
        stored = dataclasses.replace(response, cached=False, tool_calls=list(response.tool_calls))
        with self._lock:
            self._entries[fingerprint] = CacheEntry(fingerprint, stored, self._clock() + ttl / 1000)
            self._entries.move_to_end(fingerprint)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
