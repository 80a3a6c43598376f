from __future__ import annotations

from binario.cache import RequestCache, compute_fingerprint
from binario.cancellation import AbortSignal
from binario.messages import ChatOptions, ChatResponse, Message, ToolCall


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _response(content: str = "hi") -> ChatResponse:
    return ChatResponse(id="r1", provider="openai", model="gpt-4o", content=content)


def test_get_returns_marked_copy():
    cache = RequestCache(enabled=True)
    original = _response()
    original.tool_calls.append(ToolCall("c1", "t"))
    cache.put("fp", original)

    hit = cache.get("fp")

    assert hit is not None and hit is not original
    assert hit.cached is True
    assert original.cached is False
    hit.tool_calls.clear()
    assert len(cache.get("fp").tool_calls) == 1


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = RequestCache(enabled=True, ttl_ms=1000, clock=clock)
    cache.put("fp", _response())
    clock.now += 0.5
    assert cache.get("fp") is not None
    clock.now += 0.5
    assert cache.get("fp") is None
    assert len(cache) == 0


def test_per_entry_ttl_override():
    clock = FakeClock()
    cache = RequestCache(enabled=True, ttl_ms=1000, clock=clock)
    cache.put("fp", _response(), ttl_ms=5000)
    clock.now += 2
    assert cache.get("fp") is not None


def test_least_recently_used_entry_is_evicted():
    cache = RequestCache(enabled=True, max_size=2)
    cache.put("a", _response("a"))
    cache.put("b", _response("b"))
    cache.get("a")
    cache.put("c", _response("c"))

    assert cache.get("b") is None
    assert cache.get("a").content == "a"
    assert cache.get("c").content == "c"


def test_disabled_cache_is_a_no_op():
    cache = RequestCache(enabled=False)
    cache.put("fp", _response())
    assert cache.get("fp") is None
    assert len(cache) == 0


def test_clear_empties_cache():
    cache = RequestCache(enabled=True)
    cache.put("fp", _response())
    cache.clear()
    assert cache.get("fp") is None


def test_fingerprint_covers_generation_fields_only():
    messages = [Message(role="user", content="hi")]
    base = compute_fingerprint("openai", "gpt-4o", messages, ChatOptions(temperature=0.1))

    assert base == compute_fingerprint("openai", "gpt-4o", list(messages), ChatOptions(temperature=0.1))
    assert base == compute_fingerprint(
        "openai", "gpt-4o", messages, ChatOptions(temperature=0.1, timeout_ms=5000, signal=AbortSignal())
    )
    assert base != compute_fingerprint("openai", "gpt-4o", messages, ChatOptions(temperature=0.2))
    assert base != compute_fingerprint("openai", "gpt-4o-mini", messages, ChatOptions(temperature=0.1))
    assert base != compute_fingerprint("anthropic", "gpt-4o", messages, ChatOptions(temperature=0.1))
    assert base != compute_fingerprint(
        "openai", "gpt-4o", [Message(role="user", content="hi!")], ChatOptions(temperature=0.1)
    )
