from __future__ import annotations

import json
from collections import deque
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from binario.config import CacheConfig, GatewayConfig, ProviderConfig, Settings
from binario.gateway import Gateway
from binario.main import create_app


class MockBackend:
    """Scripted backend for ``httpx.MockTransport``: replies in order and counts every request."""

    def __init__(self) -> None:
        self.replies: deque[Any] = deque()
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def reply_json(self, body: Any, status: int = 200, headers: dict[str, str] | None = None) -> None:
        self.replies.append(httpx.Response(status, json=body, headers=headers))

    def reply_sse(self, *events: Any, done: bool = True) -> None:
        lines = [f"data: {e if isinstance(e, str) else json.dumps(e)}\n\n" for e in events]
        if done:
            lines.append("data: [DONE]\n\n")
        self.replies.append(
            httpx.Response(200, content="".join(lines).encode("utf-8"), headers={"content-type": "text/event-stream"})
        )

    def fail_with(self, exc: Exception) -> None:
        self.replies.append(exc)

    def sent_json(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError(f"unexpected backend request: {request.method} {request.url}")
        reply = self.replies.popleft()
        if isinstance(reply, Exception):
            raise reply
        return reply

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


def openai_completion(
    content: str = "",
    *,
    tool_calls: list[tuple[str, str, Any]] | None = None,
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": args if isinstance(args, str) else json.dumps(args)},
            }
            for call_id, name, args in tool_calls
        ]
    return {
        "id": "chatcmpl-test",
        "model": "gpt-4o",
        "choices": [
            {"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


@pytest.fixture
def backend() -> MockBackend:
    return MockBackend()


@pytest.fixture
def completion():
    return openai_completion


@pytest.fixture
def make_gateway(backend: MockBackend):
    def factory(
        providers: dict[str, ProviderConfig] | None = None,
        *,
        cache: bool = False,
        default_provider: str | None = None,
        **kwargs: Any,
    ) -> Gateway:
        config = GatewayConfig(
            providers=providers or {"openai": ProviderConfig(api_key="sk-test-openai-0123456789")},
            default_provider=default_provider,
            cache=CacheConfig(enabled=cache),
            **kwargs,
        )
        return Gateway(config, transport=backend.transport())

    return factory


@pytest.fixture
def api_gateway(make_gateway) -> Gateway:
    return make_gateway(cache=True)


@pytest.fixture
def client(api_gateway: Gateway):
    settings = Settings(gateway=api_gateway.config, host="127.0.0.1", port=8040, log_level="WARNING")
    app = create_app(settings, gateway=api_gateway)
    with TestClient(app) as test_client:
        yield test_client
