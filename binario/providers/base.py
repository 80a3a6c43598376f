"""Provider adapter interface: canonical request/response <-> backend wire format."""
from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Sequence

from binario.config import PROVIDER_ENV, ProviderConfig
from binario.errors import BackendError
from binario.messages import (
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ChatOptions,
    ChatResponse,
    Message,
    ToolCall,
    Usage,
)
from binario.models import resolve_model
from binario.streaming import iter_sse_json


@dataclass(slots=True)
class _PartialToolCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StreamState:
    """Accumulates one streamed turn until ``build_stream_response`` seals it."""

    provider: str
    model: str
    response_id: str = ""
    content_parts: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    _tool_calls: dict[int, _PartialToolCall] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    def add_tool_fragment(
        self,
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        partial = self._tool_calls.setdefault(index, _PartialToolCall())
        if call_id:
            partial.id = call_id
        if name:
            partial.name = name
        if arguments:
            partial.arguments.append(arguments)

    def tool_calls(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index in sorted(self._tool_calls):
            partial = self._tool_calls[index]
            if not partial.name:
                continue
            calls.append(
                ToolCall(
                    id=partial.id or f"call_{uuid.uuid4().hex[:8]}",
                    name=partial.name,
                    raw_arguments="".join(partial.arguments) or "{}",
                )
            )
        return calls

    def usage(self) -> Usage:
        return build_usage(self.prompt_tokens, self.completion_tokens, self.total_tokens)


class ProviderAdapter(ABC):
    name: str = ""

    def __init__(self, config: ProviderConfig, provider_id: str | None = None) -> None:
        self.config = config
        self.provider_id = provider_id or self.name

    @property
    def base_url(self) -> str:
        if self.config.base_url:
            return self.config.base_url.rstrip("/")
        _, default_base_url = PROVIDER_ENV.get(self.provider_id, PROVIDER_ENV.get(self.name, ("", "")))
        return default_base_url.rstrip("/")

    def resolve_model(self, model: str | None) -> str:
        return resolve_model(self.provider_id, model, self.config.default_model)

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.auth_headers())
        headers.update(self.config.extra_headers)
        return headers

    @abstractmethod
    def auth_headers(self) -> dict[str, str]: ...

    @abstractmethod
    def endpoint(self, model: str, *, stream: bool = False) -> str: ...

    @abstractmethod
    def format_request(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        model: str,
        *,
        stream: bool = False,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def parse_response(self, body: Any, model: str) -> ChatResponse: ...

    @abstractmethod
    def handle_stream_event(self, event: Any, state: StreamState) -> str | None:
        """Fold one decoded SSE payload into ``state``; return the text token, if any."""

    def new_stream_state(self, model: str) -> StreamState:
        return StreamState(provider=self.provider_id, model=model)

    async def decode_stream(
        self,
        chunks: AsyncIterable[bytes],
        state: StreamState,
        *,
        max_pending_retries: int = 8,
    ) -> AsyncIterator[str]:
        async for event in iter_sse_json(chunks, max_pending_retries):
            token = self.handle_stream_event(event, state)
            if token:
                state.content_parts.append(token)
                yield token

    def build_stream_response(self, state: StreamState, latency_ms: int = 0) -> ChatResponse:
        tool_calls = state.tool_calls()
        finish_reason = state.finish_reason or (FINISH_TOOL_CALLS if tool_calls else FINISH_STOP)
        return ChatResponse(
            id=state.response_id or str(uuid.uuid4()),
            provider=self.provider_id,
            model=state.model,
            content=state.content,
            usage=state.usage(),
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            latency_ms=latency_ms,
        )

    def stream_error(self, message: str, status: int = 502) -> BackendError:
        return BackendError(self.provider_id, status, f"{self.provider_id} stream error: {message}")


def with_system_prompt(messages: Sequence[Message], system_prompt: str | None) -> list[Message]:
    """Prepend ``system_prompt`` unless the conversation already carries a system message."""
    result = list(messages)
    if system_prompt and not any(m.role == "system" for m in result):
        result.insert(0, Message(role="system", content=system_prompt))
    return result


def build_usage(prompt_tokens: Any, completion_tokens: Any, total_tokens: Any = None) -> Usage:
    prompt = to_non_negative_int(prompt_tokens)
    completion = to_non_negative_int(completion_tokens)
    total = to_non_negative_int(total_tokens)
    if total == 0:
        total = prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def to_non_negative_int(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return 0
    if parsed < 0:
        return 0
    return parsed


def encode_arguments(raw: Any) -> str:
    """Keep string arguments untouched; serialize structured ones."""
    if isinstance(raw, str):
        return raw or "{}"
    if raw is None:
        return "{}"
    return json.dumps(raw, ensure_ascii=False)


def decode_arguments(raw_arguments: str) -> dict[str, Any]:
    """Best-effort object view of raw arguments, for backends that need structured input."""
    try:
        parsed = json.loads(raw_arguments or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def sampling_fields(options: ChatOptions) -> dict[str, Any]:
    fields = {
        "temperature": options.temperature,
        "max_tokens": options.max_tokens,
        "top_p": options.top_p,
        "frequency_penalty": options.frequency_penalty,
        "presence_penalty": options.presence_penalty,
        "stop": list(options.stop) if options.stop else None,
    }
    return {key: value for key, value in fields.items() if value is not None}
