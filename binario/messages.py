"""Canonical message and response types shared by every provider adapter."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from binario.cancellation import AbortSignal

Role = Literal["system", "user", "assistant", "tool"]
ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})

FINISH_STOP = "stop"
FINISH_LENGTH = "length"
FINISH_TOOL_CALLS = "tool_calls"
FINISH_CONTENT_FILTER = "content_filter"
FINISH_ERROR = "error"
FINISH_REASONS: frozenset[str] = frozenset(
    {FINISH_STOP, FINISH_LENGTH, FINISH_TOOL_CALLS, FINISH_CONTENT_FILTER, FINISH_ERROR}
)


@dataclass(slots=True, frozen=True)
class ToolCall:
    id: str
    name: str
    raw_arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.raw_arguments}


@dataclass(slots=True)
class Message:
    role: str  # "system" | "user" | "assistant" | "tool"
    content: str = ""
    name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"unsupported message role: {self.role!r}")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        if self.tool_calls:
            payload["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        raw_calls = data.get("tool_calls") or []
        tool_calls: list[ToolCall] = []
        for tc in raw_calls:
            if not isinstance(tc, dict):
                continue
            # Accept both the flat shape and OpenAI's ``{"function": {...}}`` nesting.
            block = tc.get("function") if isinstance(tc.get("function"), dict) else tc
            arguments = block.get("arguments")
            tool_calls.append(
                ToolCall(
                    id=str(tc.get("id") or ""),
                    name=str(block.get("name") or ""),
                    raw_arguments=arguments if isinstance(arguments, str) else json.dumps(arguments or {}),
                )
            )
        return cls(
            role=str(data.get("role") or ""),
            content=str(data.get("content") or ""),
            name=data.get("name"),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(slots=True, frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True, frozen=True)
class ToolSchema:
    name: str
    description: str
    parameters: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


@dataclass(slots=True, frozen=True)
class ChatOptions:
    provider: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: tuple[str, ...] | None = None
    tools: tuple[ToolSchema, ...] = ()
    tool_choice: str | dict[str, Any] | None = None
    timeout_ms: int | None = None
    cache: bool = True
    cache_key: str | None = None
    cache_ttl_ms: int | None = None
    signal: AbortSignal | None = field(default=None, compare=False)

    def sampling(self) -> dict[str, Any]:
        """Fields that change what a backend generates; everything else is transport."""
        return {
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
            "stop": list(self.stop) if self.stop else None,
            "tools": [t.to_dict() for t in self.tools],
            "tool_choice": self.tool_choice,
        }


@dataclass(slots=True)
class ChatResponse:
    id: str
    provider: str
    model: str
    content: str
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = FINISH_STOP
    tool_calls: list[ToolCall] = field(default_factory=list)
    latency_ms: int = 0
    cached: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "provider": self.provider,
            "model": self.model,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "finish_reason": self.finish_reason,
            "latency_ms": self.latency_ms,
            "cached": self.cached,
        }
        if self.tool_calls:
            payload["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return payload
