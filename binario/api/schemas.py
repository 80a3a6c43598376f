"""Request bodies for the HTTP service."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from binario.messages import ChatOptions, Message, ToolSchema


class MessageIn(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    name: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None

    def to_message(self) -> Message:
        return Message.from_dict(self.model_dump(exclude_none=True))


class ToolIn(BaseModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ChatRequestIn(BaseModel):
    messages: list[MessageIn] = Field(min_length=1)
    provider: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop: list[str] | None = None
    tools: list[ToolIn] | None = None
    tool_choice: str | dict[str, Any] | None = None
    timeout_ms: int | None = Field(default=None, ge=1)
    cache: bool = True
    cache_key: str | None = None
    cache_ttl_ms: int | None = Field(default=None, ge=1)
    stream: bool = False

    def to_messages(self) -> list[Message]:
        return [m.to_message() for m in self.messages]

    def to_options(self) -> ChatOptions:
        return ChatOptions(
            provider=self.provider,
            model=self.model,
            system_prompt=self.system_prompt,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            frequency_penalty=self.frequency_penalty,
            presence_penalty=self.presence_penalty,
            stop=tuple(self.stop) if self.stop else None,
            tools=tuple(ToolSchema(t.name, t.description, t.parameters) for t in self.tools or ()),
            tool_choice=self.tool_choice,
            timeout_ms=self.timeout_ms,
            cache=self.cache,
            cache_key=self.cache_key,
            cache_ttl_ms=self.cache_ttl_ms,
        )


class StructuredRequestIn(ChatRequestIn):
    # ``schema`` would shadow a BaseModel attribute.
    output_schema: dict[str, Any] = Field(alias="schema")
    retries: int = Field(default=2, ge=0, le=5)

    model_config = {"populate_by_name": True}
