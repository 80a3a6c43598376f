"""Anthropic Messages API wire format with native tool_use blocks."""
from __future__ import annotations

import json
import uuid
from typing import Any, Sequence

from binario.errors import BackendError
from binario.messages import (
    FINISH_CONTENT_FILTER,
    FINISH_LENGTH,
    FINISH_STOP,
    FINISH_TOOL_CALLS,
    ChatOptions,
    ChatResponse,
    Message,
    ToolCall,
)
from binario.providers.base import (
    ProviderAdapter,
    StreamState,
    build_usage,
    decode_arguments,
    to_non_negative_int,
)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {
    "end_turn": FINISH_STOP,
    "stop_sequence": FINISH_STOP,
    "pause_turn": FINISH_STOP,
    "max_tokens": FINISH_LENGTH,
    "tool_use": FINISH_TOOL_CALLS,
    "refusal": FINISH_CONTENT_FILTER,
}


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"

    def auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.config.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def endpoint(self, model: str, *, stream: bool = False) -> str:
        return f"{self.base_url}/messages"

    def format_request(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        model: str,
        *,
        stream: bool = False,
    ) -> dict[str, Any]:
        system_chunks = [m.content for m in messages if m.role == "system"]
        if not system_chunks and options.system_prompt:
            system_chunks = [options.system_prompt]

        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": _build_messages(messages),
        }
        if system_chunks:
            payload["system"] = "\n\n".join(system_chunks)
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop:
            payload["stop_sequences"] = list(options.stop)
        if options.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in options.tools
            ]
            tool_choice = _build_tool_choice(options.tool_choice)
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        if stream:
            payload["stream"] = True
        return payload

    def parse_response(self, body: Any, model: str) -> ChatResponse:
        if not isinstance(body, dict) or not isinstance(body.get("content"), list):
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response has no content blocks")

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in body["content"]:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text_parts.append(str(block.get("text") or ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=str(block.get("id") or f"toolu_{uuid.uuid4().hex[:12]}"),
                        name=str(block.get("name") or ""),
                        raw_arguments=json.dumps(block.get("input") or {}, ensure_ascii=False),
                    )
                )

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return ChatResponse(
            id=str(body.get("id") or uuid.uuid4()),
            provider=self.provider_id,
            model=str(body.get("model") or model),
            content="".join(text_parts),
            usage=build_usage(usage.get("input_tokens"), usage.get("output_tokens")),
            finish_reason=_map_stop_reason(body.get("stop_reason"), bool(tool_calls)),
            tool_calls=tool_calls,
        )

    def handle_stream_event(self, event: Any, state: StreamState) -> str | None:
        if not isinstance(event, dict):
            return None
        event_type = event.get("type")

        if event_type == "message_start":
            message = event.get("message") if isinstance(event.get("message"), dict) else {}
            state.response_id = str(message.get("id") or state.response_id)
            usage = message.get("usage") if isinstance(message.get("usage"), dict) else {}
            state.prompt_tokens = to_non_negative_int(usage.get("input_tokens"))
            state.completion_tokens = to_non_negative_int(usage.get("output_tokens"))
        elif event_type == "content_block_start":
            block = event.get("content_block") if isinstance(event.get("content_block"), dict) else {}
            if block.get("type") == "tool_use":
                state.add_tool_fragment(
                    to_non_negative_int(event.get("index")),
                    call_id=block.get("id"),
                    name=block.get("name"),
                )
            elif block.get("type") == "text" and block.get("text"):
                return str(block["text"])
        elif event_type == "content_block_delta":
            delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
            if delta.get("type") == "text_delta":
                return str(delta.get("text") or "") or None
            if delta.get("type") == "input_json_delta":
                state.add_tool_fragment(
                    to_non_negative_int(event.get("index")),
                    arguments=str(delta.get("partial_json") or ""),
                )
        elif event_type == "message_delta":
            delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
            if delta.get("stop_reason"):
                state.finish_reason = _map_stop_reason(delta["stop_reason"], False)
            usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
            if "output_tokens" in usage:
                state.completion_tokens = to_non_negative_int(usage.get("output_tokens"))
        elif event_type == "error":
            error = event.get("error") if isinstance(event.get("error"), dict) else {}
            raise self.stream_error(str(error.get("message") or "unknown error"))
        return None


def _build_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Map canonical turns onto user/assistant content blocks.

    Consecutive tool results collapse into one user turn, since the API requires
    strictly alternating roles after a multi-call assistant turn.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "assistant":
            if not msg.tool_calls:
                result.append({"role": "assistant", "content": msg.content})
                continue
            content: list[dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                content.append(
                    {"type": "tool_use", "id": tc.id, "name": tc.name, "input": decode_arguments(tc.raw_arguments)}
                )
            result.append({"role": "assistant", "content": content})
        elif msg.role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id or "", "content": msg.content}
            previous = result[-1] if result else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})
        else:
            result.append({"role": "user", "content": msg.content})
    return result


def _build_tool_choice(tool_choice: Any) -> dict[str, Any] | None:
    if tool_choice is None or tool_choice == "auto":
        return {"type": "auto"}
    if tool_choice == "required":
        return {"type": "any"}
    if tool_choice == "none":
        return {"type": "none"}
    if isinstance(tool_choice, dict):
        function = tool_choice.get("function")
        if isinstance(function, dict) and function.get("name"):
            return {"type": "tool", "name": function["name"]}
        return tool_choice
    return {"type": "tool", "name": str(tool_choice)}


def _map_stop_reason(raw: Any, has_tool_calls: bool) -> str:
    mapped = _STOP_REASONS.get(str(raw or ""))
    if mapped is not None:
        return mapped
    return FINISH_TOOL_CALLS if has_tool_calls else FINISH_STOP
