"""OpenAI Chat Completions wire format, shared by every OpenAI-compatible backend."""
from __future__ import annotations

import json
import uuid
from typing import Any, Sequence

from binario.errors import BackendError, error_from_status
from binario.messages import (
    FINISH_CONTENT_FILTER,
    FINISH_ERROR,
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
    encode_arguments,
    sampling_fields,
    to_non_negative_int,
    with_system_prompt,
)

_FINISH_REASONS = {
    "stop": FINISH_STOP,
    "eos": FINISH_STOP,
    "length": FINISH_LENGTH,
    "max_tokens": FINISH_LENGTH,
    "tool_calls": FINISH_TOOL_CALLS,
    "function_call": FINISH_TOOL_CALLS,
    "content_filter": FINISH_CONTENT_FILTER,
    "error": FINISH_ERROR,
}


class OpenAICompatibleAdapter(ProviderAdapter):
    name = "openai"
    include_stream_usage = True

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"} if self.config.api_key else {}

    def endpoint(self, model: str, *, stream: bool = False) -> str:
        return f"{self.base_url}/chat/completions"

    def default_sampling(self) -> dict[str, Any]:
        return {}

    def format_request(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        model: str,
        *,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": _to_openai_messages(with_system_prompt(messages, options.system_prompt)),
        }
        payload.update(self.default_sampling())
        payload.update(sampling_fields(options))
        if options.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in options.tools
            ]
            payload["tool_choice"] = options.tool_choice or "auto"
        if stream:
            payload["stream"] = True
            if self.include_stream_usage:
                payload["stream_options"] = {"include_usage": True}
        return payload

    def parse_response(self, body: Any, model: str) -> ChatResponse:
        if not isinstance(body, dict):
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response must be a JSON object")
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            error = body.get("error")
            if error:
                code = error.get("code") if isinstance(error, dict) else None
                status = code if isinstance(code, int) and 400 <= code <= 599 else 502
                raise error_from_status(self.provider_id, status, _json_text(body))
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response has no choices")

        choice = choices[0]
        message = choice.get("message") if isinstance(choice.get("message"), dict) else {}
        tool_calls = _extract_tool_calls(message.get("tool_calls"))
        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        return ChatResponse(
            id=str(body.get("id") or uuid.uuid4()),
            provider=self.provider_id,
            model=str(body.get("model") or model),
            content=_extract_text(message.get("content")),
            usage=build_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")),
            finish_reason=_map_finish_reason(choice.get("finish_reason"), bool(tool_calls)),
            tool_calls=tool_calls,
        )

    def handle_stream_event(self, event: Any, state: StreamState) -> str | None:
        if not isinstance(event, dict):
            return None
        if event.get("error"):
            error = event["error"]
            raise self.stream_error(str(error.get("message") if isinstance(error, dict) else error))
        if event.get("id") and not state.response_id:
            state.response_id = str(event["id"])

        usage = event.get("usage")
        if isinstance(usage, dict):
            state.prompt_tokens = to_non_negative_int(usage.get("prompt_tokens"))
            state.completion_tokens = to_non_negative_int(usage.get("completion_tokens"))
            state.total_tokens = to_non_negative_int(usage.get("total_tokens"))

        choices = event.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]
        if choice.get("finish_reason"):
            state.finish_reason = _map_finish_reason(choice["finish_reason"], False)

        delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
        for position, fragment in enumerate(delta.get("tool_calls") or []):
            if not isinstance(fragment, dict):
                continue
            function = fragment.get("function") if isinstance(fragment.get("function"), dict) else {}
            state.add_tool_fragment(
                to_non_negative_int(fragment.get("index", position)),
                call_id=fragment.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments"),
            )
        content = delta.get("content")
        return content if isinstance(content, str) and content else None


def _to_openai_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.content}
            if message.tool_calls:
                entry["content"] = message.content or None
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.raw_arguments},
                    }
                    for tc in message.tool_calls
                ]
            normalized.append(entry)
        elif message.role == "tool":
            entry = {"role": "tool", "tool_call_id": message.tool_call_id or "", "content": message.content}
            if message.name:
                entry["name"] = message.name
            normalized.append(entry)
        else:
            entry = {"role": message.role, "content": message.content}
            if message.name:
                entry["name"] = message.name
            normalized.append(entry)
    return normalized


def _extract_text(raw_content: Any) -> str:
    if isinstance(raw_content, str):
        return raw_content
    if isinstance(raw_content, list):
        return "".join(
            str(item.get("text") or "")
            for item in raw_content
            if isinstance(item, dict) and item.get("type") == "text"
        )
    return ""


def _extract_tool_calls(raw_tool_calls: Any) -> list[ToolCall]:
    if not isinstance(raw_tool_calls, list):
        return []
    tool_calls: list[ToolCall] = []
    for idx, item in enumerate(raw_tool_calls):
        if not isinstance(item, dict):
            continue
        function_block = item.get("function")
        if not isinstance(function_block, dict):
            continue
        name = str(function_block.get("name") or "").strip()
        if name == "":
            continue
        tool_calls.append(
            ToolCall(
                id=str(item.get("id") or f"call_{idx + 1}"),
                name=name,
                raw_arguments=encode_arguments(function_block.get("arguments")),
            )
        )
    return tool_calls


def _map_finish_reason(raw: Any, has_tool_calls: bool) -> str:
    mapped = _FINISH_REASONS.get(str(raw or "").lower())
    if mapped is not None:
        return mapped
    return FINISH_TOOL_CALLS if has_tool_calls else FINISH_STOP


def _json_text(body: Any) -> str:
    return json.dumps(body, ensure_ascii=False)
