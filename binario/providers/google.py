"""Google Gemini ``generateContent`` wire format."""
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
from binario.providers.base import ProviderAdapter, StreamState, build_usage, decode_arguments, to_non_negative_int

_FINISH_REASONS = {
    "STOP": FINISH_STOP,
    "MAX_TOKENS": FINISH_LENGTH,
    "SAFETY": FINISH_CONTENT_FILTER,
    "RECITATION": FINISH_CONTENT_FILTER,
    "BLOCKLIST": FINISH_CONTENT_FILTER,
    "PROHIBITED_CONTENT": FINISH_CONTENT_FILTER,
    "SPII": FINISH_CONTENT_FILTER,
}


class GoogleAdapter(ProviderAdapter):
    name = "google"

    def auth_headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.config.api_key}

    def endpoint(self, model: str, *, stream: bool = False) -> str:
        if stream:
            return f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{model}:generateContent"

    def format_request(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        model: str,
        *,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"contents": _to_google_contents(messages)}
        system_chunks = [m.content for m in messages if m.role == "system"]
        if not system_chunks and options.system_prompt:
            system_chunks = [options.system_prompt]
        if system_chunks:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_chunks)}]}
        if options.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in options.tools
                    ]
                }
            ]

        generation_config = {
            "temperature": options.temperature,
            "maxOutputTokens": options.max_tokens,
            "topP": options.top_p,
            "frequencyPenalty": options.frequency_penalty,
            "presencePenalty": options.presence_penalty,
            "stopSequences": list(options.stop) if options.stop else None,
        }
        generation_config = {k: v for k, v in generation_config.items() if v is not None}
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def parse_response(self, body: Any, model: str) -> ChatResponse:
        if not isinstance(body, dict):
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response must be a JSON object")
        candidates = body.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response has no candidates")

        candidate = candidates[0]
        text, tool_calls = _read_parts(candidate, start_index=0)
        usage = body.get("usageMetadata") if isinstance(body.get("usageMetadata"), dict) else {}
        return ChatResponse(
            id=str(body.get("responseId") or uuid.uuid4()),
            provider=self.provider_id,
            model=str(body.get("modelVersion") or model),
            content=text,
            usage=build_usage(
                usage.get("promptTokenCount"),
                usage.get("candidatesTokenCount"),
                usage.get("totalTokenCount"),
            ),
            finish_reason=_map_finish_reason(candidate.get("finishReason"), bool(tool_calls)),
            tool_calls=tool_calls,
        )

    def handle_stream_event(self, event: Any, state: StreamState) -> str | None:
        if not isinstance(event, dict):
            return None
        if isinstance(event.get("error"), dict):
            raise self.stream_error(str(event["error"].get("message") or "unknown error"))
        if event.get("responseId") and not state.response_id:
            state.response_id = str(event["responseId"])

        usage = event.get("usageMetadata")
        if isinstance(usage, dict):
            state.prompt_tokens = to_non_negative_int(usage.get("promptTokenCount"))
            state.completion_tokens = to_non_negative_int(usage.get("candidatesTokenCount"))
            state.total_tokens = to_non_negative_int(usage.get("totalTokenCount"))

        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return None
        candidate = candidates[0]
        existing = len(state.tool_calls())
        text, tool_calls = _read_parts(candidate, start_index=existing)
        for offset, call in enumerate(tool_calls):
            state.add_tool_fragment(existing + offset, call_id=call.id, name=call.name, arguments=call.raw_arguments)
        if candidate.get("finishReason"):
            state.finish_reason = _map_finish_reason(candidate["finishReason"], bool(state.tool_calls()))
        return text or None


def _read_parts(candidate: dict[str, Any], start_index: int) -> tuple[str, list[ToolCall]]:
    content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
    parts = content.get("parts") if isinstance(content.get("parts"), list) else []
    text_fragments: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        if isinstance(part.get("text"), str) and not part.get("thought"):
            text_fragments.append(part["text"])
        function_call = part.get("functionCall")
        if isinstance(function_call, dict):
            name = str(function_call.get("name") or "").strip()
            if name == "":
                continue
            args = function_call.get("args")
            tool_calls.append(
                ToolCall(
                    id=str(function_call.get("id") or f"google_call_{start_index + len(tool_calls) + 1}"),
                    name=name,
                    raw_arguments=json.dumps(args if isinstance(args, dict) else {}, ensure_ascii=False),
                )
            )
    return "".join(text_fragments), tool_calls


def _to_google_contents(messages: Sequence[Message]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}
    for message in messages:
        if message.role == "system":
            continue
        if message.role == "assistant":
            parts: list[dict[str, Any]] = []
            if message.content:
                parts.append({"text": message.content})
            for tc in message.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": decode_arguments(tc.raw_arguments)}})
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
        elif message.role == "tool":
            name = message.name or call_names.get(message.tool_call_id or "", "")
            contents.append(
                {
                    "role": "user",
                    "parts": [{"functionResponse": {"name": name, "response": {"content": message.content}}}],
                }
            )
        else:
            contents.append({"role": "user", "parts": [{"text": message.content}]})
    return contents


def _map_finish_reason(raw: Any, has_tool_calls: bool) -> str:
    if has_tool_calls:
        return FINISH_TOOL_CALLS
    return _FINISH_REASONS.get(str(raw or "").upper(), FINISH_STOP)
