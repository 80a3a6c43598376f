"""Cloudflare Workers AI REST wire format (``/accounts/{id}/ai/run/{model}``)."""
from __future__ import annotations

import uuid
from typing import Any, Sequence

from binario.errors import BackendError
from binario.messages import FINISH_STOP, FINISH_TOOL_CALLS, ChatOptions, ChatResponse, Message, ToolCall
from binario.models import supports_tool_calling
from binario.providers.base import (
    ProviderAdapter,
    StreamState,
    build_usage,
    encode_arguments,
    sampling_fields,
    to_non_negative_int,
    with_system_prompt,
)

DEFAULT_MAX_TOKENS = 256


class CloudflareAdapter(ProviderAdapter):
    name = "cloudflare"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def endpoint(self, model: str, *, stream: bool = False) -> str:
        return f"{self.base_url}/accounts/{self.config.account_id}/ai/run/{model}"

    def format_request(
        self,
        messages: Sequence[Message],
        options: ChatOptions,
        model: str,
        *,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messages": [_to_cloudflare_message(m) for m in with_system_prompt(messages, options.system_prompt)],
            "max_tokens": DEFAULT_MAX_TOKENS,
        }
        payload.update(sampling_fields(options))
        payload.pop("stop", None)
        # Workers AI rejects tools for models without function calling.
        if options.tools and supports_tool_calling(self.provider_id, model):
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in options.tools
            ]
        payload["stream"] = stream
        return payload

    def parse_response(self, body: Any, model: str) -> ChatResponse:
        if not isinstance(body, dict):
            raise BackendError(self.provider_id, 502, f"{self.provider_id} response must be a JSON object")
        if body.get("success") is False:
            errors = body.get("errors") if isinstance(body.get("errors"), list) else []
            first = errors[0] if errors and isinstance(errors[0], dict) else {}
            raise BackendError(
                self.provider_id,
                502,
                f"{self.provider_id} error: {first.get('message') or 'Unknown error'}",
            )

        result = body.get("result") if isinstance(body.get("result"), dict) else body
        tool_calls = _extract_tool_calls(result.get("tool_calls"))
        usage = result.get("usage") if isinstance(result.get("usage"), dict) else {}
        content = result.get("response")
        return ChatResponse(
            id=str(uuid.uuid4()),
            provider=self.provider_id,
            model=model,
            content=content if isinstance(content, str) else ("" if content is None else str(content)),
            usage=build_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")),
            finish_reason=FINISH_TOOL_CALLS if tool_calls else FINISH_STOP,
            tool_calls=tool_calls,
        )

    def handle_stream_event(self, event: Any, state: StreamState) -> str | None:
        if not isinstance(event, dict):
            return None
        if event.get("errors") and event.get("success") is False:
            raise self.stream_error(str(event["errors"]))

        usage = event.get("usage")
        if isinstance(usage, dict):
            state.prompt_tokens = to_non_negative_int(usage.get("prompt_tokens"))
            state.completion_tokens = to_non_negative_int(usage.get("completion_tokens"))
            state.total_tokens = to_non_negative_int(usage.get("total_tokens"))

        for position, call in enumerate(_extract_tool_calls(event.get("tool_calls"))):
            state.add_tool_fragment(position, call_id=call.id, name=call.name, arguments=call.raw_arguments)

        token = event.get("response")
        return token if isinstance(token, str) and token else None


def _to_cloudflare_message(message: Message) -> dict[str, Any]:
    entry: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.role == "assistant" and message.tool_calls:
        entry["tool_calls"] = [
            {"id": tc.id, "type": "function", "function": {"name": tc.name, "arguments": tc.raw_arguments}}
            for tc in message.tool_calls
        ]
    if message.role == "tool":
        entry["tool_call_id"] = message.tool_call_id or ""
        if message.name:
            entry["name"] = message.name
    return entry


def _extract_tool_calls(raw_tool_calls: Any) -> list[ToolCall]:
    """Workers AI returns either ``{name, arguments}`` or the OpenAI ``{id, function}`` shape."""
    if not isinstance(raw_tool_calls, list):
        return []
    tool_calls: list[ToolCall] = []
    for item in raw_tool_calls:
        if not isinstance(item, dict):
            continue
        function_block = item.get("function") if isinstance(item.get("function"), dict) else item
        name = str(function_block.get("name") or "").strip()
        if name == "":
            continue
        tool_calls.append(
            ToolCall(
                id=str(item.get("id") or f"call_{uuid.uuid4().hex[:8]}"),
                name=name,
                raw_arguments=encode_arguments(function_block.get("arguments")),
            )
        )
    return tool_calls
