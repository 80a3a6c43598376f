"""Adapter wire-format tests against synthetic backend bodies."""
from __future__ import annotations

import json

import pytest

from binario.config import ProviderConfig
from binario.errors import BackendError, RateLimitedError
from binario.messages import FINISH_LENGTH, FINISH_STOP, FINISH_TOOL_CALLS, ChatOptions, Message, ToolCall, ToolSchema
from binario.providers.anthropic import AnthropicAdapter
from binario.providers.cloudflare import CloudflareAdapter
from binario.providers.google import GoogleAdapter
from binario.providers.openai_compatible import OpenAICompatibleAdapter
from binario.providers.openrouter import OpenRouterAdapter
from binario.providers.router import SUPPORTED_PROVIDERS, build_adapter

WEATHER_TOOL = ToolSchema(
    name="get_weather",
    description="Look up the weather",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
)


async def _chunks(*parts: str):
    for part in parts:
        yield part.encode("utf-8")


async def _drain(adapter, *parts: str):
    state = adapter.new_stream_state("test-model")
    tokens = [token async for token in adapter.decode_stream(_chunks(*parts), state)]
    return tokens, adapter.build_stream_response(state)


def _conversation() -> list[Message]:
    return [
        Message(role="user", content="first"),
        Message(role="assistant", content="second"),
        Message(role="user", content="third"),
    ]


# ─── OpenAI-compatible ───────────────────────────────────────────────────────

def test_openai_format_request_prepends_system_prompt_and_tools():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    options = ChatOptions(system_prompt="Be brief.", temperature=0.2, stop=("END",), tools=(WEATHER_TOOL,))

    payload = adapter.format_request(_conversation(), options, "gpt-4o")

    assert payload["model"] == "gpt-4o"
    assert [m["content"] for m in payload["messages"]] == ["Be brief.", "first", "second", "third"]
    assert payload["messages"][0]["role"] == "system"
    assert payload["temperature"] == 0.2
    assert payload["stop"] == ["END"]
    assert payload["tools"][0]["function"]["name"] == "get_weather"
    assert payload["tool_choice"] == "auto"
    assert "stream" not in payload


def test_openai_format_request_keeps_existing_system_message():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    messages = [Message(role="system", content="Original."), Message(role="user", content="hi")]

    payload = adapter.format_request(messages, ChatOptions(system_prompt="Ignored."), "gpt-4o")

    assert [m["content"] for m in payload["messages"]] == ["Original.", "hi"]


def test_openai_format_request_stream_asks_for_usage():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    payload = adapter.format_request(_conversation(), ChatOptions(), "gpt-4o", stream=True)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}


def test_openai_parse_response_preserves_tool_call_ids_and_raw_arguments():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    body = {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": "call_a", "type": "function", "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'}},
                        {"id": "call_b", "type": "function", "function": {"name": "get_weather", "arguments": "{bad json"}},
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 12, "completion_tokens": 8},
    }

    response = adapter.parse_response(body, "gpt-4o")

    assert response.content == ""
    assert [tc.id for tc in response.tool_calls] == ["call_a", "call_b"]
    assert response.tool_calls[0].raw_arguments == '{"city": "Oslo"}'
    assert response.tool_calls[1].raw_arguments == "{bad json"
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert response.usage.total_tokens == 20


def test_openai_parse_response_error_body_is_typed():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    with pytest.raises(RateLimitedError):
        adapter.parse_response({"error": {"message": "slow down", "code": 429}}, "gpt-4o")
    with pytest.raises(BackendError):
        adapter.parse_response({"choices": []}, "gpt-4o")


@pytest.mark.asyncio
async def test_openai_decode_stream_accumulates_tokens_tool_calls_and_usage():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    events = [
        {"id": "c1", "choices": [{"delta": {"content": "Hel"}}]},
        {"id": "c1", "choices": [{"delta": {"content": "lo"}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "get_weather", "arguments": '{"ci'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'ty": "Oslo"}'}}]}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}},
    ]
    parts = [f"data: {json.dumps(e)}\n\n" for e in events] + ["data: [DONE]\n\n"]

    tokens, response = await _drain(adapter, *parts)

    assert tokens == ["Hel", "lo"]
    assert response.id == "c1"
    assert response.content == "Hello"
    assert response.tool_calls == [ToolCall(id="call_1", name="get_weather", raw_arguments='{"city": "Oslo"}')]
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert response.usage.total_tokens == 7


def test_openai_tool_turns_round_trip_to_wire():
    adapter = OpenAICompatibleAdapter(ProviderConfig(api_key="sk-test"))
    messages = [
        Message(role="user", content="weather?"),
        Message(role="assistant", content="", tool_calls=[ToolCall("call_1", "get_weather", '{"city":"Oslo"}')]),
        Message(role="tool", content="sunny", name="get_weather", tool_call_id="call_1"),
    ]

    wire = adapter.format_request(messages, ChatOptions(), "gpt-4o")["messages"]

    assert wire[1]["content"] is None
    assert wire[1]["tool_calls"][0]["function"]["arguments"] == '{"city":"Oslo"}'
    assert wire[2] == {"role": "tool", "tool_call_id": "call_1", "content": "sunny", "name": "get_weather"}


def test_openrouter_adds_title_header_and_default_sampling():
    adapter = OpenRouterAdapter(ProviderConfig(api_key="sk-or-test"))

    assert adapter.headers()["X-Title"] == "Binario App"
    assert adapter.headers()["Authorization"] == "Bearer sk-or-test"
    payload = adapter.format_request(_conversation(), ChatOptions(max_tokens=64), adapter.resolve_model("gpt-4o-mini"))
    assert payload["model"] == "openai/gpt-4o-mini"
    assert payload["max_tokens"] == 64
    assert payload["temperature"] == 0.7


# ─── Anthropic ───────────────────────────────────────────────────────────────

def test_anthropic_format_request_lifts_system_and_merges_tool_results():
    adapter = AnthropicAdapter(ProviderConfig(api_key="sk-ant-test"))
    messages = [
        Message(role="system", content="Be kind."),
        Message(role="user", content="weather in two cities?"),
        Message(
            role="assistant",
            content="Checking.",
            tool_calls=[
                ToolCall("toolu_1", "get_weather", '{"city": "Oslo"}'),
                ToolCall("toolu_2", "get_weather", '{"city": "Rome"}'),
            ],
        ),
        Message(role="tool", content="cold", tool_call_id="toolu_1"),
        Message(role="tool", content="warm", tool_call_id="toolu_2"),
    ]

    payload = adapter.format_request(messages, ChatOptions(tools=(WEATHER_TOOL,)), "claude-3-5-sonnet-20241022")

    assert payload["system"] == "Be kind."
    assert payload["max_tokens"] == 4096
    assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
    assistant_blocks = payload["messages"][1]["content"]
    assert assistant_blocks[1] == {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Oslo"}}
    results = payload["messages"][2]["content"]
    assert [b["tool_use_id"] for b in results] == ["toolu_1", "toolu_2"]
    assert payload["tools"][0]["input_schema"]["required"] == ["city"]
    assert payload["tool_choice"] == {"type": "auto"}


def test_anthropic_headers():
    headers = AnthropicAdapter(ProviderConfig(api_key="sk-ant-test")).headers()
    assert headers["x-api-key"] == "sk-ant-test"
    assert headers["anthropic-version"] == "2023-06-01"


def test_anthropic_parse_response_text_and_tool_use():
    adapter = AnthropicAdapter(ProviderConfig(api_key="sk-ant-test"))
    body = {
        "id": "msg_1",
        "model": "claude-3-5-sonnet-20241022",
        "content": [
            {"type": "text", "text": "Let me check."},
            {"type": "tool_use", "id": "toolu_9", "name": "get_weather", "input": {"city": "Oslo"}},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 30, "output_tokens": 12},
    }

    response = adapter.parse_response(body, "claude-3-5-sonnet-20241022")

    assert response.content == "Let me check."
    assert response.tool_calls[0].id == "toolu_9"
    assert json.loads(response.tool_calls[0].raw_arguments) == {"city": "Oslo"}
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert (response.usage.prompt_tokens, response.usage.completion_tokens, response.usage.total_tokens) == (30, 12, 42)


@pytest.mark.asyncio
async def test_anthropic_decode_stream_events():
    adapter = AnthropicAdapter(ProviderConfig(api_key="sk-ant-test"))
    events = [
        {"type": "message_start", "message": {"id": "msg_s", "usage": {"input_tokens": 9, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
        {"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 6}},
        {"type": "message_stop"},
    ]
    parts = [f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events]

    tokens, response = await _drain(adapter, *parts)

    assert tokens == ["Hi", " there"]
    assert response.id == "msg_s"
    assert response.finish_reason == FINISH_LENGTH
    assert response.usage.total_tokens == 15


@pytest.mark.asyncio
async def test_anthropic_stream_error_event_raises():
    adapter = AnthropicAdapter(ProviderConfig(api_key="sk-ant-test"))
    error = {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
    with pytest.raises(BackendError, match="Overloaded"):
        await _drain(adapter, f"data: {json.dumps(error)}\n\n")


# ─── Cloudflare ──────────────────────────────────────────────────────────────

def _cloudflare() -> CloudflareAdapter:
    return CloudflareAdapter(ProviderConfig(api_key="cf-token", account_id="acct123"))


def test_cloudflare_endpoint_and_tools_only_for_function_calling_models():
    adapter = _cloudflare()
    small = adapter.resolve_model("llama-3.2-1b")
    large = adapter.resolve_model("llama-3.3-70b")
    options = ChatOptions(tools=(WEATHER_TOOL,), stop=("x",))

    assert adapter.endpoint(small) == (
        "https://api.cloudflare.com/client/v4/accounts/acct123/ai/run/@cf/meta/llama-3.2-1b-instruct"
    )
    assert "tools" not in adapter.format_request(_conversation(), options, small)
    with_tools = adapter.format_request(_conversation(), options, large)
    assert with_tools["tools"][0]["function"]["name"] == "get_weather"
    assert with_tools["max_tokens"] == 256
    assert "stop" not in with_tools


def test_cloudflare_parse_response_both_tool_call_shapes():
    adapter = _cloudflare()
    body = {
        "success": True,
        "result": {
            "response": None,
            "tool_calls": [
                {"name": "get_weather", "arguments": {"city": "Oslo"}},
                {"id": "cf_2", "function": {"name": "get_weather", "arguments": '{"city": "Rome"}'}},
            ],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        },
    }

    response = adapter.parse_response(body, "@cf/meta/llama-3.3-70b-instruct-fp8-fast")

    assert response.content == ""
    assert json.loads(response.tool_calls[0].raw_arguments) == {"city": "Oslo"}
    assert response.tool_calls[1].id == "cf_2"
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert response.usage.total_tokens == 7


def test_cloudflare_missing_usage_counts_as_zero():
    response = _cloudflare().parse_response({"success": True, "result": {"response": "hi"}}, "m")
    assert response.content == "hi"
    assert response.usage.total_tokens == 0
    assert response.finish_reason == FINISH_STOP


def test_cloudflare_unsuccessful_body_raises():
    with pytest.raises(BackendError, match="no such model"):
        _cloudflare().parse_response({"success": False, "errors": [{"message": "no such model"}]}, "m")


@pytest.mark.asyncio
async def test_cloudflare_decode_stream_tokens_usage_and_tool_calls():
    events = [
        {"response": "Hel"},
        {"response": "lo"},
        {"response": "", "tool_calls": [{"name": "get_weather", "arguments": {"city": "Oslo"}}]},
        {"response": "", "usage": {"prompt_tokens": 6, "completion_tokens": 2, "total_tokens": 8}},
    ]
    parts = [f"data: {json.dumps(e)}\n\n" for e in events] + ["data: [DONE]\n\n"]

    tokens, response = await _drain(_cloudflare(), *parts)

    assert tokens == ["Hel", "lo"]
    assert response.content == "Hello"
    assert [(tc.name, json.loads(tc.raw_arguments)) for tc in response.tool_calls] == [("get_weather", {"city": "Oslo"})]
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert (response.usage.prompt_tokens, response.usage.completion_tokens, response.usage.total_tokens) == (6, 2, 8)


@pytest.mark.asyncio
async def test_cloudflare_stream_error_event_raises():
    error = {"success": False, "errors": [{"message": "capacity exceeded"}]}
    with pytest.raises(BackendError, match="capacity exceeded"):
        await _drain(_cloudflare(), f"data: {json.dumps(error)}\n\n")


# ─── Google ──────────────────────────────────────────────────────────────────

def test_google_format_request_contents_and_system_instruction():
    adapter = GoogleAdapter(ProviderConfig(api_key="g-key"))
    messages = [
        Message(role="system", content="Be terse."),
        Message(role="user", content="weather?"),
        Message(role="assistant", content="", tool_calls=[ToolCall("google_call_1", "get_weather", '{"city":"Oslo"}')]),
        Message(role="tool", content="sunny", tool_call_id="google_call_1"),
    ]

    payload = adapter.format_request(messages, ChatOptions(max_tokens=50, tools=(WEATHER_TOOL,)), "gemini-2.0-flash")

    assert payload["systemInstruction"] == {"parts": [{"text": "Be terse."}]}
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["contents"][1]["parts"][0]["functionCall"] == {"name": "get_weather", "args": {"city": "Oslo"}}
    assert payload["contents"][2]["parts"][0]["functionResponse"]["name"] == "get_weather"
    assert payload["generationConfig"] == {"maxOutputTokens": 50}
    assert payload["tools"][0]["functionDeclarations"][0]["name"] == "get_weather"
    assert adapter.endpoint("gemini-2.0-flash", stream=True).endswith(":streamGenerateContent?alt=sse")


def test_google_parse_response_function_call_ids():
    adapter = GoogleAdapter(ProviderConfig(api_key="g-key"))
    body = {
        "candidates": [
            {
                "content": {"parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Oslo"}}}]},
                "finishReason": "STOP",
            }
        ],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 3, "totalTokenCount": 7},
    }

    response = adapter.parse_response(body, "gemini-2.0-flash")

    assert response.tool_calls[0].id == "google_call_1"
    assert json.loads(response.tool_calls[0].raw_arguments) == {"city": "Oslo"}
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert response.usage.total_tokens == 7


@pytest.mark.asyncio
async def test_google_decode_stream_indexes_function_calls_across_chunks():
    adapter = GoogleAdapter(ProviderConfig(api_key="g-key"))
    events = [
        {"responseId": "r1", "candidates": [{"content": {"parts": [{"text": "Check"}, {"text": "ing", "thought": False}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "private", "thought": True}, {"functionCall": {"name": "get_weather", "args": {"city": "Oslo"}}}]}}]},
        {
            "candidates": [
                {
                    "content": {"parts": [{"functionCall": {"name": "get_time", "args": {"zone": "CET"}}}]},
                    "finishReason": "STOP",
                }
            ],
            "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 4, "totalTokenCount": 13},
        },
    ]
    parts = [f"data: {json.dumps(e)}\r\n\r\n" for e in events]

    tokens, response = await _drain(adapter, *parts)

    assert tokens == ["Checking"]
    assert response.id == "r1"
    assert [(tc.id, tc.name) for tc in response.tool_calls] == [
        ("google_call_1", "get_weather"),
        ("google_call_2", "get_time"),
    ]
    assert json.loads(response.tool_calls[1].raw_arguments) == {"zone": "CET"}
    assert response.finish_reason == FINISH_TOOL_CALLS
    assert (response.usage.prompt_tokens, response.usage.completion_tokens, response.usage.total_tokens) == (9, 4, 13)


@pytest.mark.asyncio
async def test_google_decode_stream_without_usage_counts_zero():
    adapter = GoogleAdapter(ProviderConfig(api_key="g-key"))
    event = {"candidates": [{"content": {"parts": [{"text": "hi"}]}, "finishReason": "MAX_TOKENS"}]}

    tokens, response = await _drain(adapter, f"data: {json.dumps(event)}\n\n")

    assert tokens == ["hi"]
    assert response.finish_reason == FINISH_LENGTH
    assert response.usage.total_tokens == 0


@pytest.mark.asyncio
async def test_google_stream_error_event_raises():
    adapter = GoogleAdapter(ProviderConfig(api_key="g-key"))
    error = {"error": {"code": 503, "message": "The model is overloaded"}}
    with pytest.raises(BackendError, match="overloaded"):
        await _drain(adapter, f"data: {json.dumps(error)}\n\n")


# ─── Router ──────────────────────────────────────────────────────────────────

def test_build_adapter_selects_wire_format():
    assert isinstance(build_adapter("mistral", ProviderConfig(api_key="k")), OpenAICompatibleAdapter)
    assert build_adapter("mistral", ProviderConfig(api_key="k")).include_stream_usage is False
    assert isinstance(build_adapter("openrouter", ProviderConfig(api_key="k")), OpenRouterAdapter)
    assert build_adapter("mistral", ProviderConfig(api_key="k")).endpoint("m") == "https://api.mistral.ai/v1/chat/completions"
    assert "anthropic" in SUPPORTED_PROVIDERS


def test_build_adapter_rejects_incomplete_or_unknown_config():
    with pytest.raises(ValueError):
        build_adapter("cloudflare", ProviderConfig(api_key="k"))
    with pytest.raises(ValueError):
        build_adapter("custom", ProviderConfig(api_key="k"))
    with pytest.raises(ValueError):
        build_adapter("nope", ProviderConfig(api_key="k"))


@pytest.mark.parametrize(
    "adapter",
    [
        OpenAICompatibleAdapter(ProviderConfig(api_key="k")),
        AnthropicAdapter(ProviderConfig(api_key="k")),
        GoogleAdapter(ProviderConfig(api_key="k")),
        CloudflareAdapter(ProviderConfig(api_key="k", account_id="a")),
    ],
)
def test_format_request_preserves_turn_order(adapter):
    payload = adapter.format_request(_conversation(), ChatOptions(), "model")
    if "contents" in payload:
        texts = [c["parts"][0]["text"] for c in payload["contents"]]
    else:
        texts = [m["content"] for m in payload["messages"]]
    assert texts == ["first", "second", "third"]
