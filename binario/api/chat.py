from __future__ import annotations

import json
import time
from typing import Any

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from binario.api.schemas import ChatRequestIn
from binario.deps import get_gateway
from binario.errors import error_from_exception
from binario.gateway import ChatStream, Gateway
from binario.trace import get_current_trace_id

router = APIRouter(prefix="/v1", tags=["chat"])


@router.post("/chat/completions")
async def chat_completions(payload: ChatRequestIn, request: Request, gateway: Gateway = Depends(get_gateway)):
    if payload.stream:
        return _stream_response(gateway, payload, request)
    response = await gateway.chat(payload.to_messages(), payload.to_options())
    return response.to_dict()


@router.post("/chat/stream")
async def chat_stream(payload: ChatRequestIn, request: Request, gateway: Gateway = Depends(get_gateway)):
    return _stream_response(gateway, payload, request)


def _stream_response(gateway: Gateway, payload: ChatRequestIn, request: Request) -> EventSourceResponse:
    # Resolve the provider before the 200 goes out so configuration errors keep their status.
    stream = gateway.stream_chat(payload.to_messages(), payload.to_options())
    trace_id = str(getattr(request.state, "trace_id", get_current_trace_id()))
    return EventSourceResponse(_event_generator(stream, trace_id))


async def _event_generator(stream: ChatStream, trace_id: str):
    created = int(time.time())
    try:
        async for token in stream:
            yield {"data": json.dumps(_delta_chunk(stream, token, created), ensure_ascii=False)}
    except Exception as exc:  # noqa: BLE001
        # Headers are already sent; report the failure in-band.
        _, error_payload = error_from_exception(exc, trace_id)
        yield {"event": "error", "data": json.dumps(error_payload, ensure_ascii=False)}
        return

    assert stream.response is not None
    yield {"event": "response", "data": json.dumps(stream.response.to_dict(), ensure_ascii=False)}
    yield {"data": "[DONE]"}


def _delta_chunk(stream: ChatStream, token: str, created: int) -> dict[str, Any]:
    return {
        "object": "chat.completion.chunk",
        "created": created,
        "provider": stream.provider,
        "model": stream.model,
        "choices": [{"index": 0, "delta": {"content": token}, "finish_reason": None}],
    }
