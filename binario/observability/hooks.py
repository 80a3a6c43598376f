from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

if TYPE_CHECKING:
    from binario.messages import ChatResponse, Message

logger = logging.getLogger(__name__)

Hook = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass(slots=True)
class RequestMetrics:
    tokens_in: int
    tokens_out: int
    latency_ms: int
    cache_hit: bool
    model: str
    provider: str
    neurons_used: int = 0
    retry_count: int = 0


@dataclass(slots=True)
class RequestStartEvent:
    messages: list[Message]
    model: str
    provider: str
    span_id: str
    stream: bool = False


@dataclass(slots=True)
class RequestEndEvent:
    messages: list[Message]
    response: ChatResponse
    span_id: str
    metrics: RequestMetrics


@dataclass(slots=True)
class RequestErrorEvent:
    messages: list[Message]
    model: str
    provider: str
    span_id: str
    error: Exception
    latency_ms: int


@dataclass(slots=True)
class ToolCallEvent:
    tool_name: str
    args: Any
    result: Any
    call_id: str
    iteration: int


@dataclass(slots=True)
class ObservabilityHooks:
    on_request_start: Hook | None = None
    on_request_end: Hook | None = None
    on_error: Hook | None = None
    on_tool_call: Hook | None = None

    async def emit(self, name: str, event: Any) -> None:
        """Invoke one hook by name. Hook failures are logged, never raised."""
        callback = getattr(self, name, None)
        if callback is None:
            return
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.warning("observability hook %s failed", name, exc_info=True)


def _log_start(event: RequestStartEvent) -> None:
    logger.info(
        "request_started",
        extra={"provider": event.provider, "model": event.model, "span_id": event.span_id},
    )


def _log_end(event: RequestEndEvent) -> None:
    logger.info(
        "request_ended",
        extra={
            "provider": event.metrics.provider,
            "model": event.metrics.model,
            "span_id": event.span_id,
            "duration_ms": event.metrics.latency_ms,
            "cached": event.metrics.cache_hit,
        },
    )


def _log_error(event: RequestErrorEvent) -> None:
    logger.warning(
        "request_failed: %s",
        event.error,
        extra={"provider": event.provider, "model": event.model, "span_id": event.span_id, "duration_ms": event.latency_ms},
    )


def console_hooks() -> ObservabilityHooks:
    return ObservabilityHooks(on_request_start=_log_start, on_request_end=_log_end, on_error=_log_error)
