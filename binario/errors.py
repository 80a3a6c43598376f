from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError

DEFAULT_INTERNAL_MESSAGE = "Internal server error"
MAX_ERROR_BODY_CHARS = 500


@dataclass(slots=True, eq=False)
class BinarioError(Exception):
    code: str
    message: str
    retryable: bool = False
    status_code: int = 500
    details: dict[str, Any] | None = None
    cause: str | None = None
    provider: str | None = None
    latency_ms: int | None = None

    def __str__(self) -> str:
        return self.message


class ProviderNotConfiguredError(BinarioError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            code="E_PROVIDER_NOT_CONFIGURED",
            message=f"Provider {provider} is not configured",
            retryable=False,
            status_code=400,
            cause="provider_not_configured",
            provider=provider,
        )


class RateLimitedError(BinarioError):
    def __init__(self, provider: str, message: str, retry_after: float | None = None) -> None:
        super().__init__(
            code="E_PROVIDER_RATE_LIMIT",
            message=message,
            retryable=True,
            status_code=429,
            details={"retry_after": retry_after} if retry_after is not None else None,
            cause="provider_rate_limit",
            provider=provider,
        )
        self.retry_after = retry_after


class QuotaExceededError(BinarioError):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(
            code="E_PROVIDER_QUOTA",
            message=message,
            retryable=False,
            status_code=402,
            cause="provider_payment_required",
            provider=provider,
        )


class BackendError(BinarioError):
    def __init__(self, provider: str, backend_status: int, message: str, body: str = "") -> None:
        super().__init__(
            code="E_PROVIDER_BACKEND",
            message=message,
            retryable=backend_status >= 500,
            status_code=backend_status if 400 <= backend_status <= 599 else 502,
            details={"backend_status": backend_status, "body": body} if body else {"backend_status": backend_status},
            cause="provider_http_error",
            provider=provider,
        )
        self.backend_status = backend_status
        self.body = body


class ProviderTimeoutError(BinarioError):
    def __init__(self, provider: str, timeout_ms: int) -> None:
        super().__init__(
            code="E_NETWORK_TIMEOUT",
            message=f"{provider} request timed out after {timeout_ms}ms",
            retryable=True,
            status_code=504,
            cause="network_timeout",
            provider=provider,
        )


class ProviderNetworkError(BinarioError):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(
            code="E_NETWORK",
            message=message,
            retryable=True,
            status_code=502,
            cause="network_error",
            provider=provider,
        )


class StreamDecodeError(BinarioError):
    def __init__(self, message: str, pending: str = "") -> None:
        super().__init__(
            code="E_STREAM_DECODE",
            message=message,
            retryable=False,
            status_code=502,
            details={"pending": pending[:MAX_ERROR_BODY_CHARS]} if pending else None,
            cause="stream_decode",
        )


class SchemaValidationError(BinarioError):
    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(
            code="E_SCHEMA_INVALID",
            message=message,
            retryable=False,
            status_code=422,
            details={"errors": list(errors or [])},
            cause="schema_validation",
        )
        self.errors = list(errors or [])


class StructuredOutputParseError(BinarioError):
    def __init__(self, message: str, raw: str = "", errors: list[str] | None = None) -> None:
        super().__init__(
            code="E_STRUCTURED_OUTPUT",
            message=message,
            retryable=False,
            status_code=422,
            details={"errors": list(errors or [])} if errors else None,
            cause="structured_output",
        )
        self.raw = raw
        self.errors = list(errors or [])


class AbortedError(BinarioError):
    def __init__(self, message: str = "Agent run aborted") -> None:
        super().__init__(
            code="E_ABORTED",
            message=message,
            retryable=False,
            status_code=499,
            cause="aborted",
        )


def error_from_status(
    provider: str,
    status: int,
    text: str,
    headers: httpx.Headers | dict[str, str] | None = None,
) -> BinarioError:
    """Translate a non-2xx backend status into the typed error taxonomy."""
    backend_message = _extract_backend_message(text)
    if status == 429:
        return RateLimitedError(
            provider,
            f"{provider} rate limit exceeded: {backend_message}",
            retry_after=_parse_retry_after(headers),
        )
    if status == 402:
        return QuotaExceededError(provider, f"{provider} payment required: {backend_message}")
    return BackendError(
        provider,
        status,
        f"{provider} API error: {status} - {backend_message}",
        body=text[:MAX_ERROR_BODY_CHARS],
    )


def _extract_backend_message(text: str) -> str:
    try:
        parsed = json.loads(text)
    except ValueError:
        return text[:MAX_ERROR_BODY_CHARS].strip()
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        errors = parsed.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
        if parsed.get("message"):
            return str(parsed["message"])
    return text[:MAX_ERROR_BODY_CHARS].strip()


def _parse_retry_after(headers: httpx.Headers | dict[str, str] | None) -> float | None:
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return None


def build_binario_error(
    *,
    code: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
        "retryable": retryable,
        "ts": datetime.now(tz=timezone.utc).isoformat(),
    }
    if details:
        payload["details"] = details
    if cause:
        payload["cause"] = cause
    return payload


def error_response(
    *,
    code: str,
    message: str,
    trace_id: str,
    retryable: bool,
    details: dict[str, Any] | None = None,
    cause: str | None = None,
) -> dict[str, Any]:
    return {
        "error": build_binario_error(
            code=code,
            message=message,
            trace_id=trace_id,
            retryable=retryable,
            details=details,
            cause=cause,
        )
    }


def error_from_exception(exc: Exception, trace_id: str) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, BinarioError):
        from binario.observability.redaction import redact

        return (
            exc.status_code,
            error_response(
                code=exc.code,
                message=exc.message,
                trace_id=trace_id,
                retryable=exc.retryable,
                details=redact(exc.details) if exc.details else None,
                cause=exc.cause,
            ),
        )

    if isinstance(exc, RequestValidationError):
        return (
            422,
            error_response(
                code="E_SCHEMA_INVALID",
                message="Request validation failed.",
                trace_id=trace_id,
                retryable=False,
                details={"errors": exc.errors()},
                cause="request_validation_error",
            ),
        )

    if isinstance(exc, HTTPException):
        retryable = exc.status_code >= 500
        return (
            exc.status_code,
            error_response(
                code="E_INTERNAL" if retryable else "E_BAD_REQUEST",
                message=str(exc.detail),
                trace_id=trace_id,
                retryable=retryable,
                cause="http_exception",
            ),
        )

    if isinstance(exc, asyncio.TimeoutError):
        return (
            504,
            error_response(
                code="E_NETWORK_TIMEOUT",
                message="Operation timed out.",
                trace_id=trace_id,
                retryable=True,
                cause="timeout",
            ),
        )

    if isinstance(exc, (KeyError, ValueError, TypeError)):
        return (
            400,
            error_response(
                code="E_SCHEMA_INVALID",
                message="Invalid request or payload shape.",
                trace_id=trace_id,
                retryable=False,
                cause=exc.__class__.__name__,
            ),
        )

    return (
        500,
        error_response(
            code="E_INTERNAL",
            message=DEFAULT_INTERNAL_MESSAGE,
            trace_id=trace_id,
            retryable=False,
            cause=exc.__class__.__name__,
        ),
    )
