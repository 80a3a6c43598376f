from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from binario.api import chat, ops, structured
from binario.config import Settings, load_settings
from binario.deps import set_gateway
from binario.errors import BinarioError, error_from_exception
from binario.gateway import Gateway
from binario.observability.logging import get_gateway_logger
from binario.observability.metrics import get_gateway_metrics
from binario.trace import TRACE_HEADER, get_current_trace_id, normalize_trace_id, set_current_trace_id


def create_app(settings: Settings | None = None, gateway: Gateway | None = None) -> FastAPI:
    """Build the HTTP service. A supplied ``gateway`` is used as-is and not closed on shutdown."""
    settings = settings or load_settings()
    logger = get_gateway_logger(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = gateway is None
        active = gateway or Gateway(settings.gateway, metrics=get_gateway_metrics())
        set_gateway(active)
        logger.info("gateway_started providers=%s", ",".join(active.configured_providers) or "none")

        yield

        set_gateway(None)
        if owned:
            await active.aclose()

    app = FastAPI(title="Binario Gateway", version=ops.VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def trace_middleware(request: Request, call_next):
        trace_id = normalize_trace_id(request.headers.get(TRACE_HEADER))
        request.state.trace_id = trace_id
        set_current_trace_id(trace_id)
        started = datetime.now(tz=timezone.utc)
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            status_code, payload = error_from_exception(exc, trace_id)
            response = JSONResponse(status_code=status_code, content=payload)
        duration_ms = int((datetime.now(tz=timezone.utc) - started).total_seconds() * 1000)
        logger.info(
            "http_request",
            extra={
                "trace_id": trace_id,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "outcome": "ok" if response.status_code < 400 else "error",
            },
        )
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(Exception)
    async def exception_handler(request: Request, exc: Exception):
        trace_id = str(getattr(request.state, "trace_id", None) or get_current_trace_id())
        status_code, payload = error_from_exception(exc, trace_id)
        response = JSONResponse(status_code=status_code, content=payload)
        response.headers[TRACE_HEADER] = trace_id
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return await exception_handler(request, exc)

    @app.exception_handler(BinarioError)
    async def binario_exception_handler(request: Request, exc: BinarioError):
        return await exception_handler(request, exc)

    app.include_router(ops.router)
    app.include_router(chat.router)
    app.include_router(structured.router)
    return app
