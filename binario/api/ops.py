from __future__ import annotations

from fastapi import APIRouter, Depends

from binario.deps import get_gateway
from binario.gateway import Gateway
from binario.models import model_catalog

VERSION = "0.1.0"

router = APIRouter(tags=["ops"])


@router.get("/health")
async def health(gateway: Gateway = Depends(get_gateway)):
    return {
        "ok": True,
        "version": VERSION,
        "providers": gateway.configured_providers,
        "default_provider": gateway.config.resolve_default_provider(),
    }


@router.get("/v1/models")
async def models():
    return model_catalog()


@router.get("/v1/providers/status")
async def providers_status(gateway: Gateway = Depends(get_gateway)):
    return {"providers": gateway.provider_status()}


@router.get("/v1/usage")
async def usage(gateway: Gateway = Depends(get_gateway)):
    return gateway.usage.report()


@router.get("/v1/metrics")
async def metrics(gateway: Gateway = Depends(get_gateway)):
    snapshot = gateway.metrics.snapshot()
    snapshot["cache_size"] = len(gateway.cache)
    return snapshot


@router.delete("/v1/cache")
async def clear_cache(gateway: Gateway = Depends(get_gateway)):
    gateway.clear_cache()
    return {"ok": True}
