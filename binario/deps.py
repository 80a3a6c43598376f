from __future__ import annotations

from binario.gateway import Gateway

_gateway: Gateway | None = None


def set_gateway(gateway: Gateway | None) -> None:
    global _gateway
    _gateway = gateway


def get_gateway() -> Gateway:
    if _gateway is None:
        raise RuntimeError("Gateway not initialized")
    return _gateway
