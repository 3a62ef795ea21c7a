# tillpay/providers/factory.py
from __future__ import annotations

from typing import Any, Dict

from tillpay.providers.config import gateway_name

_GATEWAY_CACHE: Dict[str, Any] = {}


def get_gateway(name: str | None = None):
    key = (name or gateway_name() or "").strip().upper()
    if not key:
        return None

    key = key.replace("-", "_").replace(" ", "_")

    if key in _GATEWAY_CACHE:
        return _GATEWAY_CACHE[key]

    gateway = None

    if key in ("DARAJA", "MPESA"):
        from tillpay.providers.daraja import DarajaGateway
        gateway = DarajaGateway()

    elif key == "MOCK":
        from tillpay.providers.mock import ScriptedGateway
        gateway = ScriptedGateway()

    else:
        return None

    _GATEWAY_CACHE[key] = gateway
    return gateway


def clear_gateway_cache() -> None:
    _GATEWAY_CACHE.clear()
