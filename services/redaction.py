from __future__ import annotations

import re
from typing import Any


_MSISDN_RE = re.compile(r"\+?\d{9,15}")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "password",
    "passkey",
)

_PHONE_KEYS = ("phone", "msisdn", "partya", "payee")


def mask_msisdn(value: str | None) -> str:
    if not value or len(value) < 6:
        return "***"
    return f"{value[:3]}****{value[-2:]}"


def redact_text(value: str) -> str:
    masked = _MSISDN_RE.sub(lambda m: mask_msisdn(m.group(0)), value)

    for marker in ("access_token", "bearer", "basic "):
        if marker in masked.lower():
            return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def _is_phone_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _PHONE_KEYS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        elif _is_phone_key(k) and v is not None:
            out[k] = mask_msisdn(str(v))
        else:
            out[k] = redact_value(v)
    return out
