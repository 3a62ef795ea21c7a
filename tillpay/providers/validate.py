# tillpay/providers/validate.py
from __future__ import annotations

import logging

from tillpay.providers.config import (
    TRANSACTION_TYPES,
    daraja_config,
    gateway_name,
    is_strict_startup_validation,
    mpesa_mode,
)

logger = logging.getLogger("tillpay")

ALLOWED_GATEWAYS = {"DARAJA", "MPESA", "MOCK"}


def validate_gateway_startup() -> None:
    """
    Fail-fast validation.

    Rules:
      - unknown PUSH_GATEWAY always fails
      - MOCK is never checked further
      - sandbox: validate credentials ONLY if MPESA_STRICT_STARTUP_VALIDATION=1
      - real: always validate
      - raise RuntimeError listing missing env vars
    """
    mode = mpesa_mode()
    strict = is_strict_startup_validation()
    gateway = gateway_name()

    logger.info("push gateway startup check: gateway=%s mode=%s strict=%s", gateway or "<none>", mode, strict)

    if gateway not in ALLOWED_GATEWAYS:
        raise RuntimeError(
            "Push gateway startup validation failed. "
            f"Unknown PUSH_GATEWAY={gateway!r}. Allowed: {', '.join(sorted(ALLOWED_GATEWAYS))}"
        )

    if gateway == "MOCK":
        return

    if mode not in ("sandbox", "real"):
        raise RuntimeError(
            "Push gateway startup validation failed. "
            f"Invalid MPESA_MODE={mode!r}. Allowed: sandbox, real"
        )

    if mode == "sandbox" and not strict:
        return

    cfg = daraja_config()
    if cfg.transaction_type not in TRANSACTION_TYPES:
        raise RuntimeError(
            "Push gateway startup validation failed. "
            f"Invalid MPESA_TRANSACTION_TYPE={cfg.transaction_type!r}"
        )

    missing = cfg.missing()
    if missing:
        raise RuntimeError(
            "Push gateway startup validation failed. "
            f"mode={mode} Missing required env vars: " + ", ".join(sorted(missing))
        )
