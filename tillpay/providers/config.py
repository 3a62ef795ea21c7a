# tillpay/providers/config.py
from __future__ import annotations

from dataclasses import dataclass

from settings import settings

TRANSACTION_TYPES = ("CustomerPayBillOnline", "CustomerBuyGoodsOnline")


def mpesa_mode() -> str:
    return (settings.MPESA_MODE or "sandbox").strip().lower()


def is_strict_startup_validation() -> bool:
    return bool(settings.MPESA_STRICT_STARTUP_VALIDATION)


def gateway_name() -> str:
    return (settings.PUSH_GATEWAY or "").strip().upper().replace("-", "_").replace(" ", "_")


@dataclass(frozen=True)
class DarajaConfig:
    mode: str  # "sandbox" | "real"
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    transaction_type: str
    account_reference_prefix: str
    callback_url: str
    timeout_s: float

    def missing(self) -> list[str]:
        prefix = "MPESA_REAL_" if self.mode == "real" else "MPESA_SANDBOX_"
        out: list[str] = []
        for name, value in (
            ("BASE_URL", self.base_url),
            ("CONSUMER_KEY", self.consumer_key),
            ("CONSUMER_SECRET", self.consumer_secret),
            ("SHORTCODE", self.shortcode),
            ("PASSKEY", self.passkey),
        ):
            if not value:
                out.append(prefix + name)
        if not self.callback_url:
            out.append("MPESA_CALLBACK_URL")
        return out


def daraja_config() -> DarajaConfig:
    mode = mpesa_mode()
    if mode == "real":
        base = settings.MPESA_REAL_BASE_URL
        key = settings.MPESA_REAL_CONSUMER_KEY
        secret = settings.MPESA_REAL_CONSUMER_SECRET
        shortcode = settings.MPESA_REAL_SHORTCODE
        passkey = settings.MPESA_REAL_PASSKEY
    else:
        base = settings.MPESA_SANDBOX_BASE_URL
        key = settings.MPESA_SANDBOX_CONSUMER_KEY
        secret = settings.MPESA_SANDBOX_CONSUMER_SECRET
        shortcode = settings.MPESA_SANDBOX_SHORTCODE
        passkey = settings.MPESA_SANDBOX_PASSKEY

    return DarajaConfig(
        mode=mode,
        base_url=(base or "").strip().rstrip("/"),
        consumer_key=(key or "").strip(),
        consumer_secret=(secret or "").strip(),
        shortcode=(shortcode or "").strip(),
        passkey=(passkey or "").strip(),
        transaction_type=(settings.MPESA_TRANSACTION_TYPE or TRANSACTION_TYPES[0]).strip(),
        account_reference_prefix=(settings.MPESA_ACCOUNT_REFERENCE_PREFIX or "").strip(),
        callback_url=(settings.MPESA_CALLBACK_URL or "").strip(),
        timeout_s=float(settings.MPESA_HTTP_TIMEOUT_S),
    )
