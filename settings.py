# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal



class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -----------------------
    # DB (audit log only)
    # -----------------------
    DATABASE_URL: str = Field(default="")

    # -----------------------
    # Confirmation loop
    # -----------------------
    STK_POLL_INTERVAL_S: float = Field(default=3.0, gt=0)
    STK_POLL_BUDGET_S: float = Field(default=90.0, gt=0)

    # -----------------------
    # Payee format (defaults: Kenyan MSISDN)
    # -----------------------
    PAYEE_COUNTRY_CODE: str = "254"
    PAYEE_SUBSCRIBER_LENGTH: int = Field(default=9, ge=1)
    PAYEE_LEADING_DIGITS: str = "71"

    # -----------------------
    # Gateway selection
    # -----------------------
    PUSH_GATEWAY: str = "DARAJA"

    # -----------------------
    # M-Pesa Daraja (Mode Switch)
    # -----------------------
    MPESA_MODE: Literal["sandbox", "real"] = "sandbox"
    MPESA_STRICT_STARTUP_VALIDATION: bool = False

    # HTTP timeouts
    MPESA_HTTP_TIMEOUT_S: float = 20.0

    # "CustomerPayBillOnline" or "CustomerBuyGoodsOnline"
    MPESA_TRANSACTION_TYPE: str = "CustomerPayBillOnline"
    MPESA_ACCOUNT_REFERENCE_PREFIX: str = ""
    MPESA_CALLBACK_URL: str = ""

    MPESA_SANDBOX_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_SANDBOX_CONSUMER_KEY: str = ""
    MPESA_SANDBOX_CONSUMER_SECRET: str = ""
    MPESA_SANDBOX_SHORTCODE: str = ""
    MPESA_SANDBOX_PASSKEY: str = ""

    MPESA_REAL_BASE_URL: str = "https://api.safaricom.co.ke"
    MPESA_REAL_CONSUMER_KEY: str = ""
    MPESA_REAL_CONSUMER_SECRET: str = ""
    MPESA_REAL_SHORTCODE: str = ""
    MPESA_REAL_PASSKEY: str = ""



settings = Settings()
