# tillpay/payments/validator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from settings import settings


class ValidationError(ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidAmount(ValidationError):
    pass


class InvalidPayee(ValidationError):
    pass


@dataclass(frozen=True)
class PayeeFormat:
    country_code: str = "254"
    subscriber_length: int = 9
    leading_digits: str = "71"

    @classmethod
    def from_settings(cls) -> "PayeeFormat":
        return cls(
            country_code=(settings.PAYEE_COUNTRY_CODE or "").strip(),
            subscriber_length=int(settings.PAYEE_SUBSCRIBER_LENGTH),
            leading_digits=(settings.PAYEE_LEADING_DIGITS or "").strip(),
        )

    def describe_leading(self) -> str:
        digits = list(self.leading_digits)
        if len(digits) <= 1:
            return "".join(digits)
        return ", ".join(digits[:-1]) + " or " + digits[-1]


@dataclass(frozen=True)
class NormalizedRequest:
    amount: Decimal
    payee_reference: str


_SEPARATORS = (" ", "-", "(", ")", ".")


def format_phone_number(raw: str, payee_format: PayeeFormat) -> str:
    """
    Reduce a cashier-entered number to the bare subscriber digits.

    Accepts the subscriber number alone, the trunk-prefixed local form
    (leading 0) and the international form with or without "+".
    Separators are dropped; any other character is left in place so the
    digit check can report it.
    """
    value = (raw or "").strip()
    for sep in _SEPARATORS:
        value = value.replace(sep, "")
    if value.startswith("+"):
        value = value[1:]

    cc = payee_format.country_code
    n = payee_format.subscriber_length
    if cc and value.startswith(cc) and len(value) == len(cc) + n:
        return value[len(cc):]
    if value.startswith("0") and len(value) == n + 1:
        return value[1:]
    return value


def validate_amount(amount: Any) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmount("Amount must be a number")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount("Amount must be a number")
    if not value.is_finite():
        raise InvalidAmount("Amount must be a finite number")
    if value <= 0:
        raise InvalidAmount("Amount must be greater than zero")
    return value


def validate_payee(raw_payee: str | None, payee_format: PayeeFormat) -> str:
    if raw_payee is None or not str(raw_payee).strip():
        raise InvalidPayee("Phone number is required")

    subscriber = format_phone_number(str(raw_payee), payee_format)

    if not subscriber.isdigit() or not subscriber.isascii():
        raise InvalidPayee("Phone number should contain only digits")

    if payee_format.leading_digits and subscriber[0] not in payee_format.leading_digits:
        raise InvalidPayee(f"Phone number should start with {payee_format.describe_leading()}")

    missing = payee_format.subscriber_length - len(subscriber)
    if missing > 0:
        raise InvalidPayee(f"Enter {missing} more digit(s)")
    if missing < 0:
        raise InvalidPayee(f"Remove {-missing} digit(s)")

    return payee_format.country_code + subscriber


def validate_request(amount: Any, raw_payee: str | None, payee_format: PayeeFormat | None = None) -> NormalizedRequest:
    fmt = payee_format or PayeeFormat.from_settings()
    return NormalizedRequest(
        amount=validate_amount(amount),
        payee_reference=validate_payee(raw_payee, fmt),
    )
