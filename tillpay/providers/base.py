# tillpay/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol, Literal

from tillpay.payments import state_machine as sm

InitiationErrorKind = Literal["REJECTED", "UNREACHABLE"]

SnapshotKind = Literal[
    "STILL_PENDING",
    "CUSTOMER_INTERACTING",
    "SUCCEEDED",
    "DECLINED_BY_CUSTOMER",
    "REJECTED_BY_PROVIDER",
    "TRANSIENT_ERROR",
]


@dataclass(frozen=True)
class InitiationResult:
    ok: bool
    correlation_token: Optional[str] = None
    error_kind: Optional[InitiationErrorKind] = None
    error: Optional[str] = None
    response: Optional[dict[str, Any]] = None

    @classmethod
    def accepted(cls, token: str, response: Optional[dict[str, Any]] = None) -> "InitiationResult":
        return cls(ok=True, correlation_token=token, response=response)

    @classmethod
    def rejected(cls, error: str, response: Optional[dict[str, Any]] = None) -> "InitiationResult":
        return cls(ok=False, error_kind="REJECTED", error=error, response=response)

    @classmethod
    def unreachable(cls, error: str, response: Optional[dict[str, Any]] = None) -> "InitiationResult":
        return cls(ok=False, error_kind="UNREACHABLE", error=error, response=response)

    def to_event(self) -> sm.Event:
        if self.ok and self.correlation_token:
            return sm.InitiationSucceeded(correlation_token=self.correlation_token)
        return sm.InitiationFailed(kind=self.error_kind or "REJECTED", error=self.error)


@dataclass(frozen=True)
class StatusSnapshot:
    kind: SnapshotKind
    receipt_ref: Optional[str] = None
    reason_code: Optional[str] = None
    message: Optional[str] = None
    response: Optional[dict[str, Any]] = None

    @property
    def is_transient(self) -> bool:
        return self.kind == "TRANSIENT_ERROR"

    @property
    def is_final(self) -> bool:
        return self.kind in ("SUCCEEDED", "DECLINED_BY_CUSTOMER", "REJECTED_BY_PROVIDER")

    def to_event(self) -> sm.Event:
        if self.kind == "STILL_PENDING":
            return sm.StillPending()
        if self.kind == "CUSTOMER_INTERACTING":
            return sm.CustomerInteracting()
        if self.kind == "SUCCEEDED":
            return sm.Succeeded(receipt_ref=self.receipt_ref or "")
        if self.kind == "DECLINED_BY_CUSTOMER":
            return sm.DeclinedByCustomer()
        if self.kind == "REJECTED_BY_PROVIDER":
            return sm.RejectedByProvider(reason_code=self.reason_code or "UNKNOWN")
        return sm.TransientError(error=self.message)


def still_pending(**kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="STILL_PENDING", **kw)


def customer_interacting(**kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="CUSTOMER_INTERACTING", **kw)


def succeeded(receipt_ref: str, **kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="SUCCEEDED", receipt_ref=receipt_ref, **kw)


def declined_by_customer(**kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="DECLINED_BY_CUSTOMER", **kw)


def rejected_by_provider(reason_code: str, **kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="REJECTED_BY_PROVIDER", reason_code=reason_code, **kw)


def transient_error(message: str, **kw: Any) -> StatusSnapshot:
    return StatusSnapshot(kind="TRANSIENT_ERROR", message=message, **kw)


class PushPaymentGateway(Protocol):
    """
    timeout_s is the most the caller will wait for this call; adapters pass it
    down to their transport. None means the adapter's own default.
    """

    def initiate(
        self,
        amount: Decimal,
        payee_reference: str,
        session_reference: str,
        *,
        timeout_s: Optional[float] = None,
    ) -> InitiationResult: ...

    def query_status(self, correlation_token: str, *, timeout_s: Optional[float] = None) -> StatusSnapshot: ...
