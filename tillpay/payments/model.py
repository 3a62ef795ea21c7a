# tillpay/payments/model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class AttemptState(str, Enum):
    CREATED = "CREATED"
    REQUEST_SENT = "REQUEST_SENT"
    AWAITING_CUSTOMER = "AWAITING_CUSTOMER"
    SETTLED = "SETTLED"
    DECLINED = "DECLINED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        AttemptState.SETTLED,
        AttemptState.DECLINED,
        AttemptState.REJECTED,
        AttemptState.TIMED_OUT,
        AttemptState.ABANDONED,
    }
)


class AttemptStateError(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_attempt_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Transition:
    from_state: AttemptState
    to_state: AttemptState
    at: datetime
    event: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "at": self.at.isoformat(),
            "event": self.event,
        }


@dataclass(frozen=True)
class TerminalResult:
    state: AttemptState
    receipt_ref: Optional[str] = None
    reason_code: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state == AttemptState.SETTLED

    @property
    def abandoned(self) -> bool:
        return self.state == AttemptState.ABANDONED


class UpdateKind(str, Enum):
    STATE_CHANGED = "state_changed"
    INFO = "info"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class SessionUpdate:
    attempt_id: str
    state: AttemptState
    kind: UpdateKind
    message: str = ""
    terminal_result: Optional[TerminalResult] = None
    at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.kind == UpdateKind.TERMINAL


@dataclass
class PaymentAttempt:
    """
    One push-payment confirmation cycle.

    amount, payee_reference and session_reference never change after creation.
    correlation_token and terminal_result are write-once. transitions is an
    append-only audit trail; record_transition is the only writer.
    """

    amount: Decimal
    payee_reference: str
    session_reference: str = ""
    attempt_id: str = field(default_factory=new_attempt_id)
    state: AttemptState = AttemptState.CREATED
    correlation_token: Optional[str] = None
    terminal_result: Optional[TerminalResult] = None
    transitions: list[Transition] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)

    # diagnostics
    polls: int = 0
    transient_errors: int = 0

    def __setattr__(self, name: str, value: Any) -> None:
        if name in ("amount", "payee_reference", "session_reference", "attempt_id") and name in self.__dict__:
            raise AttemptStateError(f"PaymentAttempt.{name} is immutable")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def set_correlation_token(self, token: str) -> None:
        if not token:
            raise AttemptStateError("correlation token must be non-empty")
        if self.correlation_token is not None:
            raise AttemptStateError(
                f"attempt {self.attempt_id} already has correlation token {self.correlation_token!r}"
            )
        self.correlation_token = token

    def record_transition(self, to_state: AttemptState, event: str, *, at: datetime | None = None) -> Transition:
        if self.state.is_terminal:
            raise AttemptStateError(
                f"attempt {self.attempt_id} is terminal ({self.state.value}); refusing {event}"
            )
        t = Transition(from_state=self.state, to_state=to_state, at=at or _utcnow(), event=event)
        self.transitions.append(t)
        self.state = to_state
        return t

    def resolve(self, result: TerminalResult) -> None:
        if self.terminal_result is not None:
            raise AttemptStateError(f"attempt {self.attempt_id} already resolved")
        if not result.state.is_terminal:
            raise AttemptStateError(f"cannot resolve with non-terminal state {result.state.value}")
        self.terminal_result = result

    def terminal_transitions(self) -> list[Transition]:
        return [t for t in self.transitions if t.to_state.is_terminal]
