# tillpay/payments/state_machine.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from tillpay.payments.model import AttemptState

S = AttemptState


class InvalidTransition(Exception):
    pass


class Effect(str, Enum):
    BEGIN_POLLING = "BEGIN_POLLING"
    CONTINUE_POLLING = "CONTINUE_POLLING"
    STOP_POLLING = "STOP_POLLING"
    COUNT_TRANSIENT_ERROR = "COUNT_TRANSIENT_ERROR"
    DELIVER_SUCCESS = "DELIVER_SUCCESS"
    DELIVER_FAILURE = "DELIVER_FAILURE"
    DELIVER_ABANDONED = "DELIVER_ABANDONED"


# --- events ---

@dataclass(frozen=True)
class InitiationSucceeded:
    correlation_token: str


@dataclass(frozen=True)
class InitiationFailed:
    kind: str  # "REJECTED" | "UNREACHABLE"
    error: Optional[str] = None


@dataclass(frozen=True)
class StillPending:
    pass


@dataclass(frozen=True)
class CustomerInteracting:
    pass


@dataclass(frozen=True)
class Succeeded:
    receipt_ref: str


@dataclass(frozen=True)
class DeclinedByCustomer:
    pass


@dataclass(frozen=True)
class RejectedByProvider:
    reason_code: str


@dataclass(frozen=True)
class TransientError:
    error: Optional[str] = None


@dataclass(frozen=True)
class BudgetExhausted:
    elapsed_s: float


@dataclass(frozen=True)
class CallerCancelled:
    pass


Event = Union[
    InitiationSucceeded,
    InitiationFailed,
    StillPending,
    CustomerInteracting,
    Succeeded,
    DeclinedByCustomer,
    RejectedByProvider,
    TransientError,
    BudgetExhausted,
    CallerCancelled,
]

POLL_EVENTS = (
    StillPending,
    CustomerInteracting,
    Succeeded,
    DeclinedByCustomer,
    RejectedByProvider,
    TransientError,
)


@dataclass(frozen=True)
class Outcome:
    state: AttemptState
    effects: tuple[Effect, ...] = ()
    changed: bool = False


def event_name(event: Event) -> str:
    return type(event).__name__


def _stay(state: AttemptState, *effects: Effect) -> Outcome:
    return Outcome(state=state, effects=tuple(effects), changed=False)


def _move(old: AttemptState, new: AttemptState, *effects: Effect) -> Outcome:
    return Outcome(state=new, effects=tuple(effects), changed=old != new)


def apply(state: AttemptState, event: Event) -> Outcome:
    """
    Pure transition function.

    A terminal state absorbs every event with no effects. Poll results that
    arrive before initiation completed, and initiation results that arrive
    after it, are ignored the same way.
    """
    if state.is_terminal:
        return _stay(state)

    if isinstance(event, CallerCancelled):
        return _move(state, S.ABANDONED, Effect.STOP_POLLING, Effect.DELIVER_ABANDONED)

    if isinstance(event, BudgetExhausted):
        return _move(state, S.TIMED_OUT, Effect.STOP_POLLING, Effect.DELIVER_FAILURE)

    if state == S.CREATED:
        if isinstance(event, InitiationSucceeded):
            return _move(state, S.REQUEST_SENT, Effect.BEGIN_POLLING)
        if isinstance(event, InitiationFailed):
            # no self-retry; the caller opens a fresh attempt
            return _move(state, S.REJECTED, Effect.DELIVER_FAILURE)
        return _stay(state)

    if isinstance(event, (InitiationSucceeded, InitiationFailed)):
        return _stay(state)

    if isinstance(event, StillPending):
        return _stay(state, Effect.CONTINUE_POLLING)

    if isinstance(event, CustomerInteracting):
        return _move(state, S.AWAITING_CUSTOMER, Effect.CONTINUE_POLLING)

    if isinstance(event, Succeeded):
        return _move(state, S.SETTLED, Effect.STOP_POLLING, Effect.DELIVER_SUCCESS)

    if isinstance(event, DeclinedByCustomer):
        return _move(state, S.DECLINED, Effect.STOP_POLLING, Effect.DELIVER_FAILURE)

    if isinstance(event, RejectedByProvider):
        return _move(state, S.REJECTED, Effect.STOP_POLLING, Effect.DELIVER_FAILURE)

    if isinstance(event, TransientError):
        return _stay(state, Effect.COUNT_TRANSIENT_ERROR, Effect.CONTINUE_POLLING)

    raise TypeError(f"unknown event type: {type(event).__name__}")


ALLOWED = {
    S.CREATED: {S.REQUEST_SENT, S.REJECTED, S.TIMED_OUT, S.ABANDONED},
    S.REQUEST_SENT: {S.AWAITING_CUSTOMER, S.SETTLED, S.DECLINED, S.REJECTED, S.TIMED_OUT, S.ABANDONED},
    S.AWAITING_CUSTOMER: {S.SETTLED, S.DECLINED, S.REJECTED, S.TIMED_OUT, S.ABANDONED},
    S.SETTLED: set(),
    S.DECLINED: set(),
    S.REJECTED: set(),
    S.TIMED_OUT: set(),
    S.ABANDONED: set(),
}


def assert_transition(old: AttemptState, new: AttemptState) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal attempt transition: {old.value} -> {new.value}")
