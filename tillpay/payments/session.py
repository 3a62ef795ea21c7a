# tillpay/payments/session.py
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from services import metrics
from services.redaction import mask_msisdn
from settings import settings
from tillpay.payments import state_machine as sm
from tillpay.payments.model import (
    AttemptState,
    PaymentAttempt,
    SessionUpdate,
    TerminalResult,
    UpdateKind,
)
from tillpay.payments.state_machine import Effect
from tillpay.payments.validator import PayeeFormat, validate_request
from tillpay.providers.base import PushPaymentGateway, StatusSnapshot

logger = logging.getLogger("tillpay.session")

Observer = Callable[[SessionUpdate], None]

STATE_MESSAGES = {
    AttemptState.REQUEST_SENT: "Payment request sent. Ask the customer to enter their PIN.",
    AttemptState.AWAITING_CUSTOMER: "Customer is entering PIN...",
}


class SessionAlreadyStarted(Exception):
    pass


class AttemptInProgress(Exception):
    pass


@dataclass(frozen=True)
class SessionConfig:
    poll_interval_s: float = 3.0
    poll_budget_s: float = 90.0
    payee_format: PayeeFormat = field(default_factory=PayeeFormat)

    def __post_init__(self) -> None:
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.poll_budget_s <= 0:
            raise ValueError("poll_budget_s must be > 0")

    @classmethod
    def from_settings(cls) -> "SessionConfig":
        return cls(
            poll_interval_s=float(settings.STK_POLL_INTERVAL_S),
            poll_budget_s=float(settings.STK_POLL_BUDGET_S),
            payee_format=PayeeFormat.from_settings(),
        )


class UpdateStream:
    """
    Iterable view of one session's updates, for callers running the loop in
    the background. Iteration stops after the terminal update.
    """

    def __init__(self, session: "PaymentSession"):
        self._session = session
        self._queue: "queue.Queue[SessionUpdate]" = queue.Queue()
        self._done = threading.Event()
        self._result: Optional[TerminalResult] = None

    @property
    def attempt_id(self) -> str:
        return self._session.attempt.attempt_id if self._session.attempt else ""

    def _push(self, update: SessionUpdate) -> None:
        self._queue.put(update)
        if update.is_terminal:
            self._result = update.terminal_result
            self._done.set()

    def __iter__(self) -> Iterator[SessionUpdate]:
        while True:
            update = self._queue.get()
            yield update
            if update.is_terminal:
                return

    def result(self, timeout: float | None = None) -> TerminalResult:
        if not self._done.wait(timeout):
            raise TimeoutError("payment session still running")
        assert self._result is not None
        return self._result

    def cancel(self) -> None:
        self._session.cancel()


class PaymentSession:
    """
    Drives one push-payment attempt from validation to a terminal result.

    The poll loop is the only writer of the attempt. cancel() and offer()
    may be called from any thread; they only raise flags or queue
    snapshots that the loop picks up at its next scheduling point.
    """

    def __init__(
        self,
        gateway: PushPaymentGateway,
        config: Optional[SessionConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wait: Optional[Callable[[float], Any]] = None,
        observers: tuple[Observer, ...] = (),
    ):
        self.gateway = gateway
        self.config = config or SessionConfig.from_settings()
        self.attempt: Optional[PaymentAttempt] = None

        self._clock = clock
        self._wait = wait
        self._observers: list[Observer] = list(observers)
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._cancelled = threading.Event()
        self._inbox: deque[tuple[str, str, StatusSnapshot]] = deque()
        self._started = False
        self._delivered = False
        self._started_at = 0.0
        self._thread: Optional[threading.Thread] = None

    # --- caller surface ---

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._delivered

    @property
    def state(self) -> AttemptState:
        return self.attempt.state if self.attempt else AttemptState.CREATED

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def run(self, amount: Any, raw_payee: str, session_reference: str = "") -> TerminalResult:
        self._prepare(amount, raw_payee, session_reference)
        return self._drive()

    def start(self, amount: Any, raw_payee: str, session_reference: str = "") -> UpdateStream:
        attempt = self._prepare(amount, raw_payee, session_reference)
        stream = UpdateStream(self)
        self.subscribe(stream._push)
        self._thread = threading.Thread(
            target=self._drive,
            name=f"stk-session-{attempt.attempt_id[:8]}",
            daemon=True,
        )
        self._thread.start()
        return stream

    def cancel(self) -> None:
        with self._lock:
            if self._delivered or self._cancelled.is_set():
                return
            self._cancelled.set()
        logger.info("cancel requested attempt=%s", self.attempt.attempt_id if self.attempt else "<unstarted>")
        self._wake.set()

    def offer(self, attempt_id: str, correlation_token: str, snapshot: StatusSnapshot) -> bool:
        """
        Queue an out-of-band status (e.g. a provider callback) for the loop.
        Returns False when the snapshot is stale and was discarded.
        """
        with self._lock:
            if not self._is_current(attempt_id, correlation_token):
                logger.info(
                    "discarding stale snapshot kind=%s attempt=%s token=%s",
                    snapshot.kind,
                    attempt_id,
                    correlation_token,
                )
                return False
            self._inbox.append((attempt_id, correlation_token, snapshot))
        self._wake.set()
        return True

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # --- loop ---

    def _prepare(self, amount: Any, raw_payee: str, session_reference: str) -> PaymentAttempt:
        # raises ValidationError before anything touches the network
        request = validate_request(amount, raw_payee, self.config.payee_format)
        with self._lock:
            if self._started:
                raise SessionAlreadyStarted("a session drives exactly one attempt; open a new session to retry")
            self._started = True
            self.attempt = PaymentAttempt(
                amount=request.amount,
                payee_reference=request.payee_reference,
                session_reference=session_reference,
            )
        logger.info(
            "attempt created attempt=%s payee=%s amount=%s ref=%s",
            self.attempt.attempt_id,
            mask_msisdn(request.payee_reference),
            request.amount,
            session_reference,
        )
        return self.attempt

    def _drive(self) -> TerminalResult:
        attempt = self.attempt
        assert attempt is not None
        self._started_at = self._clock()
        self._emit(UpdateKind.INFO, "Sending payment request...")

        if self._cancelled.is_set():
            self._handle(sm.CallerCancelled())
        else:
            self._initiate(attempt)

        while not attempt.is_terminal:
            self._wake.clear()
            if self._tick(attempt):
                break
            self._sleep(self._next_delay())

        assert attempt.terminal_result is not None
        return attempt.terminal_result

    def _initiate(self, attempt: PaymentAttempt) -> None:
        try:
            answered, result = self._call(
                self.gateway.initiate,
                attempt.amount,
                attempt.payee_reference,
                attempt.session_reference,
            )
        except Exception:
            logger.exception("gateway initiate raised attempt=%s", attempt.attempt_id)
            self._handle(sm.InitiationFailed(kind="UNREACHABLE", error="gateway raised"))
            return

        if not answered:
            # the prompt may still reach the phone; its late token is dropped
            logger.warning("initiate did not answer within budget attempt=%s", attempt.attempt_id)
            self._stop_waiting()
            return

        if result.ok and result.correlation_token:
            attempt.set_correlation_token(result.correlation_token)
            logger.info("request sent attempt=%s token=%s", attempt.attempt_id, result.correlation_token)
        else:
            logger.warning(
                "initiation failed attempt=%s kind=%s error=%s",
                attempt.attempt_id,
                result.error_kind,
                result.error,
            )
        self._handle(result.to_event())

    def _tick(self, attempt: PaymentAttempt) -> bool:
        """One scheduling point. Returns True once the attempt is terminal."""
        if self._cancelled.is_set():
            self._handle(sm.CallerCancelled())
            return True

        elapsed = self._clock() - self._started_at
        if elapsed >= self.config.poll_budget_s:
            self._handle(sm.BudgetExhausted(elapsed_s=elapsed))
            return True

        for snapshot in self._drain_inbox():
            self._apply_snapshot(snapshot)
            if attempt.is_terminal:
                return True

        attempt_id, token = attempt.attempt_id, attempt.correlation_token or ""
        snapshot = self._query(token)
        if snapshot is None:
            logger.warning("status query did not answer in time attempt=%s token=%s", attempt_id, token)
            self._stop_waiting()
            return attempt.is_terminal

        attempt.polls += 1
        metrics.increment_stk_poll(snapshot.kind)

        with self._lock:
            current = self._is_current(attempt_id, token)
        if not current:
            logger.info(
                "discarding poll response kind=%s attempt=%s (no longer current)",
                snapshot.kind,
                attempt_id,
            )
            if self._cancelled.is_set():
                self._handle(sm.CallerCancelled())
            return attempt.is_terminal

        # a final answer that arrived late still counts; a pending one does not
        # buy the attempt more time
        elapsed = self._clock() - self._started_at
        if not snapshot.is_final and elapsed >= self.config.poll_budget_s:
            self._handle(sm.BudgetExhausted(elapsed_s=elapsed))
            return True

        self._apply_snapshot(snapshot)
        return attempt.is_terminal

    def _query(self, token: str) -> Optional[StatusSnapshot]:
        try:
            answered, snapshot = self._call(self.gateway.query_status, token)
        except Exception as exc:
            logger.exception("gateway query raised token=%s", token)
            return StatusSnapshot(kind="TRANSIENT_ERROR", message=f"gateway raised: {exc}")
        return snapshot if answered else None

    def _stop_waiting(self) -> None:
        # a gateway call was abandoned: either the cashier cancelled or the budget ran out
        if self._cancelled.is_set():
            self._handle(sm.CallerCancelled())
            return
        self._handle(sm.BudgetExhausted(elapsed_s=self._clock() - self._started_at))

    def _call(self, fn: Callable[..., Any], *args: Any) -> tuple[bool, Any]:
        """
        Run one gateway call on a helper thread, bounded by the remaining
        budget. Returns (False, None) when the budget ran out or the caller
        cancelled first; whatever the gateway answers afterwards is dropped.
        Exceptions raised by the gateway are re-raised here.
        """
        deadline = self._started_at + self.config.poll_budget_s
        timeout_s = max(0.0, deadline - self._clock())
        done = threading.Event()
        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["value"] = fn(*args, timeout_s=timeout_s)
            except Exception as exc:
                box["error"] = exc
            finally:
                done.set()
                self._wake.set()

        threading.Thread(target=target, name="stk-gateway-call", daemon=True).start()

        while not done.is_set():
            if self._cancelled.is_set():
                return False, None
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False, None
            self._wake.wait(remaining)
            if not done.is_set():
                self._wake.clear()

        # completion set the wake flag; keep it only for a pending cancel or offer
        self._wake.clear()
        with self._lock:
            if self._inbox or self._cancelled.is_set():
                self._wake.set()

        if "error" in box:
            raise box["error"]
        return True, box.get("value")

    def _apply_snapshot(self, snapshot: StatusSnapshot) -> None:
        attempt = self.attempt
        assert attempt is not None
        if not snapshot.is_transient:
            attempt.transient_errors = 0
        self._handle(snapshot.to_event())

    def _drain_inbox(self) -> list[StatusSnapshot]:
        with self._lock:
            items = list(self._inbox)
            self._inbox.clear()
        return [snapshot for _, _, snapshot in items]

    def _is_current(self, attempt_id: str, token: str) -> bool:
        # caller holds self._lock
        attempt = self.attempt
        if attempt is None or self._delivered or self._cancelled.is_set():
            return False
        if attempt.is_terminal:
            return False
        return attempt.attempt_id == attempt_id and attempt.correlation_token == token

    def _next_delay(self) -> float:
        remaining = self.config.poll_budget_s - (self._clock() - self._started_at)
        return max(0.0, min(self.config.poll_interval_s, remaining))

    def _sleep(self, seconds: float) -> None:
        if self._wait is not None:
            self._wait(seconds)
        else:
            self._wake.wait(seconds)

    # --- state machine application ---

    def _handle(self, event: sm.Event) -> None:
        attempt = self.attempt
        assert attempt is not None
        old = attempt.state
        outcome = sm.apply(old, event)

        if Effect.COUNT_TRANSIENT_ERROR in outcome.effects:
            attempt.transient_errors += 1
            metrics.increment_stk_transient_error()
            logger.warning(
                "transient status error attempt=%s consecutive=%s error=%s",
                attempt.attempt_id,
                attempt.transient_errors,
                getattr(event, "error", None),
            )
            self._emit(UpdateKind.INFO, "Could not reach the payment provider; still waiting...")

        if not outcome.changed:
            return

        sm.assert_transition(old, outcome.state)
        attempt.record_transition(outcome.state, sm.event_name(event))
        logger.info(
            "attempt=%s %s -> %s on %s",
            attempt.attempt_id,
            old.value,
            outcome.state.value,
            sm.event_name(event),
        )

        if outcome.state.is_terminal:
            self._deliver_once(self._terminal_result(outcome.state, event))
        else:
            self._emit(UpdateKind.STATE_CHANGED, STATE_MESSAGES.get(outcome.state, ""))

    def _terminal_result(self, state: AttemptState, event: sm.Event) -> TerminalResult:
        if state == AttemptState.SETTLED:
            receipt = getattr(event, "receipt_ref", None)
            return TerminalResult(state=state, receipt_ref=receipt, message="Payment received successfully")
        if state == AttemptState.DECLINED:
            return TerminalResult(state=state, reason_code="DECLINED", message="Payment was declined by the customer")
        if state == AttemptState.TIMED_OUT:
            return TerminalResult(
                state=state,
                reason_code="TIMED_OUT",
                message=f"No response within {self.config.poll_budget_s:g} seconds",
            )
        if state == AttemptState.ABANDONED:
            return TerminalResult(state=state, reason_code="ABANDONED", message="Payment abandoned by cashier")
        if isinstance(event, sm.InitiationFailed):
            return TerminalResult(
                state=state,
                reason_code=f"INITIATION_{event.kind}",
                message=event.error or "Failed to send payment request",
            )
        code = getattr(event, "reason_code", None) or "UNKNOWN"
        return TerminalResult(state=state, reason_code=code, message=f"Payment rejected by provider ({code})")

    def _deliver_once(self, result: TerminalResult) -> None:
        with self._lock:
            if self._delivered:
                return
            self._delivered = True
            self._inbox.clear()
        attempt = self.attempt
        assert attempt is not None
        attempt.resolve(result)
        metrics.increment_stk_attempt(result.state.value)
        logger.info(
            "attempt=%s resolved state=%s reason=%s receipt=%s polls=%s",
            attempt.attempt_id,
            result.state.value,
            result.reason_code,
            result.receipt_ref,
            attempt.polls,
        )
        self._emit(UpdateKind.TERMINAL, result.message, terminal_result=result)

    def _emit(self, kind: UpdateKind, message: str, *, terminal_result: TerminalResult | None = None) -> None:
        attempt = self.attempt
        assert attempt is not None
        update = SessionUpdate(
            attempt_id=attempt.attempt_id,
            state=attempt.state,
            kind=kind,
            message=message,
            terminal_result=terminal_result,
        )
        for observer in list(self._observers):
            try:
                observer(update)
            except Exception:
                logger.exception("session observer failed attempt=%s", attempt.attempt_id)


class SaleAttemptRegistry:
    """
    One active payment attempt per sale. A session counts as active from
    open() until it delivers its terminal result, whether or not it has been
    started yet. A retry for the same sale is only allowed after that, or
    after abandon().
    """

    def __init__(
        self,
        gateway: PushPaymentGateway,
        config: Optional[SessionConfig] = None,
        **session_kwargs: Any,
    ):
        self.gateway = gateway
        self.config = config
        self._session_kwargs = session_kwargs
        self._lock = threading.Lock()
        self._active: dict[str, PaymentSession] = {}

    def open(self, sale_ref: str) -> PaymentSession:
        with self._lock:
            existing = self._active.get(sale_ref)
            if existing is not None and not existing.finished:
                raise AttemptInProgress(f"sale {sale_ref} already has an open attempt")
            session = PaymentSession(self.gateway, self.config, **self._session_kwargs)
            self._active[sale_ref] = session

        def release(update: SessionUpdate) -> None:
            if update.is_terminal:
                self._forget(sale_ref, session)

        session.subscribe(release)
        return session

    def active(self, sale_ref: str) -> Optional[PaymentSession]:
        with self._lock:
            session = self._active.get(sale_ref)
        if session is None or session.finished:
            return None
        return session

    def abandon(self, sale_ref: str) -> bool:
        with self._lock:
            session = self._active.pop(sale_ref, None)
        if session is None:
            return False
        session.cancel()
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)

    def _forget(self, sale_ref: str, session: PaymentSession) -> None:
        with self._lock:
            if self._active.get(sale_ref) is session:
                del self._active[sale_ref]
