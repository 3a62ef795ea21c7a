from __future__ import annotations

import threading
import time
from decimal import Decimal

import pytest

from services import metrics
from tillpay.payments.model import AttemptState, UpdateKind
from tillpay.payments.session import (
    AttemptInProgress,
    PaymentSession,
    SaleAttemptRegistry,
    SessionAlreadyStarted,
    SessionConfig,
)
from tillpay.payments.validator import InvalidAmount, InvalidPayee
from tillpay.providers import base
from tillpay.providers.base import InitiationResult
from tillpay.providers.mock import ScriptedGateway
from tests.conftest import KENYA


def _terminal(updates):
    return [u for u in updates if u.kind == UpdateKind.TERMINAL]


def test_settles_after_customer_confirms(make_session):
    gateway = ScriptedGateway(
        [base.still_pending(), base.customer_interacting(), base.succeeded("QAZ123XYZ")],
        token="T-1",
    )
    session = make_session(gateway)
    updates = []
    session.subscribe(updates.append)

    result = session.run(500, "712345678", "RCPT-42")

    assert result.ok is True
    assert result.state == AttemptState.SETTLED
    assert result.receipt_ref == "QAZ123XYZ"
    assert gateway.initiate_calls == [(Decimal("500"), "254712345678", "RCPT-42")]
    # no further polls after settlement
    assert gateway.query_calls == ["T-1", "T-1", "T-1"]

    attempt = session.attempt
    assert attempt.correlation_token == "T-1"
    assert [(t.from_state, t.to_state) for t in attempt.transitions] == [
        (AttemptState.CREATED, AttemptState.REQUEST_SENT),
        (AttemptState.REQUEST_SENT, AttemptState.AWAITING_CUSTOMER),
        (AttemptState.AWAITING_CUSTOMER, AttemptState.SETTLED),
    ]
    assert [u.state for u in updates if u.kind == UpdateKind.STATE_CHANGED] == [
        AttemptState.REQUEST_SENT,
        AttemptState.AWAITING_CUSTOMER,
    ]
    terminal = _terminal(updates)
    assert len(terminal) == 1
    assert terminal[0].terminal_result == result
    assert updates[-1] is terminal[0]


def test_times_out_when_gateway_never_answers(make_session, clock):
    gateway = ScriptedGateway([base.still_pending()], token="T-1")
    session = make_session(gateway, interval=3, budget=90)

    result = session.run(500, "712345678")

    assert result.state == AttemptState.TIMED_OUT
    assert result.reason_code == "TIMED_OUT"
    assert len(gateway.query_calls) == 30
    assert 90 <= clock.now < 93
    assert session.attempt.terminal_transitions()[-1].event == "BudgetExhausted"


def test_budget_is_enforced_even_when_interval_does_not_divide_it(make_session, clock):
    gateway = ScriptedGateway([], token="T-1")
    session = make_session(gateway, interval=7, budget=20)

    result = session.run(1, "712345678")

    assert result.state == AttemptState.TIMED_OUT
    assert 20 <= clock.now < 27
    assert len(gateway.query_calls) == 3


def test_customer_decline_is_distinct_from_provider_rejection(make_session):
    declined = make_session(ScriptedGateway([base.declined_by_customer()])).run(10, "712345678")
    rejected = make_session(ScriptedGateway([base.rejected_by_provider("2001")])).run(10, "712345678")

    assert declined.state == AttemptState.DECLINED
    assert declined.reason_code == "DECLINED"
    assert rejected.state == AttemptState.REJECTED
    assert rejected.reason_code == "2001"


@pytest.mark.parametrize(
    "initiation,reason",
    [
        (InitiationResult.rejected("Bad Request - Invalid PhoneNumber"), "INITIATION_REJECTED"),
        (InitiationResult.unreachable("HTTP 503"), "INITIATION_UNREACHABLE"),
    ],
)
def test_initiation_failure_never_polls(make_session, initiation, reason):
    gateway = ScriptedGateway([base.succeeded("NOPE")], initiation=initiation)
    session = make_session(gateway)
    updates = []
    session.subscribe(updates.append)

    result = session.run(10, "712345678")

    assert result.state == AttemptState.REJECTED
    assert result.reason_code == reason
    assert gateway.query_calls == []
    assert session.attempt.correlation_token is None
    assert len(_terminal(updates)) == 1


def test_transient_errors_do_not_terminate(make_session):
    gateway = ScriptedGateway(
        [
            base.transient_error("HTTP 503"),
            base.transient_error("Gateway timeout"),
            base.still_pending(),
            base.succeeded("R-1"),
        ]
    )
    session = make_session(gateway)

    result = session.run(10, "712345678")

    assert result.ok
    assert session.attempt.polls == 4
    assert session.attempt.transient_errors == 0
    assert metrics.get_counter("stk_transient_errors_total") == 2
    assert metrics.get_counter("stk_polls_total", {"result": "TRANSIENT_ERROR"}) == 2
    assert metrics.get_counter("stk_attempts_total", {"outcome": "SETTLED"}) == 1


def test_gateway_exception_is_treated_as_transient(make_session):
    class FlakyGateway(ScriptedGateway):
        def query_status(self, correlation_token, *, timeout_s=None):
            snap = super().query_status(correlation_token, timeout_s=timeout_s)
            if len(self.query_calls) == 1:
                raise ConnectionError("socket closed")
            return snap

    gateway = FlakyGateway([base.still_pending(), base.succeeded("R-2")])
    result = make_session(gateway).run(10, "712345678")

    assert result.receipt_ref == "R-2"
    assert metrics.get_counter("stk_transient_errors_total") == 1


def test_validation_failure_never_reaches_gateway(make_session):
    gateway = ScriptedGateway()
    session = make_session(gateway)

    with pytest.raises(InvalidAmount):
        session.run(0, "712345678")
    with pytest.raises(InvalidPayee):
        session.run(10, "71234")

    assert gateway.initiate_calls == []
    assert session.attempt is None


def test_cancel_before_run_abandons_without_network(make_session):
    gateway = ScriptedGateway()
    session = make_session(gateway)
    session.cancel()

    result = session.run(10, "712345678")

    assert result.state == AttemptState.ABANDONED
    assert result.abandoned is True
    assert gateway.initiate_calls == []


def test_cancel_during_in_flight_query_discards_response(make_session):
    class CancellingGateway(ScriptedGateway):
        session: PaymentSession

        def query_status(self, correlation_token, *, timeout_s=None):
            snap = super().query_status(correlation_token, timeout_s=timeout_s)
            if len(self.query_calls) == 2:
                self.session.cancel()
            return snap

    gateway = CancellingGateway([base.still_pending(), base.succeeded("LATE-RECEIPT")])
    session = make_session(gateway)
    gateway.session = session
    updates = []
    session.subscribe(updates.append)

    result = session.run(10, "712345678")

    assert result.state == AttemptState.ABANDONED
    assert result.receipt_ref is None
    assert len(gateway.query_calls) == 2
    assert len(_terminal(updates)) == 1
    assert AttemptState.SETTLED not in [t.to_state for t in session.attempt.transitions]


def test_cancel_is_idempotent_and_a_no_op_after_termination(make_session):
    gateway = ScriptedGateway([base.succeeded("R-3")])
    session = make_session(gateway)
    updates = []
    session.subscribe(updates.append)

    session.run(10, "712345678")
    transitions_before = list(session.attempt.transitions)
    session.cancel()
    session.cancel()

    assert session.state == AttemptState.SETTLED
    assert session.attempt.transitions == transitions_before
    assert len(_terminal(updates)) == 1
    assert metrics.get_counter("stk_attempts_total", {"outcome": "ABANDONED"}) == 0


def test_stale_offer_is_discarded(make_session):
    class OfferingGateway(ScriptedGateway):
        session: PaymentSession
        offered: list

        def query_status(self, correlation_token, *, timeout_s=None):
            snap = super().query_status(correlation_token, timeout_s=timeout_s)
            if len(self.query_calls) == 1:
                self.offered = [
                    self.session.offer("superseded-attempt", correlation_token, base.succeeded("STALE")),
                    self.session.offer(self.session.attempt.attempt_id, "other-token", base.succeeded("STALE")),
                ]
            return snap

    gateway = OfferingGateway([base.still_pending(), base.declined_by_customer()])
    session = make_session(gateway)
    gateway.session = session

    result = session.run(10, "712345678")

    assert gateway.offered == [False, False]
    assert result.state == AttemptState.DECLINED
    assert result.receipt_ref is None


def test_offered_callback_settles_before_next_poll(make_session):
    class CallbackGateway(ScriptedGateway):
        session: PaymentSession

        def query_status(self, correlation_token, *, timeout_s=None):
            snap = super().query_status(correlation_token, timeout_s=timeout_s)
            assert self.session.offer(self.session.attempt.attempt_id, correlation_token, base.succeeded("CB-1"))
            return snap

    gateway = CallbackGateway([base.still_pending()], token="ws_CO_1")
    session = make_session(gateway)
    gateway.session = session

    result = session.run(10, "712345678")

    assert result.receipt_ref == "CB-1"
    assert gateway.query_calls == ["ws_CO_1"]


def test_offer_after_termination_is_discarded(make_session):
    session = make_session(ScriptedGateway([base.succeeded("R-4")], token="T-9"))
    session.run(10, "712345678")

    assert session.offer(session.attempt.attempt_id, "T-9", base.declined_by_customer()) is False
    assert session.state == AttemptState.SETTLED


def test_a_session_drives_exactly_one_attempt(make_session):
    session = make_session(ScriptedGateway([base.succeeded("R-5")]))
    session.run(10, "712345678")

    with pytest.raises(SessionAlreadyStarted):
        session.run(10, "712345678")


def test_failing_observer_does_not_break_the_loop(make_session):
    def broken(update):
        raise RuntimeError("ui went away")

    seen = []
    session = make_session(ScriptedGateway([base.succeeded("R-6")]), observers=(broken,))
    session.subscribe(seen.append)

    result = session.run(10, "712345678")

    assert result.ok
    assert len(_terminal(seen)) == 1


def test_background_start_streams_updates_until_terminal():
    gateway = ScriptedGateway([base.still_pending(), base.customer_interacting(), base.succeeded("BG-1")])
    config = SessionConfig(poll_interval_s=0.01, poll_budget_s=10, payee_format=KENYA)
    session = PaymentSession(gateway, config)

    stream = session.start(25, "0712345678")
    updates = list(stream)

    assert updates[-1].kind == UpdateKind.TERMINAL
    assert stream.result(timeout=5).receipt_ref == "BG-1"
    assert stream.attempt_id == session.attempt.attempt_id
    session.join(timeout=5)


def test_background_cancel_wakes_the_loop():
    gateway = ScriptedGateway([base.still_pending()])
    config = SessionConfig(poll_interval_s=30, poll_budget_s=300, payee_format=KENYA)
    session = PaymentSession(gateway, config)

    stream = session.start(25, "712345678")
    stream.cancel()
    result = stream.result(timeout=5)

    assert result.state == AttemptState.ABANDONED
    session.join(timeout=5)


def test_background_validation_error_raises_synchronously():
    session = PaymentSession(ScriptedGateway(), SessionConfig(payee_format=KENYA))
    with pytest.raises(InvalidPayee):
        session.start(25, "812345678")


def test_registry_allows_one_attempt_per_sale():
    gateway = ScriptedGateway([base.still_pending()])
    config = SessionConfig(poll_interval_s=30, poll_budget_s=300, payee_format=KENYA)
    registry = SaleAttemptRegistry(gateway, config)

    first = registry.open("SALE-1")
    stream = first.start(100, "712345678")

    with pytest.raises(AttemptInProgress):
        registry.open("SALE-1")
    assert registry.active("SALE-1") is first

    # another sale is independent
    other = registry.open("SALE-2")
    assert other is not first

    assert registry.abandon("SALE-1") is True
    assert stream.result(timeout=5).state == AttemptState.ABANDONED

    retry = registry.open("SALE-1")
    assert retry is not first
    assert registry.abandon("SALE-404") is False


def test_registry_reopens_after_terminal(make_session, clock):
    gateway = ScriptedGateway([base.declined_by_customer()])
    config = SessionConfig(poll_interval_s=3, poll_budget_s=90, payee_format=KENYA)
    registry = SaleAttemptRegistry(gateway, config, clock=clock, wait=clock.sleep)

    first = registry.open("SALE-7")
    first.run(100, "712345678")
    assert registry.active("SALE-7") is None

    second = registry.open("SALE-7")
    assert second is not first
    second.run(100, "712345678")
    assert first.attempt.attempt_id != second.attempt.attempt_id


def test_session_config_rejects_non_positive_values():
    with pytest.raises(ValueError):
        SessionConfig(poll_interval_s=0)
    with pytest.raises(ValueError):
        SessionConfig(poll_budget_s=-1)


def test_slow_gateway_is_cut_off_at_the_budget(make_session, clock):
    class SlowGateway(ScriptedGateway):
        """Each query takes 25s unless the caller allows less."""

        def query_status(self, correlation_token, *, timeout_s=None):
            super().query_status(correlation_token, timeout_s=timeout_s)
            if timeout_s is not None and timeout_s < 25:
                clock.now += timeout_s
                return base.transient_error("read timeout")
            clock.now += 25
            return base.still_pending()

    gateway = SlowGateway(token="T-1")
    session = make_session(gateway, interval=3, budget=90)

    result = session.run(500, "712345678")

    assert result.state == AttemptState.TIMED_OUT
    assert 90 <= clock.now < 93
    # queries at t=0, 28, 56 and 84; the last one is only given what is left
    assert gateway.timeouts[1:] == [90, 62, 34, 6]


def test_hung_status_query_resolves_within_budget():
    release = threading.Event()

    class HungGateway(ScriptedGateway):
        def query_status(self, correlation_token, *, timeout_s=None):
            super().query_status(correlation_token, timeout_s=timeout_s)
            release.wait(5)
            return base.succeeded("TOO-LATE")

    config = SessionConfig(poll_interval_s=0.05, poll_budget_s=0.2, payee_format=KENYA)
    session = PaymentSession(HungGateway(), config)

    began = time.monotonic()
    stream = session.start(10, "712345678")
    result = stream.result(timeout=1.0)
    took = time.monotonic() - began
    release.set()
    session.join(timeout=5)

    assert result.state == AttemptState.TIMED_OUT
    assert result.receipt_ref is None
    assert took < 1.0
    assert session.state == AttemptState.TIMED_OUT


def test_hung_initiate_resolves_within_budget():
    release = threading.Event()

    class HungGateway(ScriptedGateway):
        def initiate(self, amount, payee_reference, session_reference, *, timeout_s=None):
            release.wait(5)
            return super().initiate(amount, payee_reference, session_reference, timeout_s=timeout_s)

    gateway = HungGateway()
    config = SessionConfig(poll_interval_s=0.05, poll_budget_s=0.2, payee_format=KENYA)
    session = PaymentSession(gateway, config)

    result = session.start(10, "712345678").result(timeout=1.0)
    release.set()
    session.join(timeout=5)

    assert result.state == AttemptState.TIMED_OUT
    assert session.attempt.correlation_token is None
    assert gateway.query_calls == []


def test_cancel_does_not_wait_for_a_hung_query():
    release = threading.Event()
    entered = threading.Event()

    class HungGateway(ScriptedGateway):
        def query_status(self, correlation_token, *, timeout_s=None):
            entered.set()
            release.wait(5)
            return super().query_status(correlation_token, timeout_s=timeout_s)

    config = SessionConfig(poll_interval_s=1, poll_budget_s=60, payee_format=KENYA)
    session = PaymentSession(HungGateway(), config)

    stream = session.start(10, "712345678")
    assert entered.wait(5)
    stream.cancel()
    result = stream.result(timeout=1.0)
    release.set()
    session.join(timeout=5)

    assert result.state == AttemptState.ABANDONED


def test_registry_blocks_a_second_open_before_either_starts():
    gateway = ScriptedGateway([base.still_pending()])
    registry = SaleAttemptRegistry(gateway, SessionConfig(poll_interval_s=30, poll_budget_s=300, payee_format=KENYA))

    first = registry.open("SALE-1")
    with pytest.raises(AttemptInProgress):
        registry.open("SALE-1")

    assert registry.active("SALE-1") is first
    assert gateway.initiate_calls == []


def test_registry_abandon_before_start_frees_the_sale():
    gateway = ScriptedGateway([base.succeeded("R-8")])
    registry = SaleAttemptRegistry(gateway, SessionConfig(payee_format=KENYA))

    stale = registry.open("SALE-3")
    assert registry.abandon("SALE-3") is True
    assert registry.open("SALE-3") is not stale

    # the abandoned session can no longer reach the gateway
    assert stale.run(10, "712345678").state == AttemptState.ABANDONED
    assert gateway.initiate_calls == []


def test_registry_forgets_finished_sales(clock):
    gateway = ScriptedGateway([base.declined_by_customer()])
    config = SessionConfig(poll_interval_s=3, poll_budget_s=90, payee_format=KENYA)
    registry = SaleAttemptRegistry(gateway, config, clock=clock, wait=clock.sleep)

    for n in range(5):
        registry.open(f"SALE-{n}").run(10, "712345678")

    assert len(registry) == 0
