# tests/conftest.py

from dataclasses import dataclass

import pytest

from services import metrics
from tillpay.payments.session import PaymentSession, SessionConfig
from tillpay.payments.validator import PayeeFormat


KENYA = PayeeFormat(country_code="254", subscriber_length=9, leading_digits="71")


@dataclass
class FakeClock:
    """Monotonic clock that only moves when the session waits."""

    now: float = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_session(clock):
    def _make(gateway, *, interval: float = 3.0, budget: float = 90.0, **kwargs) -> PaymentSession:
        config = SessionConfig(poll_interval_s=interval, poll_budget_s=budget, payee_format=KENYA)
        return PaymentSession(gateway, config, clock=clock, wait=clock.sleep, **kwargs)

    return _make
