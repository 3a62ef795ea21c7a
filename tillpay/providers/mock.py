# tillpay/providers/mock.py
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from tillpay.providers import base
from tillpay.providers.base import InitiationResult, StatusSnapshot


class ScriptedGateway:
    """
    Test/dev gateway.

    Replays a fixed script of status snapshots, one per query. Once the
    script runs out the last snapshot repeats (or STILL_PENDING when the
    script is empty), which models a provider that never answers.
    Every call is recorded so tests can assert on what was sent.
    """

    def __init__(
        self,
        snapshots: Iterable[StatusSnapshot] = (),
        *,
        initiation: Optional[InitiationResult] = None,
        token: str = "mock-checkout-1",
    ):
        self.snapshots = list(snapshots)
        self.initiation = initiation or InitiationResult.accepted(token)
        self.initiate_calls: list[tuple[Decimal, str, str]] = []
        self.query_calls: list[str] = []
        self.timeouts: list[Optional[float]] = []

    def initiate(
        self,
        amount: Decimal,
        payee_reference: str,
        session_reference: str,
        *,
        timeout_s: Optional[float] = None,
    ) -> InitiationResult:
        self.timeouts.append(timeout_s)
        self.initiate_calls.append((amount, payee_reference, session_reference))
        return self.initiation

    def query_status(self, correlation_token: str, *, timeout_s: Optional[float] = None) -> StatusSnapshot:
        idx = len(self.query_calls)
        self.timeouts.append(timeout_s)
        self.query_calls.append(correlation_token)
        if not self.snapshots:
            return base.still_pending()
        if idx < len(self.snapshots):
            return self.snapshots[idx]
        return self.snapshots[-1]
