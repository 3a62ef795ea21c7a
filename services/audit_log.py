from __future__ import annotations

import logging
from typing import Any, Callable, ContextManager

from psycopg2.extras import Json

from services.redaction import mask_msisdn
from tillpay.payments.model import PaymentAttempt, SessionUpdate

logger = logging.getLogger("tillpay.audit")


def write_attempt_transitions(conn, attempt: PaymentAttempt) -> int:
    """
    Persist the attempt's transition log. Rows are keyed by
    (attempt_id, seq) so re-writing the same attempt is a no-op.
    """
    result = attempt.terminal_result
    summary: dict[str, Any] = {
        "payee": mask_msisdn(attempt.payee_reference),
        "amount": str(attempt.amount),
        "session_reference": attempt.session_reference,
        "polls": attempt.polls,
    }
    if result is not None:
        summary.update(
            {
                "receipt_ref": result.receipt_ref,
                "reason_code": result.reason_code,
                "message": result.message,
            }
        )

    with conn.cursor() as cur:
        for seq, t in enumerate(attempt.transitions, start=1):
            cur.execute(
                """
                INSERT INTO app.stk_attempt_transitions (
                  attempt_id, seq, correlation_token,
                  from_state, to_state, event, occurred_at, metadata
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (attempt_id, seq) DO NOTHING;
                """,
                (
                    attempt.attempt_id,
                    seq,
                    attempt.correlation_token,
                    t.from_state.value,
                    t.to_state.value,
                    t.event,
                    t.at,
                    Json(summary if t.to_state.is_terminal else {}),
                ),
            )
    return len(attempt.transitions)


def attach_audit_log(session, conn_factory: Callable[[], ContextManager[Any]]) -> None:
    """
    Subscribe an audit writer to a PaymentSession; the full transition log
    is written once, when the terminal update is delivered.
    """

    def _on_update(update: SessionUpdate) -> None:
        if not update.is_terminal or session.attempt is None:
            return
        with conn_factory() as conn:
            n = write_attempt_transitions(conn, session.attempt)
        logger.info("audit log written attempt=%s transitions=%s", update.attempt_id, n)

    session.subscribe(_on_update)
