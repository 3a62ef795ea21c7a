from __future__ import annotations

import argparse
import logging
import sys

from services import metrics
from tillpay.payments.session import PaymentSession, SessionConfig
from tillpay.payments.validator import ValidationError
from tillpay.providers.factory import get_gateway
from tillpay.providers.validate import validate_gateway_startup


def main() -> int:
    parser = argparse.ArgumentParser(description="Send one STK push and follow it to a terminal state.")
    parser.add_argument("phone", help="customer phone, e.g. 712345678 or 0712345678")
    parser.add_argument("amount", help="amount to charge")
    parser.add_argument("--reference", default="SMOKE", help="account reference shown to the customer")
    parser.add_argument("--gateway", default=None, help="override PUSH_GATEWAY (DARAJA | MOCK)")
    parser.add_argument("--audit", action="store_true", help="write the transition log to DATABASE_URL")
    parser.add_argument("--metrics", action="store_true", help="print counters in Prometheus text format at the end")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    validate_gateway_startup()
    gateway = get_gateway(args.gateway)
    if gateway is None:
        print(f"Unsupported gateway: {args.gateway}")
        return 2

    config = SessionConfig.from_settings()
    session = PaymentSession(gateway, config)
    if args.audit:
        from db import get_conn
        from services.audit_log import attach_audit_log

        attach_audit_log(session, get_conn)

    try:
        stream = session.start(args.amount, args.phone, args.reference)
    except ValidationError as exc:
        print(f"invalid request: {exc.reason}")
        return 2

    print(f"attempt={stream.attempt_id} poll_interval={config.poll_interval_s}s budget={config.poll_budget_s}s")
    try:
        for update in stream:
            print(f"[{update.state.value}] {update.message}")
    except KeyboardInterrupt:
        print("cancelling...")
        stream.cancel()

    result = stream.result(timeout=config.poll_budget_s + config.poll_interval_s)
    print(
        "result:",
        f"state={result.state.value}",
        f"receipt={result.receipt_ref}",
        f"reason={result.reason_code}",
    )
    if args.metrics:
        print(metrics.render_prometheus(), end="")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
