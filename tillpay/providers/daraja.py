# tillpay/providers/daraja.py
from __future__ import annotations

import base64
import logging
import math
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from tillpay.providers import base
from tillpay.providers.base import InitiationResult, PushPaymentGateway, StatusSnapshot
from tillpay.providers.config import DarajaConfig, daraja_config
from tillpay.providers.http import HttpClient, HttpResponse, is_retryable_http
from services.redaction import mask_msisdn

logger = logging.getLogger("tillpay.daraja")

TOKEN_SAFETY_BUFFER_S = 60
TRANSACTION_DESC_MAX = 20

RESULT_SUCCESS = "0"
RESULT_CANCELLED_BY_USER = "1032"
# "The transaction is being processed": the prompt reached the handset and
# the subscriber is locked into it.
ERROR_BEING_PROCESSED = "500.001.1001"


def _timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw.encode("utf-8")).decode("utf-8")


def _whole_units(amount: Decimal) -> int:
    return int(math.ceil(amount))


def _error_code(payload: Optional[dict[str, Any]]) -> str:
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("errorCode") or "").strip()


def _error_message(resp: HttpResponse) -> str:
    payload = resp.json or {}
    return str(
        payload.get("errorMessage")
        or payload.get("ResponseDescription")
        or payload.get("ResultDesc")
        or f"HTTP {resp.status_code}"
    )


def _response_payload(resp: HttpResponse, *, stage: str) -> dict[str, Any]:
    return {
        "stage": stage,
        "http_status": resp.status_code,
        "body": resp.json,
    }


def _metadata_value(items: Any, name: str) -> Optional[str]:
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and item.get("Name") == name and item.get("Value") is not None:
            return str(item["Value"])
    return None


def map_result_code(
    result_code: Any,
    *,
    checkout_request_id: str,
    description: Optional[str] = None,
    receipt: Optional[str] = None,
    response: Optional[dict[str, Any]] = None,
) -> StatusSnapshot:
    code = str(result_code).strip()
    if code == RESULT_SUCCESS:
        return base.succeeded(receipt or checkout_request_id, message=description, response=response)
    if code == RESULT_CANCELLED_BY_USER:
        return base.declined_by_customer(
            reason_code=code,
            message=description or "Transaction cancelled by user",
            response=response,
        )
    return base.rejected_by_provider(code, message=description, response=response)


def parse_stk_callback(body: dict[str, Any]) -> tuple[str, StatusSnapshot]:
    """
    Translate the asynchronous STK callback body into a status snapshot.

    Returns (checkout_request_id, snapshot). Raises ValueError when the body
    is not a recognizable callback.
    """
    cb = ((body or {}).get("Body") or {}).get("stkCallback")
    if not isinstance(cb, dict):
        raise ValueError("not an stkCallback body")

    checkout_id = str(cb.get("CheckoutRequestID") or "").strip()
    if not checkout_id:
        raise ValueError("stkCallback without CheckoutRequestID")
    if cb.get("ResultCode") is None:
        raise ValueError("stkCallback without ResultCode")

    items = (cb.get("CallbackMetadata") or {}).get("Item")
    snapshot = map_result_code(
        cb.get("ResultCode"),
        checkout_request_id=checkout_id,
        description=cb.get("ResultDesc"),
        receipt=_metadata_value(items, "MpesaReceiptNumber"),
        response={"stage": "callback", "body": body},
    )
    return checkout_id, snapshot


class DarajaGateway(PushPaymentGateway):
    def __init__(self, http: Optional[HttpClient] = None, config: Optional[DarajaConfig] = None):
        self.config = config or daraja_config()
        self.http = http or HttpClient(timeout_s=self.config.timeout_s)
        self._token: Optional[str] = None
        self._token_exp: float = 0.0

    def initiate(
        self,
        amount: Decimal,
        payee_reference: str,
        session_reference: str,
        *,
        timeout_s: Optional[float] = None,
    ) -> InitiationResult:
        cfg = self.config
        timeout = self._call_timeout(timeout_s)
        missing = cfg.missing()
        if missing:
            return InitiationResult.rejected("MPESA_CONFIG_MISSING", response={"missing": missing})

        token = self._get_token(timeout)
        if not token:
            return InitiationResult.unreachable("MPESA_TOKEN_ERROR")

        timestamp = _timestamp()
        description = f"Payment {session_reference}".strip()
        body = {
            "BusinessShortCode": cfg.shortcode,
            "Password": generate_password(cfg.shortcode, cfg.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": cfg.transaction_type,
            "Amount": _whole_units(amount),
            "PartyA": payee_reference,
            "PartyB": cfg.shortcode,
            "PhoneNumber": payee_reference,
            "CallBackURL": cfg.callback_url,
            "AccountReference": f"{cfg.account_reference_prefix}{session_reference}",
            "TransactionDesc": description[:TRANSACTION_DESC_MAX],
        }

        url = f"{cfg.base_url}/mpesa/stkpush/v1/processrequest"
        try:
            resp = self.http.post(url, headers=self._auth_headers(token), json_body=body, timeout=timeout, debug=True)
        except httpx.TimeoutException:
            logger.warning("stk push timeout payee=%s", mask_msisdn(payee_reference))
            return InitiationResult.unreachable("Gateway timeout")
        except httpx.HTTPError as exc:
            logger.warning("stk push transport error payee=%s err=%s", mask_msisdn(payee_reference), exc)
            return InitiationResult.unreachable(f"Provider error: {exc}")

        logger.info("stk push status=%s payee=%s", resp.status_code, mask_msisdn(payee_reference))
        payload = _response_payload(resp, stage="initiate")

        if resp.status_code == 200 and resp.json is not None:
            code = str(resp.json.get("ResponseCode") or "").strip()
            checkout_id = str(resp.json.get("CheckoutRequestID") or "").strip()
            if code == "0" and checkout_id:
                return InitiationResult.accepted(checkout_id, response=payload)
            return InitiationResult.rejected(_error_message(resp), response=payload)

        if resp.status_code == 401:
            self._token = None
            return InitiationResult.unreachable("HTTP 401", response=payload)

        if is_retryable_http(resp.status_code):
            return InitiationResult.unreachable(f"HTTP {resp.status_code}", response=payload)

        return InitiationResult.rejected(_error_message(resp), response=payload)

    def query_status(self, correlation_token: str, *, timeout_s: Optional[float] = None) -> StatusSnapshot:
        cfg = self.config
        timeout = self._call_timeout(timeout_s)
        token = self._get_token(timeout)
        if not token:
            return base.transient_error("MPESA_TOKEN_ERROR")

        timestamp = _timestamp()
        body = {
            "BusinessShortCode": cfg.shortcode,
            "Password": generate_password(cfg.shortcode, cfg.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_token,
        }

        url = f"{cfg.base_url}/mpesa/stkpushquery/v1/query"
        try:
            resp = self.http.post(url, headers=self._auth_headers(token), json_body=body, timeout=timeout, debug=True)
        except httpx.TimeoutException:
            return base.transient_error("Gateway timeout")
        except httpx.HTTPError as exc:
            logger.warning("stk query transport error checkout_id=%s err=%s", correlation_token, exc)
            return base.transient_error(f"Provider error: {exc}")

        logger.info("stk query status=%s checkout_id=%s", resp.status_code, correlation_token)
        payload = _response_payload(resp, stage="query")

        if _error_code(resp.json) == ERROR_BEING_PROCESSED:
            return base.customer_interacting(message=_error_message(resp), response=payload)

        if resp.status_code == 200 and resp.json is not None:
            if resp.json.get("ResultCode") is None:
                return base.still_pending(response=payload)
            return map_result_code(
                resp.json.get("ResultCode"),
                checkout_request_id=correlation_token,
                description=resp.json.get("ResultDesc"),
                receipt=resp.json.get("MpesaReceiptNumber"),
                response=payload,
            )

        if resp.status_code == 401:
            self._token = None

        return base.transient_error(f"HTTP {resp.status_code}", response=payload)

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _call_timeout(self, timeout_s: Optional[float]) -> Optional[float]:
        # never wait on the transport longer than the caller will wait on us
        if timeout_s is None:
            return None
        return max(0.001, min(self.config.timeout_s, timeout_s))

    def _get_token(self, timeout: Optional[float] = None) -> Optional[str]:
        cfg = self.config
        now = time.time()
        if self._token and now < self._token_exp:
            return self._token

        if not (cfg.base_url and cfg.consumer_key and cfg.consumer_secret):
            return None

        basic = base64.b64encode(f"{cfg.consumer_key}:{cfg.consumer_secret}".encode()).decode()
        url = f"{cfg.base_url}/oauth/v1/generate"
        try:
            resp = self.http.get(
                url,
                headers={"Authorization": f"Basic {basic}"},
                params={"grant_type": "client_credentials"},
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("mpesa token request failed err=%s", exc)
            return None

        if resp.status_code == 200 and resp.json and resp.json.get("access_token"):
            try:
                expires_in = int(resp.json.get("expires_in") or 3600)
            except (TypeError, ValueError):
                expires_in = 3600
            self._token = str(resp.json["access_token"])
            self._token_exp = now + max(0, expires_in - TOKEN_SAFETY_BUFFER_S)
            return self._token

        logger.warning("mpesa token request rejected status=%s", resp.status_code)
        return None
