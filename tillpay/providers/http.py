# tillpay/providers/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services.redaction import redact_dict, redact_text

logger = logging.getLogger("tillpay.http")

_SECRET_HEADERS = ("authorization", "x-api-key")


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[dict[str, Any]]
    text: str


def _per_request(timeout: float | None) -> Any:
    # httpx treats timeout=None as "no timeout", not "client default"
    return httpx.USE_CLIENT_DEFAULT if timeout is None else timeout


class HttpClient:
    """
    Thin httpx wrapper returning plain HttpResponse values.

    Transport exceptions (httpx.TimeoutException, httpx.TransportError) are
    left to the caller, which is the layer that knows how to classify them.
    """

    def __init__(self, timeout_s: float = 20.0, follow_redirects: bool = True):
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects)

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.post(url, headers=headers, json=json_body, timeout=_per_request(timeout))
        if debug:
            self._debug_dump("POST", url, headers, r, body=json_body)
        return self._wrap(r)

    def get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, str] | None = None,
        timeout: float | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.get(url, headers=headers, params=params, timeout=_per_request(timeout))
        if debug:
            self._debug_dump("GET", url, headers, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(
        method: str,
        url: str,
        headers: dict[str, str],
        r: httpx.Response,
        body: dict[str, Any] | None = None,
    ) -> None:
        safe_headers = {
            k: ("REDACTED" if k.lower() in _SECRET_HEADERS else v)
            for k, v in (headers or {}).items()
        }
        logger.debug(
            "%s %s headers=%s body=%s -> status=%s text=%s",
            method,
            url,
            safe_headers,
            redact_dict(body or {}),
            r.status_code,
            redact_text(r.text[:300]),
        )


def is_retryable_http(code: int) -> bool:
    # transient / throttling / gateway issues
    return code in (408, 425, 429, 500, 502, 503, 504)
