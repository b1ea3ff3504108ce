"""HTTP payment gateway client."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

from billing_engine.services.billing_lifecycle.errors import TransientPaymentFailure
from billing_engine.services.billing_lifecycle.interfaces import PaymentResult

logger = logging.getLogger(__name__)

# Decline codes that retrying the same card will never fix.
NON_RETRYABLE_CODES = frozenset(
    {
        "customer_not_found",
        "payment_method_missing",
        "invalid_customer",
        "invalid_currency",
    }
)


class HttpPaymentGateway:
    """JSON-over-HTTP charge client.

    The remote service is expected to accept ``POST /charges`` with an
    ``Idempotency-Key`` header and answer with
    ``{"status": "succeeded"|"failed", "payment_id": ..., "code": ..., "message": ...}``.
    Transport errors and 5xx responses propagate as ``httpx.HTTPError`` so the
    caller can treat them as transient; rate limiting (429) and bodies that
    are not a JSON object raise ``TransientPaymentFailure``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        return httpx.post(url, json=payload, headers=headers, timeout=self.timeout)

    def attempt(
        self,
        idempotency_key: str,
        amount: Decimal,
        currency: str,
        customer_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        payload: dict[str, Any] = {
            "amount": str(amount),
            "currency": currency,
            "customer_id": customer_id,
        }
        if metadata:
            payload["metadata"] = metadata

        resp = self._post(
            f"{self.base_url}/charges", payload, self._headers(idempotency_key)
        )
        if resp.status_code >= 500:
            resp.raise_for_status()
        if resp.status_code == 429:
            raise TransientPaymentFailure(f"HTTP 429: gateway rate limit for {idempotency_key}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientPaymentFailure(
                f"HTTP {resp.status_code}: unreadable gateway response"
            ) from exc
        if not isinstance(data, dict):
            raise TransientPaymentFailure(
                f"HTTP {resp.status_code}: unexpected gateway response"
            )

        if resp.status_code < 400 and data.get("status") == "succeeded":
            return PaymentResult(success=True, payment_id=data.get("payment_id"))

        code = data.get("code")
        message = data.get("message") or code or f"HTTP {resp.status_code}"
        logger.info(f"Charge declined for key {idempotency_key}: {message}")
        return PaymentResult(
            success=False,
            payment_id=data.get("payment_id"),
            error=message,
            retryable=code not in NON_RETRYABLE_CODES,
        )
