"""Payment processor contract and HTTP client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from bounty_settlement.errors import PaymentGatewayError, TransientInfraError

logger = logging.getLogger(__name__)

# 402 is a processor-side decline, which the ledger retries like a hiccup.
_TRANSIENT_STATUS_CODES = frozenset({402, 408, 409, 425, 429, 500, 502, 503, 504})


@dataclass(slots=True)
class EscrowHold:
    """Manual-capture authorization created for a task reward."""

    payment_intent_id: str
    checkout_session_id: str | None = None
    checkout_url: str | None = None


class PaymentGateway(Protocol):
    """Operations the ledger needs from an external payment processor."""

    def create_escrow_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> EscrowHold:
        """Authorize funds without capturing them."""

    def capture(
        self,
        payment_intent_id: str,
        *,
        amount_cents: int,
        payout_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Capture held funds and transfer the payout; returns a capture id."""

    def refund(
        self,
        payment_intent_id: str,
        *,
        reason: str,
        idempotency_key: str,
    ) -> str:
        """Release held funds back to the poster; returns a refund id."""


class HttpPaymentGateway:
    """JSON-over-HTTP processor client with idempotency keys."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def create_escrow_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> EscrowHold:
        payload = self._post(
            "/v1/escrow_holds",
            body={
                "amount": amount_cents,
                "currency": currency,
                "capture_method": "manual",
                "metadata": metadata,
            },
            idempotency_key=idempotency_key,
        )
        payment_intent_id = payload.get("payment_intent_id")
        if not isinstance(payment_intent_id, str) or not payment_intent_id:
            raise PaymentGatewayError("Processor response is missing payment_intent_id.")
        return EscrowHold(
            payment_intent_id=payment_intent_id,
            checkout_session_id=_optional_str(payload.get("checkout_session_id")),
            checkout_url=_optional_str(payload.get("checkout_url")),
        )

    def capture(
        self,
        payment_intent_id: str,
        *,
        amount_cents: int,
        payout_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        payload = self._post(
            f"/v1/payment_intents/{payment_intent_id}/capture",
            body={
                "amount_to_capture": amount_cents,
                "transfer_amount": payout_cents,
                "metadata": metadata,
            },
            idempotency_key=idempotency_key,
        )
        return _required_id(payload, "capture_id")

    def refund(
        self,
        payment_intent_id: str,
        *,
        reason: str,
        idempotency_key: str,
    ) -> str:
        payload = self._post(
            "/v1/refunds",
            body={"payment_intent": payment_intent_id, "reason": reason},
            idempotency_key=idempotency_key,
        )
        return _required_id(payload, "refund_id")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpPaymentGateway:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _post(self, path: str, *, body: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        try:
            response = self._client.post(
                path,
                json=body,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling payment processor %s", path)
            raise TransientInfraError(f"Payment processor timed out: {path}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling payment processor %s: %s", path, error)
            raise TransientInfraError(f"Payment processor transport error: {error}") from error

        if response.status_code in _TRANSIENT_STATUS_CODES:
            raise TransientInfraError(
                f"Payment processor HTTP {response.status_code} on {path}",
            )
        if not response.is_success:
            raise PaymentGatewayError(
                f"Payment processor rejected {path}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise PaymentGatewayError(f"Payment processor returned non-JSON for {path}") from error
        if not isinstance(payload, dict):
            raise PaymentGatewayError(f"Payment processor returned non-object for {path}")
        return payload


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _required_id(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise PaymentGatewayError(f"Processor response is missing {key}.")
    return value
