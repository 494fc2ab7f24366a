"""Signed payment webhook verification and parsing."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Callable

from bounty_settlement.errors import SignatureVerificationError
from bounty_settlement.models import PaymentEvent

SIGNATURE_HEADER = "Payment-Signature"


def compute_signature(secret: str, *, timestamp: int, body: bytes) -> str:
    """Hex HMAC-SHA256 over `"{timestamp}.{body}"`."""

    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, *, body: bytes, timestamp: int | None = None) -> str:
    stamp = int(time.time()) if timestamp is None else timestamp
    return f"t={stamp},v1={compute_signature(secret, timestamp=stamp, body=body)}"


class WebhookVerifier:
    """Checks the processor signature before any payload is trusted."""

    def __init__(
        self,
        *,
        secret: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, *, body: bytes, signature_header: str | None) -> PaymentEvent:
        """Return the parsed event or raise `SignatureVerificationError`."""

        if not self._secret:
            raise SignatureVerificationError("Webhook secret is not configured.")
        if not signature_header:
            raise SignatureVerificationError("Missing webhook signature header.")

        timestamp, signatures = _parse_header(signature_header)
        if abs(self._clock() - timestamp) > self._tolerance_seconds:
            raise SignatureVerificationError("Webhook timestamp outside tolerance window.")

        expected = compute_signature(self._secret, timestamp=timestamp, body=body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureVerificationError("Webhook signature mismatch.")
        return parse_event(body)


def parse_event(body: bytes) -> PaymentEvent:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise SignatureVerificationError(f"Webhook body is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise SignatureVerificationError("Webhook body must be a JSON object.")

    event_type = payload.get("type")
    event_id = _first_str(payload, "id", "event_id", "eventId")
    if not isinstance(event_type, str) or event_id is None:
        raise SignatureVerificationError("Webhook body is missing type or id.")

    data = payload.get("data")
    data = data if isinstance(data, dict) else payload
    metadata = data.get("metadata")
    metadata = metadata if isinstance(metadata, dict) else {}
    return PaymentEvent(
        event_type=event_type,
        event_id=event_id,
        payment_intent_id=_first_str(
            data,
            "payment_intent_id",
            "paymentIntentId",
            "payment_intent",
        ),
        task_id=_first_str(data, "task_id", "taskId") or _first_str(metadata, "task_id", "taskId"),
    )


def _first_str(mapping: dict[str, object], *keys: str) -> str | None:
    """First non-empty string value among `keys`."""

    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as error:
                raise SignatureVerificationError("Malformed webhook timestamp.") from error
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise SignatureVerificationError("Malformed webhook signature header.")
    return timestamp, signatures
