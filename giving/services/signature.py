"""
Stripe webhook signature verification.

Stripe signs each delivery with the endpoint secret and sends the result in
the `Stripe-Signature` header:

    t=1700000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd

The signature is an HMAC-SHA256 over `"{t}." + raw_body`. It must be
computed over the exact bytes received; parsing and re-serializing the JSON
first would change them.
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from giving.core.exceptions import SignatureError

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class VerifiedEvent:
    """An authenticated gateway event, not yet validated against business rules."""

    id: str
    type: str
    data_object: dict[str, Any]
    payload: dict[str, Any] = field(repr=False)
    created: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "VerifiedEvent":
        """Build an event from a parsed payload (also used when replaying stored payloads)."""
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise SignatureError("Event payload has no id")
        if not isinstance(event_type, str) or not event_type:
            raise SignatureError("Event payload has no type")

        data = payload.get("data") or {}
        data_object = data.get("object") if isinstance(data, dict) else None

        return cls(
            id=event_id,
            type=event_type,
            data_object=data_object if isinstance(data_object, dict) else {},
            payload=payload,
            created=payload.get("created"),
        )


def compute_signature(raw_body: bytes, timestamp: str, secret: bytes) -> str:
    """Hex HMAC-SHA256 of the signed payload for one timestamp."""
    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret, signed_payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple[str, list[str]]:
    """
    Split a `Stripe-Signature` header into its timestamp and v1 signatures.

    Raises:
        SignatureError: if the header has no timestamp or no v1 signature
    """
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if not timestamp or not timestamp.isdigit():
        raise SignatureError("Signature header has no valid timestamp")
    if not signatures:
        raise SignatureError(f"Signature header has no {SIGNATURE_SCHEME} signature")
    return timestamp, signatures


class SignatureVerifier:
    """Authenticates raw webhook bodies against the endpoint secret."""

    def __init__(
        self,
        secret: str | bytes,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self._tolerance = tolerance_seconds
        self._clock = clock

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> VerifiedEvent:
        """
        Authenticate `raw_body` and parse it into a VerifiedEvent.

        Fails closed: any problem with the secret, header, signature,
        timestamp or body raises SignatureError, and the caller must not
        touch any state.
        """
        if not self._secret:
            raise SignatureError("Webhook secret is not configured")
        if not signature_header:
            raise SignatureError("Missing signature header")

        timestamp, signatures = parse_signature_header(signature_header)

        expected = compute_signature(raw_body, timestamp, self._secret).encode("ascii")
        # Check every candidate so the comparison time doesn't depend on which one matched
        matched = False
        for candidate in signatures:
            if hmac.compare_digest(expected, candidate.encode("utf-8")):
                matched = True
        if not matched:
            raise SignatureError("No signature matches the payload")

        if self._tolerance > 0 and abs(self._clock() - int(timestamp)) > self._tolerance:
            raise SignatureError("Signature timestamp outside the tolerance window")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SignatureError(f"Payload is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise SignatureError("Payload is not a JSON object")

        return VerifiedEvent.from_payload(payload)
