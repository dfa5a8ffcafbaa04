"""Stripe webhook signature verification.

Header format (Stripe-Signature):
    t=<unix seconds>,v1=<hex hmac>[,v1=<hex hmac>...][,v0=...]

Expected signature: HMAC-SHA256(secret, f"{t}.{raw_body}"), hex-encoded.
Every v1 entry is compared in constant time (Stripe sends several during
secret rotation). The body is parsed as JSON only after the signature and
timestamp check pass, so unverified input never reaches the JSON parser.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from resort_api.billing.result import Err, ErrorKind, Ok, Result

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorEventEnvelope:
    """Verified Stripe event."""

    id: str
    type: str
    data_object: dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None


def compute_signature(secret: str, timestamp: int | str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 over "{timestamp}.{body}" (also used by tests to sign payloads)."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class WebhookVerifier:
    """Validate Stripe-Signature and decode the event."""

    def __init__(self, secret: str, tolerance_seconds: int = 300):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        now: Optional[float] = None,
    ) -> Result[ProcessorEventEnvelope]:
        if not signature_header:
            return Err(ErrorKind.SIGNATURE_INVALID, "Missing Stripe-Signature header")

        timestamp, signatures = _parse_header(signature_header)
        if timestamp is None or not signatures:
            return Err(ErrorKind.SIGNATURE_INVALID, "Malformed Stripe-Signature header")

        expected = compute_signature(self.secret, timestamp, raw_body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            return Err(ErrorKind.SIGNATURE_INVALID, "Signature mismatch")

        current = time.time() if now is None else now
        if abs(current - timestamp) > self.tolerance_seconds:
            return Err(
                ErrorKind.SIGNATURE_INVALID,
                "Timestamp outside the tolerance zone",
                {"tolerance_seconds": self.tolerance_seconds},
            )

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Err(ErrorKind.SIGNATURE_INVALID, "Signed payload is not valid JSON")

        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            return Err(ErrorKind.SIGNATURE_INVALID, "Signed payload is not a Stripe event")

        data_object = (payload.get("data") or {}).get("object") or {}
        return Ok(
            ProcessorEventEnvelope(
                id=str(payload["id"]),
                type=str(payload["type"]),
                data_object=data_object if isinstance(data_object, dict) else {},
                created=payload.get("created"),
            )
        )
