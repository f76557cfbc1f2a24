"""Webhook signature verification: constant-time HMAC over the raw body.

Security contract:
- Verification runs on the exact request bytes; any re-serialization
  before this point breaks the signature
- All comparisons use hmac.compare_digest() (constant-time)
- Secrets are tried in order (rotation / dual environments); first match wins
- No trusted secret configured -> verification always fails (fail-closed)
- Timestamp tolerance: 300s (5 min) by default to prevent replay
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from collections.abc import Sequence
from datetime import datetime, timezone

from billing_sync.errors import BodyReadError, SignatureInvalid
from billing_sync.webhooks.models import EventRecord

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def _parse_signature_header(signature_header: str) -> tuple[int, list[str]]:
    """Split ``t=<timestamp>,v1=<sig>[,v1=<sig>...]`` into (timestamp, v1 signatures)."""
    timestamp: int | None = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureInvalid("Malformed signature timestamp") from None
        elif key == "v1" and value.isascii():
            # compare_digest raises TypeError on non-ASCII str
            signatures.append(value)

    if timestamp is None:
        raise SignatureInvalid("Signature header has no timestamp")
    if not signatures:
        raise SignatureInvalid("Signature header has no v1 signature")
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 hex digest of ``<timestamp>.<body>``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secrets: Sequence[str],
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> int:
    """Authenticate ``body`` against the ordered ``secrets``.

    Returns the index of the secret that matched.

    Raises:
        SignatureInvalid: header missing/malformed, timestamp outside
            tolerance, or no secret produces a matching signature
    """
    if not secrets:
        logger.warning("No webhook signing secret configured, rejecting webhook")
        raise SignatureInvalid("No signing secret configured")
    if not signature_header:
        raise SignatureInvalid("Missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)

    current = time.time() if now is None else now
    if tolerance > 0 and abs(current - timestamp) > tolerance:
        logger.warning("Webhook timestamp outside tolerance: %s", timestamp)
        raise SignatureInvalid("Timestamp outside the tolerance zone")

    for index, secret in enumerate(secrets):
        expected = compute_signature(secret, timestamp, body)
        if any(hmac.compare_digest(expected, sig) for sig in signatures):
            if index > 0:
                logger.info("Webhook verified with rotation secret #%d", index)
            return index

    raise SignatureInvalid("No signatures found matching the expected signature")


def parse_envelope(body: bytes, received_at: datetime | None = None) -> EventRecord:
    """Decode an authenticated body into an EventRecord.

    Raises:
        BodyReadError: body is not a JSON object with string ``id`` and ``type``
    """
    try:
        envelope = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BodyReadError(f"Body is not valid JSON: {e}") from e

    if not isinstance(envelope, dict):
        raise BodyReadError("Body is not a JSON object")
    if not isinstance(envelope.get("id"), str) or not envelope["id"]:
        raise BodyReadError("Event has no id")
    if not isinstance(envelope.get("type"), str) or not envelope["type"]:
        raise BodyReadError("Event has no type")

    return EventRecord.from_envelope(envelope, received_at or datetime.now(timezone.utc))


def verify_event(
    body: bytes,
    signature_header: str | None,
    secrets: Sequence[str],
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> EventRecord:
    """Verify the signature, then parse the body.  Pure check, no side effects."""
    verify_signature(body, signature_header, secrets, tolerance=tolerance, now=now)
    return parse_envelope(body)
