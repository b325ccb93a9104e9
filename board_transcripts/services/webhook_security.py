from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime, timedelta

ZOOM_SIGNATURE_VERSION = "v0"
ZOOM_REPLAY_WINDOW = timedelta(minutes=5)


def compute_hmac_sha256_hex(secret: str, message: str | bytes) -> str:
    message_bytes = message.encode("utf-8") if isinstance(message, str) else message
    return hmac.new(secret.encode("utf-8"), message_bytes, hashlib.sha256).hexdigest()


def build_zoom_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    base_message = f"{ZOOM_SIGNATURE_VERSION}:{timestamp}:".encode() + raw_body
    return f"{ZOOM_SIGNATURE_VERSION}={compute_hmac_sha256_hex(secret, base_message)}"


def verify_zoom_signature(
    *,
    secret: str,
    timestamp: str | None,
    signature: str | None,
    raw_body: bytes,
    now: datetime | None = None,
) -> bool:
    """Check ``x-zm-signature`` against the raw request body.

    Timestamps are Unix seconds; anything unparseable or more than five minutes
    away from ``now`` is rejected to stop replays.
    """
    if not secret or not timestamp or not signature:
        return False

    try:
        sent_at = datetime.fromtimestamp(int(timestamp.strip()), tz=UTC)
    except (ValueError, OverflowError, OSError):
        return False
    current = now or datetime.now(UTC)
    if abs(current - sent_at) > ZOOM_REPLAY_WINDOW:
        return False

    provided_signature = signature.strip()
    prefix = f"{ZOOM_SIGNATURE_VERSION}="
    if provided_signature.lower().startswith(prefix):
        provided_signature = provided_signature[len(prefix):]
    if not provided_signature.isascii():
        return False

    expected = build_zoom_signature(secret, timestamp.strip(), raw_body).split("=", maxsplit=1)[1]
    return hmac.compare_digest(expected, provided_signature.lower())


def verify_client_state(expected: str, provided: str | None) -> bool:
    if not expected:
        return True
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
