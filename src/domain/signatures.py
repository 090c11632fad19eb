"""Timestamped HMAC-SHA256 webhook signatures.

Calendly and Stripe both sign deliveries with a header of the form
``t=<unix-seconds>,v1=<hex-hmac>`` where the HMAC covers ``"{t}.{raw_body}"``.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Literal


DEFAULT_TOLERANCE_SECONDS = 300

SignatureReason = Literal[
    "verified",
    "missing_signature",
    "malformed_header",
    "invalid_timestamp",
    "stale_timestamp",
    "invalid_signature",
]


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    reason: SignatureReason


def parse_signature_header(header: str | None) -> tuple[str | None, list[str]]:
    """Split a signature header into its timestamp and every ``v1`` value."""
    timestamp: str | None = None
    signatures: list[str] = []
    if not header:
        return timestamp, signatures
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "t" and value:
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: str | int, raw_body: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> SignatureCheck:
    if not signature_header:
        return SignatureCheck(False, "missing_signature")

    timestamp, signatures = parse_signature_header(signature_header)
    if not timestamp or not signatures:
        return SignatureCheck(False, "malformed_header")

    try:
        signed_at = int(timestamp)
    except ValueError:
        return SignatureCheck(False, "invalid_timestamp")

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance_seconds:
        return SignatureCheck(False, "stale_timestamp")

    expected = compute_signature(secret, timestamp, raw_body)
    for candidate in signatures:
        if hmac.compare_digest(expected, candidate):
            return SignatureCheck(True, "verified")
    return SignatureCheck(False, "invalid_signature")
