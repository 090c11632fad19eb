from __future__ import annotations

import re
from typing import Literal


OptAction = Literal["opted_out", "opted_in"]

OPT_OUT_KEYWORDS = {"stop", "stopall", "unsubscribe", "cancel", "end", "quit"}
OPT_IN_KEYWORDS = {"start", "unstop", "subscribe"}


def normalize_message_status(value: str | None) -> str | None:
    """Collapse Twilio's in-flight statuses onto ``sent``; terminal ones pass through."""
    if not value:
        return None
    key = value.strip().lower()
    mapping = {
        "queued": "sent",
        "sending": "sent",
        "sent": "sent",
        "delivered": "delivered",
        "undelivered": "undelivered",
        "failed": "failed",
    }
    return mapping.get(key, key)


def status_timestamp_field(status: str | None) -> str | None:
    if status == "delivered":
        return "delivered_at"
    if status in {"failed", "undelivered"}:
        return "failed_at"
    return None


def classify_keyword(body: str | None) -> OptAction | None:
    if not body:
        return None
    key = body.strip().lower()
    if key in OPT_OUT_KEYWORDS:
        return "opted_out"
    if key in OPT_IN_KEYWORDS:
        return "opted_in"
    return None


def last_ten_digits(phone: str | None) -> str | None:
    digits = re.sub(r"\D", "", phone or "")[-10:]
    return digits if len(digits) == 10 else None


def phone_match_filter(digits: str) -> str:
    """PostgREST ``or`` filter matching E.164 or dashed storage of a US number."""
    dashed = f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    return f"primary_phone.eq.+1{digits},primary_phone.ilike.%{dashed}%"
