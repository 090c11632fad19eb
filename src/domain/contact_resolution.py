"""Match an incoming booking to an existing family.

Lookups go to the store on every call; there is no cache and no transaction,
so two simultaneous first-time bookings for the same email can both miss here.
The booking row itself is protected by the unique invitee URI instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from src.domain.family_names import format_family_name, has_first_and_last
from src.observability import incr_metric, log_event


FAMILY_LOOKUP_FIELDS = "id, status, lead_status, lead_type, primary_phone, primary_email, secondary_email, display_name"
ACTIVE_LEAD_STATUSES = {"new", "contacted"}
ACTIVE_ENROLLMENT_STATUSES = ["active", "trial"]
_STATUS_RANK = {"active": 0, "lead": 1}
_CANDIDATE_LIMIT = 10

MatchedBy = Literal["email", "name"]


@dataclass
class ResolvedContact:
    family_id: str
    family: dict[str, Any]
    matched_by: MatchedBy
    is_existing_active_lead: bool
    has_active_enrollment: bool


def is_active_lead(family: dict[str, Any]) -> bool:
    return family.get("status") == "lead" and family.get("lead_status") in ACTIVE_LEAD_STATUSES


def _escape_like(value: str) -> str:
    # ilike operands are patterns; emails and names must match literally.
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _postgrest_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _pick_preferred(rows: list[dict[str, Any]] | None) -> dict[str, Any] | None:
    """Paying customers win over lead duplicates of the same person."""
    if not rows:
        return None
    ranked = sorted(
        enumerate(rows),
        key=lambda pair: (_STATUS_RANK.get(pair[1].get("status"), len(_STATUS_RANK)), pair[0]),
    )
    return ranked[0][1]


def find_family_by_email(*, supabase_client: Any, email: str) -> dict[str, Any] | None:
    quoted = _postgrest_quote(_escape_like(email))
    result = (
        supabase_client.table("families")
        .select(FAMILY_LOOKUP_FIELDS)
        .or_(f"primary_email.ilike.{quoted},secondary_email.ilike.{quoted}")
        .limit(_CANDIDATE_LIMIT)
        .execute()
    )
    return _pick_preferred(result.data)


def find_family_by_name(*, supabase_client: Any, name: str) -> dict[str, Any] | None:
    if not has_first_and_last(name):
        return None
    display_name = format_family_name(name).lower()
    if "," not in display_name:
        return None
    result = (
        supabase_client.table("families")
        .select(FAMILY_LOOKUP_FIELDS)
        .ilike("display_name", _escape_like(display_name))
        .in_("status", ["active", "lead"])
        .limit(_CANDIDATE_LIMIT)
        .execute()
    )
    return _pick_preferred(result.data)


def record_name_match(
    *,
    supabase_client: Any,
    family: dict[str, Any],
    email: str,
    name: str,
    source: str,
    source_id: str | None,
    request_id: str | None = None,
) -> None:
    """Audit a name-based match and remember the new email on the family.

    Both writes are best effort: a failure is logged and the booking proceeds.
    """
    family_id = family["id"]
    incr_metric("contact.name_match", source=source)
    log_event(
        "family_name_match",
        level=logging.WARNING,
        request_id=request_id,
        family_id=family_id,
        purchaser_name=name,
        original_email=family.get("primary_email"),
        new_email=email,
        source=source,
    )
    try:
        supabase_client.table("family_merge_log").insert(
            {
                "family_id": family_id,
                "matched_by": "name",
                "original_email": family.get("primary_email"),
                "new_email": email,
                "purchaser_name": name,
                "source": source,
                "source_id": source_id or None,
            }
        ).execute()
    except Exception as exc:
        log_event(
            "family_merge_log_persist_failed",
            level=logging.ERROR,
            request_id=request_id,
            family_id=family_id,
            error=str(exc),
        )

    if str(family.get("primary_email") or "").lower() == email:
        return
    try:
        supabase_client.table("families").update({"secondary_email": email}).eq(
            "id", family_id
        ).is_("secondary_email", "null").execute()
    except Exception as exc:
        log_event(
            "family_secondary_email_backfill_failed",
            level=logging.ERROR,
            request_id=request_id,
            family_id=family_id,
            error=str(exc),
        )


def has_active_enrollment(*, supabase_client: Any, family_id: str) -> bool:
    result = (
        supabase_client.table("enrollments")
        .select("id")
        .eq("family_id", family_id)
        .in_("status", ACTIVE_ENROLLMENT_STATUSES)
        .limit(1)
        .execute()
    )
    return bool(result.data)


def resolve_contact(
    *,
    supabase_client: Any,
    email: str,
    name: str,
    source: str = "calendly_webhook",
    source_id: str | None = None,
    request_id: str | None = None,
) -> ResolvedContact | None:
    email = email.strip().lower()
    matched_by: MatchedBy = "email"
    family = find_family_by_email(supabase_client=supabase_client, email=email) if email else None

    if family is None:
        family = find_family_by_name(supabase_client=supabase_client, name=name)
        if family is None:
            return None
        matched_by = "name"
        record_name_match(
            supabase_client=supabase_client,
            family=family,
            email=email,
            name=name,
            source=source,
            source_id=source_id,
            request_id=request_id,
        )

    return ResolvedContact(
        family_id=family["id"],
        family=family,
        matched_by=matched_by,
        is_existing_active_lead=is_active_lead(family),
        has_active_enrollment=has_active_enrollment(supabase_client=supabase_client, family_id=family["id"]),
    )
