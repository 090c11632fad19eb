from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from src.domain.calendly_payload import NormalizedBooking
from src.domain.contact_resolution import ResolvedContact
from src.domain.family_names import format_family_name
from src.observability import incr_metric, log_event


DIAGNOSTIC_EMAIL_MISSING = "unknown@error.com"
DIAGNOSTIC_EMAIL_ERROR = "webhook-error@debug.com"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _or_none(value: str | None) -> str | None:
    return value or None


def _calendly_fields(booking: NormalizedBooking) -> dict[str, Any]:
    return {
        "calendly_event_uri": _or_none(booking.scheduled_event_uri),
        "calendly_invitee_uri": _or_none(booking.invitee_uri),
        "scheduled_at": _or_none(booking.start_time),
    }


def find_booking_by_invitee_uri(*, supabase_client: Any, invitee_uri: str) -> dict[str, Any] | None:
    if not invitee_uri:
        return None
    result = (
        supabase_client.table("calendly_bookings")
        .select("id, status, family_id")
        .eq("calendly_invitee_uri", invitee_uri)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def cancel_booking(*, supabase_client: Any, booking: NormalizedBooking) -> int:
    """Mark the booking for this invitee canceled. Returns the number of rows touched."""
    if not booking.invitee_uri:
        return 0
    result = (
        supabase_client.table("calendly_bookings")
        .update(
            {
                "status": "canceled",
                "canceled_at": _now_iso(),
                "cancel_reason": _or_none(booking.cancel_reason),
            }
        )
        .eq("calendly_invitee_uri", booking.invitee_uri)
        .execute()
    )
    return len(result.data or [])


def create_lead_family(*, supabase_client: Any, booking: NormalizedBooking) -> str:
    payload = {
        "display_name": format_family_name(booking.invitee_name),
        "primary_email": booking.invitee_email,
        "primary_phone": _or_none(booking.invitee_phone),
        "primary_contact_name": _or_none(booking.invitee_name),
        "status": "lead",
        "lead_status": "new",
        "lead_type": "calendly_call",
    }
    payload.update(_calendly_fields(booking))
    result = supabase_client.table("families").insert(payload).execute()
    return result.data[0]["id"]


def refresh_active_lead(
    *,
    supabase_client: Any,
    contact: ResolvedContact,
    booking: NormalizedBooking,
    request_id: str | None = None,
) -> None:
    """Repeat booking from a live lead: keep the pipeline stage, log the touchpoint."""
    update = _calendly_fields(booking)
    update["primary_phone"] = booking.invitee_phone or contact.family.get("primary_phone") or None
    supabase_client.table("families").update(update).eq("id", contact.family_id).execute()

    try:
        supabase_client.table("lead_activities").insert(
            {
                "family_id": contact.family_id,
                "contact_type": "other",
                "notes": (
                    f"Repeat Calendly booking ({booking.booking_type}): "
                    f"scheduled for {booking.start_time or 'unknown time'}"
                ),
                "contacted_at": _now_iso(),
            }
        ).execute()
    except Exception as exc:
        log_event(
            "lead_activity_persist_failed",
            level=logging.ERROR,
            request_id=request_id,
            family_id=contact.family_id,
            error=str(exc),
        )


def reengage_family_as_lead(*, supabase_client: Any, contact: ResolvedContact, booking: NormalizedBooking) -> None:
    update = {
        "status": "lead",
        "lead_status": "new",
        "lead_type": "calendly_call",
        "primary_phone": booking.invitee_phone or contact.family.get("primary_phone") or None,
    }
    update.update(_calendly_fields(booking))
    supabase_client.table("families").update(update).eq("id", contact.family_id).execute()


def _hub_daily_rate(*, supabase_client: Any, default_rate: float) -> float:
    result = (
        supabase_client.table("app_settings")
        .select("value")
        .eq("key", "hub_daily_rate")
        .limit(1)
        .execute()
    )
    if not result.data:
        return default_rate
    try:
        return float(result.data[0].get("value"))
    except (TypeError, ValueError):
        return default_rate


def _session_date(start_time: str) -> str:
    try:
        return datetime.fromisoformat(start_time.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return datetime.now(timezone.utc).date().isoformat()


def provision_hub_dropoff(
    *,
    supabase_client: Any,
    contact: ResolvedContact | None,
    booking: NormalizedBooking,
    default_daily_rate: float,
) -> dict[str, str | None]:
    """Make sure a hub drop-off has a family, a student and a hub session.

    Returns the ids that the booking row should link to.
    """
    answers = booking.form_answers
    if contact is not None:
        family_id = contact.family_id
    else:
        created = supabase_client.table("families").insert(
            {
                "display_name": format_family_name(booking.invitee_name),
                "primary_email": booking.invitee_email,
                "primary_phone": _or_none(booking.invitee_phone),
                "primary_contact_name": _or_none(booking.invitee_name),
                "status": "active",
                "payment_gateway": _or_none(answers.payment_method),
            }
        ).execute()
        family_id = created.data[0]["id"]

    student_id: str | None = None
    if answers.student_name:
        existing = (
            supabase_client.table("students")
            .select("id")
            .eq("family_id", family_id)
            .ilike("full_name", answers.student_name)
            .limit(1)
            .execute()
        )
        if existing.data:
            student_id = existing.data[0]["id"]
        else:
            created_student = supabase_client.table("students").insert(
                {
                    "family_id": family_id,
                    "full_name": answers.student_name,
                    "age_group": _or_none(answers.student_age_group),
                    "active": True,
                }
            ).execute()
            student_id = created_student.data[0]["id"]

    hub_session_id: str | None = None
    if student_id:
        daily_rate = _hub_daily_rate(supabase_client=supabase_client, default_rate=default_daily_rate)
        session = supabase_client.table("hub_sessions").insert(
            {
                "student_id": student_id,
                "session_date": _session_date(booking.start_time),
                "daily_rate": daily_rate,
                "notes": f"Booked via Calendly. Payment method: {answers.payment_method or 'Not specified'}",
            }
        ).execute()
        hub_session_id = session.data[0]["id"]

    return {"family_id": family_id, "student_id": student_id, "hub_session_id": hub_session_id}


def insert_booking(
    *,
    supabase_client: Any,
    booking: NormalizedBooking,
    raw_payload: dict[str, Any],
    family_id: str | None,
    student_id: str | None = None,
    hub_session_id: str | None = None,
) -> dict[str, Any]:
    answers = booking.form_answers
    payload = {
        "event_type": booking.booking_type,
        "invitee_email": booking.invitee_email,
        "invitee_name": _or_none(booking.invitee_name),
        "invitee_phone": _or_none(booking.invitee_phone),
        "status": "scheduled",
        "family_id": family_id,
        "student_id": student_id,
        "hub_session_id": hub_session_id,
        "student_name": _or_none(answers.student_name),
        "student_age_group": _or_none(answers.student_age_group),
        "payment_method": _or_none(answers.payment_method),
        "raw_payload": raw_payload,
    }
    payload.update(_calendly_fields(booking))
    result = supabase_client.table("calendly_bookings").insert(payload).execute()
    return result.data[0] if result.data else payload


def record_diagnostic_booking(
    *,
    supabase_client: Any,
    raw_payload: dict[str, Any],
    notes: str,
    booking: NormalizedBooking | None = None,
    invitee_name: str = "WEBHOOK ERROR",
    invitee_email: str = DIAGNOSTIC_EMAIL_ERROR,
    request_id: str | None = None,
) -> bool:
    """Persist a booking row describing a delivery we could not process.

    Never raises: this runs inside error paths and its own failure is only logged.
    The invitee URI is always synthetic so a corrected redelivery of the same
    invitee is not taken for a duplicate.
    """
    try:
        synthetic = f"error-{int(time.time() * 1000)}-{uuid4().hex[:8]}"
        event_uri = booking.scheduled_event_uri if booking else ""
        scheduled_at = booking.start_time if booking else ""
        supabase_client.table("calendly_bookings").insert(
            {
                "calendly_event_uri": event_uri or synthetic,
                "calendly_invitee_uri": synthetic,
                "event_type": "15min_call",
                "invitee_email": invitee_email,
                "invitee_name": invitee_name,
                "scheduled_at": scheduled_at or _now_iso(),
                "status": "scheduled",
                "raw_payload": raw_payload,
                "notes": notes,
            }
        ).execute()
    except Exception as exc:
        incr_metric("webhook.diagnostic.persist_failed", provider_slug="calendly")
        log_event(
            "calendly_diagnostic_persist_failed",
            level=logging.ERROR,
            request_id=request_id,
            error=str(exc),
        )
        return False
    incr_metric("webhook.diagnostic.recorded", provider_slug="calendly")
    return True
