from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.config import settings
from src.db import is_unique_violation, supabase
from src.domain.booking_records import (
    DIAGNOSTIC_EMAIL_MISSING,
    cancel_booking,
    create_lead_family,
    find_booking_by_invitee_uri,
    insert_booking,
    provision_hub_dropoff,
    record_diagnostic_booking,
    reengage_family_as_lead,
    refresh_active_lead,
)
from src.domain.calendly_payload import (
    CANCELED_EVENT,
    CREATED_EVENT,
    NormalizedBooking,
    normalize_calendly_payload,
)
from src.domain.contact_resolution import ResolvedContact, resolve_contact
from src.domain.signatures import verify_signature
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
SIGNATURE_HEADER = "calendly-webhook-signature"
_SIGNATURE_MODES = {"permissive_audit", "enforce"}


class DuplicateDelivery(Exception):
    """The invitee URI already has a booking row."""


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _signature_mode() -> str:
    raw_mode = str(settings.calendly_webhook_signature_mode or "permissive_audit").strip().lower()
    return raw_mode if raw_mode in _SIGNATURE_MODES else "permissive_audit"


def _check_signature(*, raw_body: bytes, request: Request, request_id: str | None) -> JSONResponse | None:
    """Return an error response when the delivery must be rejected, else None.

    A present-but-wrong signature is always rejected. An absent signature (or an
    unconfigured secret) is let through in permissive_audit mode and only audited,
    which keeps local and staging deliveries working.
    """
    mode = _signature_mode()
    secret = settings.calendly_webhook_signing_key
    header = request.headers.get(SIGNATURE_HEADER)

    def _audit(reason: str) -> None:
        incr_metric("webhook.signature.audit_failed", provider_slug="calendly", reason=reason, mode=mode)
        log_event(
            "calendly_signature_audit_failed",
            level=logging.WARNING,
            request_id=request_id,
            reason=reason,
            mode=mode,
        )

    def _reject(reason: str) -> JSONResponse:
        incr_metric("webhook.signature.rejected", provider_slug="calendly", reason=reason)
        incr_metric("webhook.events.rejected", provider_slug="calendly", reason=reason)
        log_event(
            "calendly_signature_rejected",
            level=logging.WARNING,
            request_id=request_id,
            reason=reason,
            mode=mode,
        )
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    if not secret:
        if mode == "enforce":
            log_event(
                "calendly_signature_enforce_config_error",
                level=logging.ERROR,
                request_id=request_id,
                message="CALENDLY_WEBHOOK_SIGNING_KEY is required when mode=enforce",
            )
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Webhook signature enforcement is not configured")
        _audit("secret_not_configured")
        return None

    if not header:
        if mode == "enforce":
            return _reject("missing_signature")
        _audit("missing_signature")
        return None

    check = verify_signature(
        raw_body,
        header,
        secret,
        tolerance_seconds=max(0, int(settings.calendly_webhook_signature_tolerance_seconds or 0)),
    )
    if not check.valid:
        return _reject(check.reason)
    incr_metric("webhook.signature.verified", provider_slug="calendly", mode=mode)
    return None


def _handle_canceled(*, booking: NormalizedBooking, request_id: str | None) -> JSONResponse:
    updated = cancel_booking(supabase_client=supabase, booking=booking)
    incr_metric("webhook.calendly.canceled", matched=bool(updated))
    log_event(
        "calendly_booking_canceled",
        request_id=request_id,
        invitee_uri=booking.invitee_uri,
        rows_updated=updated,
    )
    return JSONResponse(content={"success": True, "action": "canceled"})


def _apply_call_lead_rules(
    *,
    contact: ResolvedContact | None,
    booking: NormalizedBooking,
    request_id: str | None,
) -> tuple[str | None, str]:
    if contact is None:
        return create_lead_family(supabase_client=supabase, booking=booking), "new_lead"
    if contact.has_active_enrollment:
        # Customers booking a call are not a lead event.
        return contact.family_id, "existing_customer"
    if contact.is_existing_active_lead:
        refresh_active_lead(supabase_client=supabase, contact=contact, booking=booking, request_id=request_id)
        return contact.family_id, "repeat_lead"
    reengage_family_as_lead(supabase_client=supabase, contact=contact, booking=booking)
    return contact.family_id, "reengaged_lead"


def _handle_created(
    *,
    booking: NormalizedBooking,
    raw_payload: dict[str, Any],
    request_id: str | None,
) -> JSONResponse:
    if not booking.invitee_email:
        incr_metric("webhook.events.rejected", provider_slug="calendly", reason="missing_email")
        log_event(
            "calendly_missing_email",
            level=logging.ERROR,
            request_id=request_id,
            invitee_uri=booking.invitee_uri,
        )
        record_diagnostic_booking(
            supabase_client=supabase,
            raw_payload=raw_payload,
            notes="Error: Could not extract invitee email from webhook payload",
            booking=booking,
            invitee_name="WEBHOOK ERROR - Missing email",
            invitee_email=DIAGNOSTIC_EMAIL_MISSING,
            request_id=request_id,
        )
        return _error(status.HTTP_400_BAD_REQUEST, "Missing invitee email")

    if find_booking_by_invitee_uri(supabase_client=supabase, invitee_uri=booking.invitee_uri):
        raise DuplicateDelivery(booking.invitee_uri)

    contact = resolve_contact(
        supabase_client=supabase,
        email=booking.invitee_email,
        name=booking.invitee_name,
        source="calendly_webhook",
        source_id=booking.scheduled_event_uri or None,
        request_id=request_id,
    )

    family_id = contact.family_id if contact else None
    linked: dict[str, str | None] = {}
    if booking.booking_type == "15min_call":
        family_id, outcome = _apply_call_lead_rules(contact=contact, booking=booking, request_id=request_id)
    else:
        linked = provision_hub_dropoff(
            supabase_client=supabase,
            contact=contact,
            booking=booking,
            default_daily_rate=settings.hub_daily_rate_default,
        )
        family_id = linked["family_id"]
        outcome = "hub_provisioned"

    try:
        row = insert_booking(
            supabase_client=supabase,
            booking=booking,
            raw_payload=raw_payload,
            family_id=family_id,
            student_id=linked.get("student_id"),
            hub_session_id=linked.get("hub_session_id"),
        )
    except Exception as exc:
        if is_unique_violation(exc):
            raise DuplicateDelivery(booking.invitee_uri) from exc
        raise

    incr_metric("webhook.calendly.created", booking_type=booking.booking_type, outcome=outcome)
    log_event(
        "calendly_booking_created",
        request_id=request_id,
        booking_id=row.get("id"),
        booking_type=booking.booking_type,
        family_id=family_id,
        matched_by=contact.matched_by if contact else None,
        outcome=outcome,
    )

    content: dict[str, Any] = {
        "success": True,
        "action": "created",
        "eventType": booking.booking_type,
        "familyId": family_id,
    }
    if booking.booking_type == "hub_dropoff":
        content["studentId"] = linked.get("student_id")
        content["hubSessionId"] = linked.get("hub_session_id")
    return JSONResponse(content=content)


@router.post("/calendly")
async def ingest_calendly_webhook(request: Request):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="calendly")

    rejection = _check_signature(raw_body=raw_body, request=request, request_id=req_id)
    if rejection is not None:
        return rejection

    try:
        parsed = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        incr_metric("webhook.events.rejected", provider_slug="calendly", reason="invalid_json")
        record_diagnostic_booking(
            supabase_client=supabase,
            raw_payload={"raw_body": raw_body.decode("utf-8", errors="replace")},
            notes="Error: Webhook body is not valid JSON",
            request_id=req_id,
        )
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")

    raw_payload = parsed if isinstance(parsed, dict) else {"body": parsed}
    booking: NormalizedBooking | None = None
    try:
        booking = normalize_calendly_payload(raw_payload)
        log_event(
            "calendly_webhook_received",
            request_id=req_id,
            event_type=booking.event_type,
            booking_type=booking.booking_type,
            invitee_uri=booking.invitee_uri,
            has_email=bool(booking.invitee_email),
            has_phone=bool(booking.invitee_phone),
        )

        if booking.event_type == CANCELED_EVENT:
            return _handle_canceled(booking=booking, request_id=req_id)
        if booking.event_type == CREATED_EVENT:
            return _handle_created(booking=booking, raw_payload=raw_payload, request_id=req_id)
    except DuplicateDelivery:
        incr_metric("webhook.events.duplicate", provider_slug="calendly")
        log_event(
            "calendly_duplicate_ignored",
            request_id=req_id,
            invitee_uri=booking.invitee_uri if booking else None,
        )
        return JSONResponse(content={"success": True, "action": "ignored", "reason": "Duplicate delivery"})
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="calendly")
        log_event(
            "calendly_webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            event_type=booking.event_type if booking else None,
            error=str(exc),
        )
        record_diagnostic_booking(
            supabase_client=supabase,
            raw_payload=raw_payload,
            notes=f"Error: {exc}",
            request_id=req_id,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    incr_metric("webhook.events.ignored", provider_slug="calendly")
    log_event("calendly_event_ignored", request_id=req_id, event_type=booking.event_type)
    return JSONResponse(
        content={"success": True, "action": "ignored", "reason": f"Unknown event type: {booking.event_type}"}
    )
