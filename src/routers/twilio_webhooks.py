"""Twilio callbacks.

Twilio retries any non-2xx response, so once the request is understood these
handlers answer 200 even when the store write fails; the failure is logged
and counted instead.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.db import supabase
from src.domain.sms_status import (
    classify_keyword,
    last_ten_digits,
    normalize_message_status,
    phone_match_filter,
    status_timestamp_field,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks/twilio", tags=["webhooks"])


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _form_value(form: Any, key: str) -> str | None:
    value = form.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _processing_error() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_200_OK, content={"error": "Webhook processing error"})


@router.post("/status")
async def ingest_twilio_status(request: Request):
    req_id = _request_id(request)
    incr_metric("webhook.events.received", provider_slug="twilio_status")
    try:
        form = await request.form()
    except Exception as exc:
        log_event("twilio_status_parse_failed", level=logging.WARNING, request_id=req_id, error=str(exc))
        return _processing_error()

    message_sid = _form_value(form, "MessageSid")
    raw_status = _form_value(form, "MessageStatus")
    error_code = _form_value(form, "ErrorCode")
    error_message = _form_value(form, "ErrorMessage")

    if not message_sid:
        incr_metric("webhook.events.rejected", provider_slug="twilio_status", reason="missing_sid")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing MessageSid"})

    message_status = normalize_message_status(raw_status)
    update: dict[str, Any] = {}
    if message_status:
        update["status"] = message_status
        timestamp_field = status_timestamp_field(message_status)
        if timestamp_field:
            update[timestamp_field] = _now_iso()
    if error_code:
        update["error_code"] = error_code
    if error_message:
        update["error_message"] = error_message
    if not update:
        log_event("twilio_status_empty", request_id=req_id, message_sid=message_sid)
        return JSONResponse(content={"success": True})

    try:
        supabase.table("sms_messages").update(update).eq("twilio_sid", message_sid).execute()
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="twilio_status")
        log_event(
            "twilio_status_update_failed",
            level=logging.ERROR,
            request_id=req_id,
            message_sid=message_sid,
            status=message_status,
            error=str(exc),
        )
        return JSONResponse(content={"success": True})

    incr_metric("webhook.events.processed", provider_slug="twilio_status", status=message_status)
    log_event(
        "twilio_status_updated",
        request_id=req_id,
        message_sid=message_sid,
        status=message_status,
        error_code=error_code,
    )
    return JSONResponse(content={"success": True})


@router.post("/opt-out")
async def ingest_twilio_opt_out(request: Request):
    req_id = _request_id(request)
    incr_metric("webhook.events.received", provider_slug="twilio_opt_out")
    try:
        form = await request.form()
        from_phone = _form_value(form, "From")
        body = _form_value(form, "Body")
        message_sid = _form_value(form, "MessageSid")

        if not from_phone:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing From phone"})

        action = classify_keyword(body)
        if action is None:
            return JSONResponse(content={"success": True, "action": "ignored"})

        digits = last_ten_digits(from_phone)
        if digits is None:
            log_event("twilio_opt_out_invalid_phone", level=logging.WARNING, request_id=req_id, phone=from_phone)
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid phone format"})

        families = (
            supabase.table("families")
            .select("id, display_name, primary_phone")
            .or_(phone_match_filter(digits))
            .execute()
        ).data or []

        if not families:
            log_event("twilio_opt_out_no_match", request_id=req_id, phone=from_phone, action=action)
            return JSONResponse(content={"success": True, "action": "no_match", "phone": from_phone})

        now = _now_iso()
        opted_out = action == "opted_out"
        family_ids = [family["id"] for family in families]
        supabase.table("families").update(
            {
                "sms_opt_out": opted_out,
                "sms_opt_out_at": now if opted_out else None,
            }
        ).in_("id", family_ids).execute()

        keyword = (body or "").upper()
        for family_id in family_ids:
            supabase.table("sms_messages").insert(
                {
                    "family_id": family_id,
                    "to_phone": from_phone,
                    "from_phone": from_phone,
                    "message_body": f"[SYSTEM] {'Opted out' if opted_out else 'Opted in'} via {keyword} keyword",
                    "message_type": "custom",
                    "status": "delivered",
                    "sent_by": "system",
                    "sent_at": now,
                    "delivered_at": now,
                }
            ).execute()
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="twilio_opt_out")
        log_event("twilio_opt_out_failed", level=logging.ERROR, request_id=req_id, error=str(exc))
        return _processing_error()

    incr_metric("webhook.events.processed", provider_slug="twilio_opt_out", action=action)
    log_event(
        "twilio_opt_out",
        request_id=req_id,
        action=action,
        message_sid=message_sid,
        families_updated=len(family_ids),
    )
    return JSONResponse(content={"success": True, "action": action, "familiesUpdated": len(family_ids)})
