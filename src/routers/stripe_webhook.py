from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.config import settings
from src.db import supabase
from src.domain.signatures import verify_signature
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
SIGNATURE_HEADER = "Stripe-Signature"
CHECKOUT_COMPLETED = "checkout.session.completed"


class PaymentProcessingError(Exception):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _existing_webhook(event_id: str) -> dict[str, Any] | None:
    result = (
        supabase.table("stripe_invoice_webhooks")
        .select("id, processing_status")
        .eq("stripe_event_id", event_id)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def _mark_webhook(event_id: str, update: dict[str, Any]) -> None:
    supabase.table("stripe_invoice_webhooks").update(update).eq("stripe_event_id", event_id).execute()


def _apply_checkout_payment(*, event: dict[str, Any], session: dict[str, Any], invoice_id: str) -> dict[str, Any]:
    amount_paid = round(float(session.get("amount_total") or 0) / 100, 2)

    invoice_result = (
        supabase.table("invoices")
        .select("id, total_amount, amount_paid, balance_due, status")
        .eq("id", invoice_id)
        .limit(1)
        .execute()
    )
    if not invoice_result.data:
        raise PaymentProcessingError(f"Invoice not found: {invoice_id}")
    invoice = invoice_result.data[0]

    supabase.table("payments").insert(
        {
            "invoice_id": invoice_id,
            "amount": amount_paid,
            "payment_date": datetime.now(timezone.utc).date().isoformat(),
            "payment_method": "stripe",
            "reference": session.get("payment_intent"),
            "notes": f"Stripe checkout session {session.get('id')}",
        }
    ).execute()

    new_amount_paid = round(float(invoice.get("amount_paid") or 0) + amount_paid, 2)
    new_balance_due = round(float(invoice.get("total_amount") or 0) - new_amount_paid, 2)
    new_status = "paid" if new_balance_due <= 0 else "partial"

    supabase.table("invoices").update(
        {
            "status": new_status,
            "amount_paid": new_amount_paid,
        }
    ).eq("id", invoice_id).execute()

    if new_status == "paid":
        supabase.table("event_orders").update(
            {
                "payment_status": "paid",
                "paid_at": _now_iso(),
            }
        ).eq("invoice_id", invoice_id).execute()

    _mark_webhook(
        event["id"],
        {
            "processing_status": "processed",
            "amount_paid": amount_paid,
            "processed_at": _now_iso(),
        },
    )
    return {"amount_paid": amount_paid, "invoice_status": new_status}


@router.post("/stripe")
async def ingest_stripe_webhook(request: Request):
    req_id = _request_id(request)
    incr_metric("webhook.events.received", provider_slug="stripe")
    if not settings.stripe_secret_key or not settings.stripe_webhook_secret:
        log_event("stripe_not_configured", level=logging.ERROR, request_id=req_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Stripe not configured")

    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        incr_metric("webhook.events.rejected", provider_slug="stripe", reason="missing_signature")
        return _error(status.HTTP_400_BAD_REQUEST, "No signature")

    check = verify_signature(
        raw_body,
        signature,
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.stripe_webhook_signature_tolerance_seconds,
    )
    if not check.valid:
        incr_metric("webhook.events.rejected", provider_slug="stripe", reason=check.reason)
        log_event("stripe_signature_rejected", level=logging.WARNING, request_id=req_id, reason=check.reason)
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid signature")

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload")
    if not isinstance(event, dict) or not event.get("id"):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid event payload")

    event_id = str(event["id"])
    event_type = str(event.get("type") or "unknown")
    try:
        existing = _existing_webhook(event_id)
        if existing:
            if existing.get("processing_status") == "processed":
                incr_metric("webhook.events.duplicate", provider_slug="stripe")
                return JSONResponse(content={"received": True, "status": "already_processed"})
            # Failed or stuck rows are cleared so the delivery can be retried.
            supabase.table("stripe_invoice_webhooks").delete().eq("stripe_event_id", event_id).execute()

        if event_type != CHECKOUT_COMPLETED:
            log_event("stripe_event_ignored", request_id=req_id, event_id=event_id, event_type=event_type)
            return JSONResponse(content={"received": True})

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        session = data.get("object") if isinstance(data.get("object"), dict) else {}
        metadata = session.get("metadata") if isinstance(session.get("metadata"), dict) else {}
        invoice_id = metadata.get("invoice_id")

        if not invoice_id:
            supabase.table("stripe_invoice_webhooks").insert(
                {
                    "stripe_event_id": event_id,
                    "event_type": event_type,
                    "processing_status": "failed",
                    "error_message": "No invoice_id in metadata",
                    "raw_payload": event,
                    "processed_at": _now_iso(),
                }
            ).execute()
            return _error(status.HTTP_400_BAD_REQUEST, "No invoice_id in metadata")

        supabase.table("stripe_invoice_webhooks").insert(
            {
                "stripe_event_id": event_id,
                "event_type": event_type,
                "invoice_id": invoice_id,
                "processing_status": "processing",
                "raw_payload": event,
            }
        ).execute()

        try:
            outcome = _apply_checkout_payment(event=event, session=session, invoice_id=invoice_id)
        except Exception as exc:
            _mark_webhook(
                event_id,
                {
                    "processing_status": "failed",
                    "error_message": str(exc),
                    "processed_at": _now_iso(),
                },
            )
            raise
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="stripe")
        log_event(
            "stripe_webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            event_id=event_id,
            event_type=event_type,
            error=str(exc),
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    incr_metric("webhook.events.processed", provider_slug="stripe", invoice_status=outcome["invoice_status"])
    log_event(
        "stripe_webhook_processed",
        request_id=req_id,
        event_id=event_id,
        invoice_id=invoice_id,
        amount_paid=outcome["amount_paid"],
        invoice_status=outcome["invoice_status"],
    )
    return JSONResponse(content={"received": True})
