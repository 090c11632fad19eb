from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.config import settings
from src.db import supabase
from src.domain.provider_errors import provider_error_body, provider_error_http_status
from src.models.checkout import CheckoutSessionRequest, CheckoutSessionResponse
from src.observability import incr_metric, log_event
from src.providers.stripe.client import (
    StripeProviderError,
    build_invoice_checkout_payload,
    create_checkout_session,
)


router = APIRouter(prefix="/api/checkout", tags=["checkout"])

INVOICE_FIELDS = (
    "id, public_id, invoice_number, total_amount, amount_paid, balance_due, status, "
    "family:families(id, display_name, primary_email)"
)


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _load_invoice(public_id: str) -> dict[str, Any] | None:
    result = supabase.table("invoices").select(INVOICE_FIELDS).eq("public_id", public_id).limit(1).execute()
    return result.data[0] if result.data else None


def _payable_balance(invoice: dict[str, Any]) -> tuple[float, str | None]:
    if invoice.get("status") == "paid":
        return 0.0, "This invoice has already been paid"
    if invoice.get("status") == "void":
        return 0.0, "This invoice has been voided"
    balance_due = float(invoice.get("balance_due") or 0)
    if balance_due <= 0:
        return 0.0, "No balance due on this invoice"
    return balance_due, None


@router.post("/sessions", response_model=CheckoutSessionResponse)
async def create_invoice_checkout_session(data: CheckoutSessionRequest, request: Request):
    """Start a hosted card checkout for the outstanding balance of a public invoice."""
    req_id = _request_id(request)
    if not settings.stripe_secret_key:
        log_event("stripe_not_configured", level=logging.ERROR, request_id=req_id)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Payment system not configured")

    public_id = (data.invoice_public_id or "").strip()
    if not public_id:
        return _error(status.HTTP_400_BAD_REQUEST, "invoice_public_id is required")

    invoice = _load_invoice(public_id)
    if not invoice:
        return _error(status.HTTP_404_NOT_FOUND, "Invoice not found")

    balance_due, problem = _payable_balance(invoice)
    if problem:
        return _error(status.HTTP_400_BAD_REQUEST, problem)

    base_url = settings.public_app_url.rstrip("/")
    payload = build_invoice_checkout_payload(
        invoice=invoice,
        balance_due=balance_due,
        success_url=f"{base_url}/invoice/{invoice['public_id']}?payment=success",
        cancel_url=f"{base_url}/invoice/{invoice['public_id']}?payment=cancelled",
        description=settings.checkout_line_item_description,
    )
    try:
        session = create_checkout_session(
            api_key=settings.stripe_secret_key,
            payload=payload,
            idempotency_key=f"checkout:{invoice['id']}:{payload['line_items'][0]['price_data']['unit_amount']}",
            base_url=settings.stripe_api_base_url,
            timeout_seconds=settings.stripe_timeout_seconds,
        )
    except StripeProviderError as exc:
        incr_metric("provider.errors", provider_slug="stripe", operation="create_checkout_session", category=exc.category)
        log_event(
            "stripe_checkout_session_failed",
            level=logging.WARNING,
            request_id=req_id,
            invoice_id=invoice["id"],
            category=exc.category,
            retryable=exc.retryable,
            error=str(exc),
        )
        return JSONResponse(
            status_code=provider_error_http_status(exc),
            content=provider_error_body(provider="stripe", operation="create_checkout_session", exc=exc),
        )

    incr_metric("checkout.sessions.created", provider_slug="stripe")
    log_event(
        "stripe_checkout_session_created",
        request_id=req_id,
        invoice_id=invoice["id"],
        session_id=session["id"],
        amount_cents=payload["line_items"][0]["price_data"]["unit_amount"],
    )
    return CheckoutSessionResponse(checkout_url=session.get("url"), session_id=session["id"])
