from __future__ import annotations

import random
import time
from typing import Any

import httpx


STRIPE_API_BASE = "https://api.stripe.com"
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_EP_CHECKOUT_SESSIONS = "/v1/checkout/sessions"


class StripeProviderError(Exception):
    """Provider-level exception for Stripe integration failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "invalid stripe api key" in message
            or "missing stripe api key" in message
            or "endpoint not found" in message
            or "http 400" in message
            or "non-json" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _build_base_url(base_url: str | None) -> str:
    return (base_url or STRIPE_API_BASE).rstrip("/")


def encode_form(payload: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested dicts/lists into Stripe's bracketed form keys.

    ``{"line_items": [{"quantity": 1}]}`` -> ``[("line_items[0][quantity]", "1")]``.
    """
    pairs: list[tuple[str, str]] = []
    items = payload.items() if isinstance(payload, dict) else enumerate(payload)
    for key, value in items:
        full_key = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            pairs.extend(encode_form(value, full_key))
        elif isinstance(value, bool):
            pairs.append((full_key, "true" if value else "false"))
        else:
            pairs.append((full_key, str(value)))
    return pairs


def _request_with_retry(
    *,
    method: str,
    url: str,
    auth: tuple[str, str],
    headers: dict[str, str],
    timeout_seconds: float,
    data: list[tuple[str, str]] | None = None,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    auth=auth,
                    headers=headers,
                    data=data,
                )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
            delay += random.uniform(0, delay * 0.2)
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _request_json(
    *,
    method: str,
    path: str,
    api_key: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
    form: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> Any:
    if not api_key:
        raise StripeProviderError("Missing Stripe API key")

    headers = {"Accept": "application/json"}
    if idempotency_key:
        # Stripe replays the first response for a repeated key within 24h.
        headers["Idempotency-Key"] = idempotency_key

    url = f"{_build_base_url(base_url)}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            auth=(api_key, ""),
            headers=headers,
            timeout_seconds=timeout_seconds,
            data=encode_form(form) if form else None,
        )
    except httpx.HTTPError as exc:
        raise StripeProviderError(f"Stripe connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise StripeProviderError("Invalid Stripe API key")
    if response.status_code == 404:
        raise StripeProviderError(f"Stripe endpoint not found: {path}")
    if response.status_code >= 400:
        raise StripeProviderError(f"Stripe API returned HTTP {response.status_code}: {response.text[:200]}")

    try:
        return response.json()
    except ValueError as exc:
        raise StripeProviderError("Stripe returned non-JSON response") from exc


def create_checkout_session(
    api_key: str,
    payload: dict[str, Any],
    idempotency_key: str | None = None,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _request_json(
        method="POST",
        path=_EP_CHECKOUT_SESSIONS,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        form=payload,
        idempotency_key=idempotency_key,
    )
    if not isinstance(data, dict) or not data.get("id"):
        raise StripeProviderError("Unexpected Stripe checkout session response")
    return data


def build_invoice_checkout_payload(
    *,
    invoice: dict[str, Any],
    balance_due: float,
    success_url: str,
    cancel_url: str,
    description: str,
) -> dict[str, Any]:
    family = invoice.get("family") if isinstance(invoice.get("family"), dict) else {}
    label = invoice.get("invoice_number") or f"INV-{invoice['public_id']}"
    return {
        "payment_method_types": ["card"],
        "mode": "payment",
        "customer_email": family.get("primary_email") or None,
        "line_items": [
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"Invoice {label}",
                        "description": description,
                    },
                    "unit_amount": int(round(balance_due * 100)),
                },
                "quantity": 1,
            }
        ],
        "metadata": {
            "invoice_id": invoice["id"],
            "invoice_public_id": invoice["public_id"],
            "invoice_number": invoice.get("invoice_number") or "",
            "family_id": family.get("id") or "",
        },
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
