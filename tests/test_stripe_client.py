from __future__ import annotations

import httpx

from src.providers.stripe import client as stripe_client


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def test_encode_form_flattens_nested_payload():
    pairs = stripe_client.encode_form(
        {
            "mode": "payment",
            "customer_email": None,
            "line_items": [{"price_data": {"unit_amount": 12550}, "quantity": 1}],
            "metadata": {"invoice_id": "inv-1"},
            "allow_promotion_codes": False,
        }
    )

    assert ("mode", "payment") in pairs
    assert ("line_items[0][price_data][unit_amount]", "12550") in pairs
    assert ("line_items[0][quantity]", "1") in pairs
    assert ("metadata[invoice_id]", "inv-1") in pairs
    assert ("allow_promotion_codes", "false") in pairs
    assert all(key != "customer_email" for key, _ in pairs)


def test_create_checkout_session_sends_basic_auth_form_and_idempotency(monkeypatch):
    calls: list[dict] = []

    def _fake_request_with_retry(**kwargs):
        calls.append(kwargs)
        return _FakeResponse(200, {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/cs_test_1"})

    monkeypatch.setattr(stripe_client, "_request_with_retry", _fake_request_with_retry)
    session = stripe_client.create_checkout_session(
        api_key="sk_test_1",
        payload={"mode": "payment"},
        idempotency_key="checkout:inv-1:12550",
        base_url="https://stripe.example/",
    )

    assert session["id"] == "cs_test_1"
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"] == "https://stripe.example/v1/checkout/sessions"
    assert calls[0]["auth"] == ("sk_test_1", "")
    assert calls[0]["headers"]["Idempotency-Key"] == "checkout:inv-1:12550"
    assert calls[0]["data"] == [("mode", "payment")]


def test_error_categories(monkeypatch):
    def _respond(status_code, payload=None):
        monkeypatch.setattr(stripe_client, "_request_with_retry", lambda **_: _FakeResponse(status_code, payload))
        try:
            stripe_client.create_checkout_session(api_key="sk_test_1", payload={"mode": "payment"})
        except stripe_client.StripeProviderError as exc:
            return exc
        raise AssertionError("Expected StripeProviderError")

    assert _respond(401).category == "terminal"
    assert _respond(404).category == "terminal"
    assert _respond(400, {"error": {"message": "bad"}}).category == "terminal"
    transient = _respond(503)
    assert transient.category == "transient"
    assert transient.retryable is True
    assert _respond(200, None).category == "terminal"
    assert "Unexpected" in str(_respond(200, {"object": "checkout.session"}))


def test_missing_api_key_is_terminal():
    try:
        stripe_client.create_checkout_session(api_key="", payload={})
    except stripe_client.StripeProviderError as exc:
        assert exc.category == "terminal"
        assert exc.retryable is False
    else:
        raise AssertionError("Expected StripeProviderError")


def test_connectivity_error_is_transient(monkeypatch):
    def _raise(**_):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(stripe_client, "_request_with_retry", _raise)
    try:
        stripe_client.create_checkout_session(api_key="sk_test_1", payload={"mode": "payment"})
    except stripe_client.StripeProviderError as exc:
        assert exc.category == "transient"
    else:
        raise AssertionError("Expected StripeProviderError")


def test_build_invoice_checkout_payload_charges_balance_in_cents():
    payload = stripe_client.build_invoice_checkout_payload(
        invoice={
            "id": "inv-1",
            "public_id": "pub-1",
            "invoice_number": "INV-0042",
            "family": {"id": "fam-1", "primary_email": "js@x.com"},
        },
        balance_due=125.5,
        success_url="https://app/invoice/pub-1?payment=success",
        cancel_url="https://app/invoice/pub-1?payment=cancelled",
        description="Tutoring",
    )

    line = payload["line_items"][0]
    assert line["price_data"]["unit_amount"] == 12550
    assert line["price_data"]["product_data"]["name"] == "Invoice INV-0042"
    assert payload["customer_email"] == "js@x.com"
    assert payload["metadata"] == {
        "invoice_id": "inv-1",
        "invoice_public_id": "pub-1",
        "invoice_number": "INV-0042",
        "family_id": "fam-1",
    }
