from pydantic import BaseModel


class CheckoutSessionRequest(BaseModel):
    # Optional so a missing id gets the 400 body the invoice page expects, not a 422.
    invoice_public_id: str | None = None


class CheckoutSessionResponse(BaseModel):
    checkout_url: str | None
    session_id: str
