"""Normalization of Calendly webhook bodies.

Calendly has delivered at least two payload shapes over time (invitee data
nested under ``payload.invitee`` or flattened onto ``payload`` itself), so
every field is probed in several places and nothing here raises on missing
or oddly typed input.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


BookingType = Literal["15min_call", "hub_dropoff"]

CREATED_EVENT = "invitee.created"
CANCELED_EVENT = "invitee.canceled"


class FormAnswers(BaseModel):
    student_name: str = ""
    student_age_group: str = ""
    payment_method: str = ""
    phone: str = ""


class NormalizedBooking(BaseModel):
    event_type: str = ""
    invitee_name: str = ""
    invitee_email: str = ""
    invitee_uri: str = ""
    invitee_phone: str = ""
    scheduled_event_uri: str = ""
    start_time: str = ""
    event_type_name: str = ""
    booking_type: BookingType = "15min_call"
    cancel_reason: str = ""
    form_answers: FormAnswers = Field(default_factory=FormAnswers)


def safe_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return ""


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(*values: Any) -> str:
    for value in values:
        text = safe_string(value).strip()
        if text:
            return text
    return ""


def classify_booking_type(event_name: str | None) -> BookingType:
    # Loose on purpose; renaming the Calendly event type changes the result.
    name = safe_string(event_name).lower()
    if "hub" in name or "drop" in name:
        return "hub_dropoff"
    return "15min_call"


def extract_form_answers(data: dict[str, Any]) -> FormAnswers:
    data = _as_dict(data)
    qna = data.get("questions_and_answers") or _as_dict(data.get("invitee")).get("questions_and_answers")
    answers = FormAnswers()
    if not isinstance(qna, list):
        return answers

    for item in qna:
        item = _as_dict(item)
        question = safe_string(item.get("question")).lower()
        answer = safe_string(item.get("answer")).strip()
        if "student name" in question or "child name" in question:
            answers.student_name = answer
        elif "age" in question:
            answers.student_age_group = answer
        elif "paying" in question or "payment" in question:
            answers.payment_method = answer
        elif "phone" in question:
            answers.phone = answer
    return answers


def extract_call_location_phone(scheduled_event: dict[str, Any]) -> str:
    location = _as_dict(_as_dict(scheduled_event).get("location"))
    if safe_string(location.get("type")) != "outbound_call":
        return ""
    return _first(location.get("location"))


def normalize_calendly_payload(body: Any) -> NormalizedBooking:
    body = _as_dict(body)
    data = _as_dict(body.get("payload"))
    invitee = _as_dict(data.get("invitee"))
    scheduled_event = _as_dict(data.get("scheduled_event")) or _as_dict(data.get("event"))

    form_answers = extract_form_answers(data)
    event_name = _first(scheduled_event.get("name"), data.get("event_name"))
    invitee_phone = _first(
        extract_call_location_phone(scheduled_event),
        invitee.get("text_reminder_number"),
        data.get("text_reminder_number"),
        form_answers.phone,
    )

    return NormalizedBooking(
        event_type=_first(body.get("event")),
        invitee_name=_first(invitee.get("name"), data.get("name")),
        invitee_email=_first(invitee.get("email"), data.get("email")).lower(),
        invitee_uri=_first(invitee.get("uri"), data.get("uri")),
        invitee_phone=invitee_phone,
        scheduled_event_uri=_first(scheduled_event.get("uri")),
        start_time=_first(scheduled_event.get("start_time"), data.get("start_time")),
        event_type_name=event_name,
        booking_type=classify_booking_type(event_name),
        cancel_reason=_first(
            _as_dict(invitee.get("cancellation")).get("reason"),
            _as_dict(data.get("cancellation")).get("reason"),
        ),
        form_answers=form_answers,
    )
