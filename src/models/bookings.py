from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel


class BookingListItem(BaseModel):
    id: str
    calendly_event_uri: str | None = None
    calendly_invitee_uri: str | None = None
    event_type: Literal["15min_call", "hub_dropoff"]
    invitee_email: str
    invitee_name: str | None = None
    invitee_phone: str | None = None
    scheduled_at: datetime | None = None
    status: Literal["scheduled", "completed", "canceled", "no_show"]
    canceled_at: datetime | None = None
    cancel_reason: str | None = None
    family_id: str | None = None
    student_id: str | None = None
    hub_session_id: str | None = None
    student_name: str | None = None
    student_age_group: str | None = None
    payment_method: str | None = None
    notes: str | None = None
    created_at: datetime | None = None


class WebhookErrorItem(BookingListItem):
    raw_payload: dict[str, Any] | None = None


class FamilyMergeLogItem(BaseModel):
    id: str
    family_id: str
    matched_by: str
    original_email: str | None = None
    new_email: str | None = None
    purchaser_name: str | None = None
    source: str | None = None
    source_id: str | None = None
    created_at: datetime | None = None


class MetricsSnapshotResponse(BaseModel):
    counters: dict[str, int]


class MetricsFlushResponse(BaseModel):
    persisted: bool
    counter_count: int
