from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from src.auth import AdminContext, get_current_admin
from src.db import supabase
from src.models.bookings import (
    BookingListItem,
    FamilyMergeLogItem,
    MetricsFlushResponse,
    MetricsSnapshotResponse,
    WebhookErrorItem,
)
from src.observability import metrics_snapshot, persist_metrics_snapshot


router = APIRouter(prefix="/api/admin", tags=["admin"])

BOOKING_FIELDS = (
    "id, calendly_event_uri, calendly_invitee_uri, event_type, invitee_email, invitee_name, invitee_phone, "
    "scheduled_at, status, canceled_at, cancel_reason, family_id, student_id, hub_session_id, student_name, "
    "student_age_group, payment_method, notes, created_at"
)


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


@router.get("/bookings", response_model=list[BookingListItem])
async def list_bookings(
    status: Literal["scheduled", "completed", "canceled", "no_show"] | None = None,
    event_type: Literal["15min_call", "hub_dropoff"] | None = None,
    family_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    _admin: AdminContext = Depends(get_current_admin),
):
    query = supabase.table("calendly_bookings").select(BOOKING_FIELDS)
    if status:
        query = query.eq("status", status)
    if event_type:
        query = query.eq("event_type", event_type)
    if family_id:
        query = query.eq("family_id", family_id)
    result = query.order("created_at", desc=True).limit(limit).execute()
    return result.data or []


@router.get("/webhook-errors", response_model=list[WebhookErrorItem])
async def list_webhook_errors(
    limit: int = Query(default=50, ge=1, le=500),
    _admin: AdminContext = Depends(get_current_admin),
):
    """Diagnostic booking rows written when a Calendly delivery could not be processed."""
    result = (
        supabase.table("calendly_bookings")
        .select(f"{BOOKING_FIELDS}, raw_payload")
        .ilike("invitee_name", "WEBHOOK ERROR%")
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []


@router.get("/family-merge-log", response_model=list[FamilyMergeLogItem])
async def list_family_merge_log(
    family_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _admin: AdminContext = Depends(get_current_admin),
):
    """Name-based family matches awaiting human review."""
    query = supabase.table("family_merge_log").select(
        "id, family_id, matched_by, original_email, new_email, purchaser_name, source, source_id, created_at"
    )
    if family_id:
        query = query.eq("family_id", family_id)
    result = query.order("created_at", desc=True).limit(limit).execute()
    return result.data or []


@router.get("/metrics", response_model=MetricsSnapshotResponse)
async def get_metrics(_admin: AdminContext = Depends(get_current_admin)):
    return MetricsSnapshotResponse(counters=metrics_snapshot())


@router.post("/metrics/flush", response_model=MetricsFlushResponse)
async def flush_metrics(
    request: Request,
    reset: bool = False,
    _admin: AdminContext = Depends(get_current_admin),
):
    counters = metrics_snapshot()
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source="admin_flush",
        request_id=_request_id(request),
        reset_after_persist=reset,
    )
    return MetricsFlushResponse(persisted=persisted, counter_count=len(counters))
