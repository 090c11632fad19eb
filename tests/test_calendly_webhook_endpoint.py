import json
import time

from fastapi.testclient import TestClient

from src.db import is_unique_violation
from src.domain.signatures import compute_signature
from src.main import app
from src.routers import calendly_webhook as calendly_router
from tests.fakes import FakeAPIError, FakeSupabase


SIGNING_KEY = "calendly-test-key"


def _client(monkeypatch, db: FakeSupabase, *, signing_key=None, mode="permissive_audit") -> TestClient:
    monkeypatch.setattr(calendly_router, "supabase", db)
    monkeypatch.setattr(calendly_router.settings, "calendly_webhook_signing_key", signing_key)
    monkeypatch.setattr(calendly_router.settings, "calendly_webhook_signature_mode", mode)
    return TestClient(app)


def _created(
    *,
    name="John Smith",
    email="js@x.com",
    event_name="15 Min Call",
    invitee_uri="https://api.calendly.com/invitees/inv-1",
    questions=None,
):
    invitee = {"name": name, "email": email}
    if invitee_uri:
        invitee["uri"] = invitee_uri
    payload = {
        "invitee": invitee,
        "scheduled_event": {
            "uri": "https://api.calendly.com/scheduled_events/evt-1",
            "name": event_name,
            "start_time": "2024-01-01T10:00:00Z",
        },
    }
    if questions:
        payload["questions_and_answers"] = questions
    return {"event": "invitee.created", "payload": payload}


def _post(client: TestClient, body, headers=None):
    raw = body if isinstance(body, (bytes, str)) else json.dumps(body)
    return client.post(
        "/api/webhooks/calendly",
        content=raw,
        headers={"Content-Type": "application/json", **(headers or {})},
    )


def _signed_headers(raw: bytes, *, secret=SIGNING_KEY, timestamp=None) -> dict:
    ts = int(time.time()) if timestamp is None else timestamp
    return {"Calendly-Webhook-Signature": f"t={ts},v1={compute_signature(secret, ts, raw)}"}


def test_new_email_creates_lead_family_and_booking(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    body = {
        "event": "invitee.created",
        "payload": {
            "invitee": {"name": "John Smith", "email": "js@x.com"},
            "scheduled_event": {"name": "15 Min Call", "start_time": "2024-01-01T10:00:00Z"},
        },
    }
    response = _post(client, body)

    assert response.status_code == 200
    families = db.tables["families"]
    assert len(families) == 1
    assert families[0]["display_name"] == "Smith, John"
    assert families[0]["status"] == "lead"
    assert families[0]["lead_status"] == "new"
    assert families[0]["lead_type"] == "calendly_call"
    bookings = db.tables["calendly_bookings"]
    assert len(bookings) == 1
    assert bookings[0]["event_type"] == "15min_call"
    assert bookings[0]["status"] == "scheduled"
    assert bookings[0]["family_id"] == families[0]["id"]
    assert response.json() == {
        "success": True,
        "action": "created",
        "eventType": "15min_call",
        "familyId": families[0]["id"],
    }


def test_duplicate_delivery_leaves_exactly_one_booking(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)
    body = _created()

    first = _post(client, body)
    second = _post(client, body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["action"] == "ignored"
    assert second.json()["reason"] == "Duplicate delivery"
    assert len(db.tables["calendly_bookings"]) == 1
    assert len(db.tables["families"]) == 1


def test_unique_constraint_catches_duplicate_that_slips_past_precheck(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)
    monkeypatch.setattr(calendly_router, "find_booking_by_invitee_uri", lambda **_: None)
    body = _created()

    _post(client, body)
    second = _post(client, body)

    assert second.status_code == 200
    assert second.json()["action"] == "ignored"
    assert len(db.tables["calendly_bookings"]) == 1


def test_existing_customer_call_does_not_touch_family(monkeypatch):
    family = {
        "id": "fam-1",
        "display_name": "Smith, John",
        "primary_email": "js@x.com",
        "secondary_email": None,
        "status": "active",
        "lead_status": None,
        "primary_phone": "+15550000000",
    }
    db = FakeSupabase(
        {
            "families": [dict(family)],
            "enrollments": [{"id": "enr-1", "family_id": "fam-1", "status": "active"}],
        }
    )
    client = _client(monkeypatch, db)

    response = _post(client, _created())

    assert response.status_code == 200
    assert response.json()["familyId"] == "fam-1"
    assert db.writes_to("families") == []
    assert db.writes_to("lead_activities") == []
    assert db.tables["families"][0] == family
    assert len(db.tables["calendly_bookings"]) == 1
    assert db.tables["calendly_bookings"][0]["family_id"] == "fam-1"


def test_repeat_booking_from_active_lead_logs_activity(monkeypatch):
    db = FakeSupabase(
        {
            "families": [
                {
                    "id": "fam-1",
                    "display_name": "Smith, John",
                    "primary_email": "js@x.com",
                    "status": "lead",
                    "lead_status": "contacted",
                    "primary_phone": "+15551112222",
                }
            ]
        }
    )
    client = _client(monkeypatch, db)

    response = _post(client, _created())

    assert response.status_code == 200
    family = db.tables["families"][0]
    assert family["lead_status"] == "contacted"
    assert family["primary_phone"] == "+15551112222"
    assert family["calendly_invitee_uri"] == "https://api.calendly.com/invitees/inv-1"
    activities = db.tables["lead_activities"]
    assert len(activities) == 1
    assert activities[0]["family_id"] == "fam-1"
    assert "2024-01-01T10:00:00Z" in activities[0]["notes"]


def test_lapsed_family_is_reengaged_as_new_lead(monkeypatch):
    db = FakeSupabase(
        {
            "families": [
                {
                    "id": "fam-1",
                    "display_name": "Smith, John",
                    "primary_email": "js@x.com",
                    "status": "lead",
                    "lead_status": "cold",
                }
            ]
        }
    )
    client = _client(monkeypatch, db)

    response = _post(client, _created())

    assert response.status_code == 200
    family = db.tables["families"][0]
    assert family["status"] == "lead"
    assert family["lead_status"] == "new"
    assert family["lead_type"] == "calendly_call"
    assert "lead_activities" not in db.tables


def test_name_match_writes_merge_log_and_backfills_secondary_email(monkeypatch):
    db = FakeSupabase(
        {
            "families": [
                {
                    "id": "fam-1",
                    "display_name": "Smith, John",
                    "primary_email": "john@old.com",
                    "secondary_email": None,
                    "status": "lead",
                    "lead_status": "new",
                }
            ]
        }
    )
    client = _client(monkeypatch, db)

    response = _post(client, _created(email="js@x.com"))

    assert response.status_code == 200
    assert response.json()["familyId"] == "fam-1"
    assert len(db.tables["families"]) == 1
    assert db.tables["families"][0]["secondary_email"] == "js@x.com"
    merge_rows = db.tables["family_merge_log"]
    assert len(merge_rows) == 1
    assert merge_rows[0]["family_id"] == "fam-1"
    assert merge_rows[0]["source"] == "calendly_webhook"


def test_name_match_does_not_overwrite_secondary_email(monkeypatch):
    db = FakeSupabase(
        {
            "families": [
                {
                    "id": "fam-1",
                    "display_name": "Smith, John",
                    "primary_email": "john@old.com",
                    "secondary_email": "already@set.com",
                    "status": "active",
                    "lead_status": None,
                }
            ]
        }
    )
    client = _client(monkeypatch, db)

    _post(client, _created(email="js@x.com"))

    assert db.tables["families"][0]["secondary_email"] == "already@set.com"
    assert len(db.tables["family_merge_log"]) == 1


def test_hub_dropoff_provisions_family_student_and_session(monkeypatch):
    db = FakeSupabase({"app_settings": [{"key": "hub_daily_rate", "value": "85"}]})
    client = _client(monkeypatch, db)

    response = _post(
        client,
        _created(
            event_name="Hub Drop-Off",
            questions=[
                {"question": "Student name", "answer": "Mia Smith"},
                {"question": "Age group", "answer": "6-8"},
                {"question": "Payment method", "answer": "Venmo"},
            ],
        ),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["eventType"] == "hub_dropoff"
    family = db.tables["families"][0]
    assert family["status"] == "active"
    assert family["payment_gateway"] == "Venmo"
    student = db.tables["students"][0]
    assert student["full_name"] == "Mia Smith"
    assert student["family_id"] == family["id"]
    session = db.tables["hub_sessions"][0]
    assert session["student_id"] == student["id"]
    assert session["session_date"] == "2024-01-01"
    assert session["daily_rate"] == 85.0
    booking = db.tables["calendly_bookings"][0]
    assert booking["student_id"] == student["id"]
    assert booking["hub_session_id"] == session["id"]
    assert data["studentId"] == student["id"]
    assert data["hubSessionId"] == session["id"]


def test_hub_dropoff_reuses_existing_student_and_default_rate(monkeypatch):
    db = FakeSupabase(
        {
            "families": [{"id": "fam-1", "display_name": "Smith, John", "primary_email": "js@x.com", "status": "active"}],
            "students": [{"id": "stu-1", "family_id": "fam-1", "full_name": "Mia Smith"}],
        }
    )
    client = _client(monkeypatch, db)
    monkeypatch.setattr(calendly_router.settings, "hub_daily_rate_default", 100.0)

    response = _post(
        client,
        _created(event_name="Hub Drop-Off", questions=[{"question": "Student name", "answer": "mia smith"}]),
    )

    assert response.status_code == 200
    assert len(db.tables["students"]) == 1
    assert len(db.tables["families"]) == 1
    assert db.tables["hub_sessions"][0]["student_id"] == "stu-1"
    assert db.tables["hub_sessions"][0]["daily_rate"] == 100.0


def test_cancel_marks_matching_booking(monkeypatch):
    db = FakeSupabase(
        {
            "calendly_bookings": [
                {"id": "b-1", "calendly_invitee_uri": "https://api.calendly.com/invitees/inv-1", "status": "scheduled"}
            ]
        }
    )
    client = _client(monkeypatch, db)

    response = _post(
        client,
        {
            "event": "invitee.canceled",
            "payload": {
                "invitee": {
                    "uri": "https://api.calendly.com/invitees/inv-1",
                    "cancellation": {"reason": "Schedule conflict"},
                }
            },
        },
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "action": "canceled"}
    row = db.tables["calendly_bookings"][0]
    assert row["status"] == "canceled"
    assert row["canceled_at"]
    assert row["cancel_reason"] == "Schedule conflict"


def test_cancel_without_match_is_a_quiet_success(monkeypatch):
    db = FakeSupabase({"calendly_bookings": [{"id": "b-1", "calendly_invitee_uri": "other", "status": "scheduled"}]})
    client = _client(monkeypatch, db)

    response = _post(
        client,
        {"event": "invitee.canceled", "payload": {"invitee": {"uri": "https://api.calendly.com/invitees/nope"}}},
    )

    assert response.status_code == 200
    assert response.json()["action"] == "canceled"
    assert db.tables["calendly_bookings"][0]["status"] == "scheduled"
    assert "canceled_at" not in db.tables["calendly_bookings"][0]


def test_missing_email_records_diagnostic_row(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    response = _post(client, _created(email=""))

    assert response.status_code == 400
    assert response.json() == {"error": "Missing invitee email"}
    assert "families" not in db.tables
    rows = db.tables["calendly_bookings"]
    assert len(rows) == 1
    assert rows[0]["invitee_email"] == "unknown@error.com"
    assert rows[0]["invitee_name"] == "WEBHOOK ERROR - Missing email"
    assert rows[0]["raw_payload"]["event"] == "invitee.created"


def test_invalid_json_is_rejected_and_recorded(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    response = _post(client, "{not json")

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON payload"}
    rows = db.tables["calendly_bookings"]
    assert len(rows) == 1
    assert rows[0]["calendly_invitee_uri"].startswith("error-")
    assert rows[0]["raw_payload"] == {"raw_body": "{not json"}


def test_store_failure_returns_500_and_records_diagnostic(monkeypatch):
    db = FakeSupabase()
    db.fail_on.add(("families", "insert"))
    client = _client(monkeypatch, db)

    response = _post(client, _created())

    assert response.status_code == 500
    assert "simulated store failure" in response.json()["error"]
    rows = db.tables["calendly_bookings"]
    assert len(rows) == 1
    assert rows[0]["invitee_name"] == "WEBHOOK ERROR"
    assert rows[0]["invitee_email"] == "webhook-error@debug.com"
    assert rows[0]["calendly_invitee_uri"].startswith("error-")
    assert rows[0]["notes"].startswith("Error: ")


def test_diagnostic_failure_never_masks_the_500(monkeypatch):
    db = FakeSupabase()
    db.fail_on.update({("families", "insert"), ("calendly_bookings", "insert")})
    client = _client(monkeypatch, db)

    response = _post(client, _created())

    assert response.status_code == 500
    assert "calendly_bookings" not in db.tables or db.tables["calendly_bookings"] == []


def test_unknown_event_is_ignored(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    response = _post(client, {"event": "routing_form_submission.created", "payload": {}})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "action": "ignored",
        "reason": "Unknown event type: routing_form_submission.created",
    }
    assert db.calls == []


def test_valid_signature_is_accepted(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db, signing_key=SIGNING_KEY, mode="enforce")
    raw = json.dumps(_created()).encode("utf-8")

    response = _post(client, raw, headers=_signed_headers(raw))

    assert response.status_code == 200
    assert response.json()["action"] == "created"


def test_invalid_signature_is_rejected_even_in_audit_mode(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db, signing_key=SIGNING_KEY, mode="permissive_audit")
    raw = json.dumps(_created()).encode("utf-8")

    response = _post(client, raw, headers=_signed_headers(raw, secret="wrong-key"))

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid signature"}
    assert db.calls == []


def test_stale_signature_is_rejected(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db, signing_key=SIGNING_KEY, mode="enforce")
    raw = json.dumps(_created()).encode("utf-8")

    response = _post(client, raw, headers=_signed_headers(raw, timestamp=int(time.time()) - 301))

    assert response.status_code == 401


def test_missing_signature_depends_on_mode(monkeypatch):
    db = FakeSupabase()
    raw = json.dumps(_created()).encode("utf-8")

    audit_client = _client(monkeypatch, db, signing_key=SIGNING_KEY, mode="permissive_audit")
    assert _post(audit_client, raw).status_code == 200

    enforce_client = _client(monkeypatch, FakeSupabase(), signing_key=SIGNING_KEY, mode="enforce")
    assert _post(enforce_client, raw).status_code == 401


def test_enforce_mode_without_secret_is_unavailable(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db, signing_key=None, mode="enforce")

    response = _post(client, _created())

    assert response.status_code == 503
    assert db.calls == []


def test_corrected_redelivery_after_missing_email_is_stored(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    first = _post(client, _created(email=""))
    second = _post(client, _created(email="js@x.com"))

    assert first.status_code == 400
    assert second.status_code == 200
    assert second.json()["action"] == "created"
    rows = db.tables["calendly_bookings"]
    assert len(rows) == 2
    assert rows[0]["calendly_invitee_uri"].startswith("error-")
    assert rows[1]["calendly_invitee_uri"] == "https://api.calendly.com/invitees/inv-1"
    assert rows[1]["invitee_email"] == "js@x.com"


def test_unrelated_store_error_mentioning_unique_is_not_a_duplicate(monkeypatch):
    db = FakeSupabase()
    client = _client(monkeypatch, db)

    def _failing_insert(**_):
        raise Exception("could not create unique index: out of disk space")

    monkeypatch.setattr(calendly_router, "insert_booking", _failing_insert)
    response = _post(client, _created())

    assert response.status_code == 500
    assert "out of disk space" in response.json()["error"]


def test_is_unique_violation_reads_sqlstate():
    assert is_unique_violation(FakeAPIError("duplicate key value violates unique constraint", code="23505"))
    assert is_unique_violation(Exception("{'code': '23505', 'message': 'duplicate key value'}"))
    assert not is_unique_violation(FakeAPIError("value too long for type", code="22001"))
    assert not is_unique_violation(Exception("duplicate column name in unique index definition"))
