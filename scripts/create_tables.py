#!/usr/bin/env python3
"""Create the tables the console API reads and writes, for local and staging databases."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. families (customers and leads)
CREATE TABLE IF NOT EXISTS families (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    display_name TEXT NOT NULL,
    primary_email TEXT,
    secondary_email TEXT,
    primary_phone TEXT,
    primary_contact_name TEXT,
    status TEXT NOT NULL DEFAULT 'lead',
    lead_status TEXT,
    lead_type TEXT,
    calendly_event_uri TEXT,
    calendly_invitee_uri TEXT,
    scheduled_at TIMESTAMPTZ,
    payment_gateway TEXT,
    sms_opt_out BOOLEAN NOT NULL DEFAULT FALSE,
    sms_opt_out_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_families_primary_email ON families(LOWER(primary_email));
CREATE INDEX IF NOT EXISTS idx_families_secondary_email ON families(LOWER(secondary_email));
CREATE INDEX IF NOT EXISTS idx_families_display_name ON families(LOWER(display_name));

-- 2. students
CREATE TABLE IF NOT EXISTS students (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    family_id UUID NOT NULL REFERENCES families(id) ON DELETE CASCADE,
    full_name TEXT NOT NULL,
    age_group TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. enrollments
CREATE TABLE IF NOT EXISTS enrollments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    family_id UUID NOT NULL REFERENCES families(id) ON DELETE CASCADE,
    student_id UUID REFERENCES students(id) ON DELETE SET NULL,
    status TEXT NOT NULL DEFAULT 'trial',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_enrollments_family_status ON enrollments(family_id, status);

-- 4. hub_sessions + app_settings
CREATE TABLE IF NOT EXISTS hub_sessions (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id UUID NOT NULL REFERENCES students(id) ON DELETE CASCADE,
    session_date DATE NOT NULL,
    daily_rate NUMERIC(10, 2) NOT NULL,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT
);

-- 5. calendly_bookings (invitee URI is the delivery idempotency key)
CREATE TABLE IF NOT EXISTS calendly_bookings (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    calendly_event_uri TEXT NOT NULL,
    calendly_invitee_uri TEXT NOT NULL,
    event_type TEXT NOT NULL CHECK (event_type IN ('15min_call', 'hub_dropoff')),
    invitee_email TEXT NOT NULL,
    invitee_name TEXT,
    invitee_phone TEXT,
    scheduled_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    status TEXT NOT NULL DEFAULT 'scheduled' CHECK (status IN ('scheduled', 'completed', 'canceled', 'no_show')),
    canceled_at TIMESTAMPTZ,
    cancel_reason TEXT,
    family_id UUID REFERENCES families(id) ON DELETE SET NULL,
    student_id UUID REFERENCES students(id) ON DELETE SET NULL,
    hub_session_id UUID REFERENCES hub_sessions(id) ON DELETE SET NULL,
    student_name TEXT,
    student_age_group TEXT,
    payment_method TEXT,
    raw_payload JSONB,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (calendly_invitee_uri)
);
CREATE INDEX IF NOT EXISTS idx_calendly_bookings_email ON calendly_bookings(LOWER(invitee_email));
CREATE INDEX IF NOT EXISTS idx_calendly_bookings_family ON calendly_bookings(family_id);

-- 6. lead_activities (append-only)
CREATE TABLE IF NOT EXISTS lead_activities (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    family_id UUID NOT NULL REFERENCES families(id) ON DELETE CASCADE,
    contact_type TEXT NOT NULL,
    notes TEXT,
    contacted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 7. family_merge_log (append-only, reviewed by staff)
CREATE TABLE IF NOT EXISTS family_merge_log (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    family_id UUID NOT NULL REFERENCES families(id) ON DELETE CASCADE,
    matched_by TEXT NOT NULL,
    original_email TEXT,
    new_email TEXT,
    purchaser_name TEXT,
    source TEXT,
    source_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_family_merge_log_family_id ON family_merge_log(family_id);

-- 8. sms_messages
CREATE TABLE IF NOT EXISTS sms_messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    family_id UUID REFERENCES families(id) ON DELETE SET NULL,
    twilio_sid TEXT UNIQUE,
    to_phone TEXT,
    from_phone TEXT,
    message_body TEXT,
    message_type TEXT,
    status TEXT,
    error_code TEXT,
    error_message TEXT,
    sent_by TEXT,
    sent_at TIMESTAMPTZ,
    delivered_at TIMESTAMPTZ,
    failed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 9. invoices, payments, event_orders
CREATE TABLE IF NOT EXISTS invoices (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    public_id TEXT UNIQUE NOT NULL,
    invoice_number TEXT,
    family_id UUID REFERENCES families(id) ON DELETE SET NULL,
    total_amount NUMERIC(10, 2),
    amount_paid NUMERIC(10, 2) NOT NULL DEFAULT 0,
    balance_due NUMERIC(10, 2) GENERATED ALWAYS AS (COALESCE(total_amount, 0) - amount_paid) STORED,
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS payments (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    amount NUMERIC(10, 2) NOT NULL,
    payment_date DATE NOT NULL,
    payment_method TEXT,
    reference TEXT,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS event_orders (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    invoice_id UUID REFERENCES invoices(id) ON DELETE SET NULL,
    payment_status TEXT NOT NULL DEFAULT 'pending',
    paid_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 10. stripe_invoice_webhooks (Stripe event id is the delivery idempotency key)
CREATE TABLE IF NOT EXISTS stripe_invoice_webhooks (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    stripe_event_id TEXT UNIQUE NOT NULL,
    event_type TEXT NOT NULL,
    invoice_id UUID REFERENCES invoices(id) ON DELETE SET NULL,
    processing_status TEXT NOT NULL CHECK (processing_status IN ('processing', 'processed', 'failed')),
    error_message TEXT,
    amount_paid NUMERIC(10, 2),
    raw_payload JSONB,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 11. admin_users + observability_metric_snapshots
CREATE TABLE IF NOT EXISTS admin_users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    name TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source TEXT NOT NULL,
    request_id TEXT,
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

SEED_SETTINGS = """
INSERT INTO app_settings (key, value)
VALUES ('hub_daily_rate', '100.00')
ON CONFLICT (key) DO NOTHING;
"""

def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        return
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Seeding app settings...")
    cur.execute(SEED_SETTINGS)

    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.execute("SELECT key, value FROM app_settings ORDER BY key;")
    print(f"App settings: {cur.fetchall()}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
