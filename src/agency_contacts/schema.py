"""DDL for the contacts core and the module tables it reads.

Applied in order by the ``core_001`` Alembic revision and by the integration
test fixtures. Every statement is idempotent.

All ``contact_id`` foreign keys use ``ON DELETE SET NULL``: deleting a contact
must never delete module records, and merges repoint references before the
duplicate row is removed.
"""

from __future__ import annotations

CONTACTS_DDL = [
    """
    CREATE TABLE IF NOT EXISTS agency_contacts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        first_name TEXT,
        last_name TEXT NOT NULL,
        household_key TEXT NOT NULL,
        zip_code TEXT,
        phones TEXT[] NOT NULL DEFAULT '{}',
        emails TEXT[] NOT NULL DEFAULT '{}',
        street_address TEXT,
        city TEXT,
        state TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT agency_contacts_agency_household_key_uniq UNIQUE (agency_id, household_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_agency_contacts_phones ON agency_contacts USING GIN (phones)",
    "CREATE INDEX IF NOT EXISTS idx_agency_contacts_emails ON agency_contacts USING GIN (emails)",
    """
    CREATE INDEX IF NOT EXISTS idx_agency_contacts_agency_updated
        ON agency_contacts (agency_id, updated_at DESC)
    """,
]

TEAM_DDL = [
    """
    CREATE TABLE IF NOT EXISTS team_members (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        name TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agency_members (
        user_id UUID NOT NULL,
        agency_id UUID NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, agency_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_sessions (
        token TEXT PRIMARY KEY,
        agency_id UUID NOT NULL,
        team_member_id UUID REFERENCES team_members(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

MODULE_DDL = [
    """
    CREATE TABLE IF NOT EXISTS lqs_households (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        first_name TEXT,
        last_name TEXT,
        zip_code TEXT,
        phone TEXT,
        email TEXT,
        status TEXT NOT NULL DEFAULT 'lead'
            CHECK (status IN ('lead', 'quoted', 'sold')),
        team_member_id UUID REFERENCES team_members(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        customer_first_name TEXT,
        customer_last_name TEXT,
        customer_zip TEXT,
        customer_phone TEXT,
        customer_email TEXT,
        sale_date DATE,
        team_member_id UUID REFERENCES team_members(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS renewal_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        email TEXT,
        policy_number TEXT,
        current_status TEXT NOT NULL DEFAULT 'uncontacted'
            CHECK (current_status IN ('uncontacted', 'pending', 'success', 'unsuccessful')),
        is_active BOOLEAN NOT NULL DEFAULT true,
        assigned_team_member_id UUID REFERENCES team_members(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cancel_audit_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        insured_first_name TEXT,
        insured_last_name TEXT,
        insured_phone TEXT,
        insured_email TEXT,
        policy_number TEXT,
        status TEXT NOT NULL DEFAULT 'new'
            CHECK (status IN ('new', 'in_progress', 'resolved', 'lost')),
        cancel_status TEXT,
        is_active BOOLEAN NOT NULL DEFAULT true,
        assigned_team_member_id UUID REFERENCES team_members(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS winback_households (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        first_name TEXT,
        last_name TEXT,
        zip_code TEXT,
        phone TEXT,
        email TEXT,
        street_address TEXT,
        city TEXT,
        state TEXT,
        status TEXT NOT NULL DEFAULT 'untouched'
            CHECK (status IN (
                'untouched', 'in_progress', 'moved_to_quoted', 'won_back', 'dismissed'
            )),
        assigned_to UUID REFERENCES team_members(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_activities (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        agency_id UUID NOT NULL,
        contact_id UUID REFERENCES agency_contacts(id) ON DELETE SET NULL,
        activity_type TEXT NOT NULL,
        source_module TEXT,
        notes TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # One renewal / cancellation record per (contact, policy).
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_renewal_records_contact_policy
        ON renewal_records (contact_id, policy_number)
        WHERE contact_id IS NOT NULL AND policy_number IS NOT NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_cancel_audit_records_contact_policy
        ON cancel_audit_records (contact_id, policy_number)
        WHERE contact_id IS NOT NULL AND policy_number IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_lqs_households_contact ON lqs_households (contact_id)",
    "CREATE INDEX IF NOT EXISTS idx_sales_contact ON sales (contact_id)",
    "CREATE INDEX IF NOT EXISTS idx_renewal_records_contact ON renewal_records (contact_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_cancel_audit_records_contact
        ON cancel_audit_records (contact_id)
    """,
    "CREATE INDEX IF NOT EXISTS idx_winback_households_contact ON winback_households (contact_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_contact_activities_contact_created
        ON contact_activities (contact_id, created_at DESC)
    """,
]

MAPPING_DDL = [
    """
    CREATE TABLE IF NOT EXISTS field_mappings (
        agency_id UUID NOT NULL,
        template_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        logical_field TEXT NOT NULL,
        physical_key TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (agency_id, template_id, version, logical_field)
    )
    """,
]

ALL_DDL: list[str] = [*CONTACTS_DDL, *TEAM_DDL, *MODULE_DDL, *MAPPING_DDL]

DROP_TABLES = [
    "field_mappings",
    "contact_activities",
    "winback_households",
    "cancel_audit_records",
    "renewal_records",
    "sales",
    "lqs_households",
    "staff_sessions",
    "agency_members",
    "team_members",
    "agency_contacts",
]


async def apply_schema(pool) -> None:
    """Create every table and index on *pool* (asyncpg pool or connection)."""
    for statement in ALL_DDL:
        await pool.execute(statement)
