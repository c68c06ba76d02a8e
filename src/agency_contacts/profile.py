"""Contact profile — one contact with its stage, linked records and activity."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from agency_contacts.errors import ContactNotFoundError
from agency_contacts.models import CONTACT_COLUMNS, Contact
from agency_contacts.modules import MODULE_TABLES
from agency_contacts.stages import LifecycleStage, ModuleFlags, classify_stage, fetch_module_flags

ACTIVITY_LIMIT = 100


@dataclass(frozen=True)
class LinkedRecord:
    id: UUID
    module: str
    status: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class Activity:
    id: UUID
    activity_type: str
    source_module: str | None
    notes: str | None
    created_at: datetime


@dataclass
class ContactProfile:
    contact: Contact
    flags: ModuleFlags
    stage: LifecycleStage
    records: dict[str, list[LinkedRecord]] = field(default_factory=dict)
    activities: list[Activity] = field(default_factory=list)


async def get_contact_profile(pool: Any, agency_id: UUID, contact_id: UUID) -> ContactProfile:
    """Load a contact, its derived stage, its module records and recent activity.

    Raises :class:`ContactNotFoundError` when the contact is not in the agency.
    """
    row = await pool.fetchrow(
        f"SELECT {CONTACT_COLUMNS} FROM agency_contacts "  # noqa: S608
        "WHERE id = $1 AND agency_id = $2",
        contact_id,
        agency_id,
    )
    if row is None:
        raise ContactNotFoundError(contact_id)
    contact = Contact.from_row(row)

    flags = await fetch_module_flags(pool, agency_id, contact_id)

    records: dict[str, list[LinkedRecord]] = {}
    for module in MODULE_TABLES:
        rows = await pool.fetch(
            f"""
            SELECT m.id, {module.status_expr("m")} AS status, m.created_at
            FROM {module.table} m
            WHERE m.{module.contact_col} = $1 AND m.agency_id = $2
            ORDER BY m.created_at DESC
            """,  # noqa: S608
            contact_id,
            agency_id,
        )
        records[module.module] = [
            LinkedRecord(
                id=r["id"],
                module=module.module,
                status=r["status"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    activity_rows = await pool.fetch(
        """
        SELECT id, activity_type, source_module, notes, created_at
        FROM contact_activities
        WHERE contact_id = $1 AND agency_id = $2
        ORDER BY created_at DESC, id DESC
        LIMIT $3
        """,
        contact_id,
        agency_id,
        ACTIVITY_LIMIT,
    )
    activities = [
        Activity(
            id=r["id"],
            activity_type=r["activity_type"],
            source_module=r["source_module"],
            notes=r["notes"],
            created_at=r["created_at"],
        )
        for r in activity_rows
    ]

    return ContactProfile(
        contact=contact,
        flags=flags,
        stage=classify_stage(flags),
        records=records,
        activities=activities,
    )
