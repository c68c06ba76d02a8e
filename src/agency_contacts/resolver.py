"""Contact resolution — map raw person fragments to one canonical contact.

Every ingestion path calls :func:`resolve_contact` with whatever name, phone,
email and address fragments it has and stores the returned contact id on its
own module record.

Resolution order (first hit wins):

1. **Phone** — when the normalized phone belongs to exactly one contact in the
   agency, that contact is the match. Several owners make the phone ambiguous
   and it is ignored for matching (not an error). A merge that fills in the
   contact's first name or zip also moves it to the matching household key,
   unless another contact already holds that key.
2. **Household key** — a single ``INSERT ... ON CONFLICT (agency_id,
   household_key) DO UPDATE`` either creates the contact or merges into the
   existing one. This is the only path that creates contacts, so concurrent
   calls for the same household converge on one row without unique-violation
   errors.

Both paths merge conservatively: existing non-null fields are kept, new
phones and emails are appended only when absent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import asyncpg

from agency_contacts.core.telemetry import operation_span
from agency_contacts.errors import InvalidInputError
from agency_contacts.models import ContactInput
from agency_contacts.normalize import (
    has_usable_last_name,
    household_key,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_zip,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedContact:
    """Resolver input after normalization."""

    first_name: str | None
    last_name: str
    household_key: str
    zip_code: str | None = None
    phone: str | None = None
    email: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None


def _clean_text(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    cleaned = " ".join(raw.split())
    return cleaned or None


def normalize_contact_input(contact: ContactInput) -> NormalizedContact:
    """Normalize *contact*, raising :class:`InvalidInputError` for an unusable last name."""
    if not has_usable_last_name(contact.last_name):
        raise InvalidInputError("last_name must contain at least one letter")
    first = normalize_name(contact.first_name) or None
    last = normalize_name(contact.last_name)
    zip_code = normalize_zip(contact.zip_code)
    return NormalizedContact(
        first_name=first,
        last_name=last,
        household_key=household_key(first, last, zip_code),
        zip_code=zip_code,
        phone=normalize_phone(contact.phone),
        email=normalize_email(contact.email),
        street_address=_clean_text(contact.street_address),
        city=_clean_text(contact.city),
        state=_clean_text(contact.state),
    )


# $1 contact id, $2 first_name, $3 zip, $4 phone, $5 email, $6 street, $7 city, $8 state
_MERGE_BY_ID_SQL = """
    UPDATE agency_contacts SET
        first_name = COALESCE(first_name, $2::text),
        zip_code = COALESCE(NULLIF(NULLIF(zip_code, ''), '00000'), $3::text),
        phones = CASE
            WHEN $4::text IS NULL OR $4::text = ANY(phones) THEN phones
            ELSE array_append(phones, $4::text)
        END,
        emails = CASE
            WHEN $5::text IS NULL OR $5::text = ANY(emails) THEN emails
            ELSE array_append(emails, $5::text)
        END,
        street_address = COALESCE(street_address, $6::text),
        city = COALESCE(city, $7::text),
        state = COALESCE(state, $8::text),
        updated_at = now()
    WHERE id = $1
    RETURNING id, agency_id, first_name, last_name, zip_code, household_key
"""

# $1 contact id, $2 agency, $3 new key
_REKEY_IF_FREE_SQL = """
    UPDATE agency_contacts SET household_key = $3::text, updated_at = now()
    WHERE id = $1
      AND NOT EXISTS (
          SELECT 1 FROM agency_contacts WHERE agency_id = $2 AND household_key = $3::text
      )
"""

# $1 agency, $2 first, $3 last, $4 key, $5 zip, $6 phone, $7 email, $8 street, $9 city, $10 state
_UPSERT_BY_KEY_SQL = """
    INSERT INTO agency_contacts (
        agency_id, first_name, last_name, household_key, zip_code,
        phones, emails, street_address, city, state
    )
    VALUES (
        $1, $2::text, $3::text, $4::text, $5::text,
        CASE WHEN $6::text IS NULL THEN '{}'::text[] ELSE ARRAY[$6::text] END,
        CASE WHEN $7::text IS NULL THEN '{}'::text[] ELSE ARRAY[$7::text] END,
        $8::text, $9::text, $10::text
    )
    ON CONFLICT (agency_id, household_key) DO UPDATE SET
        first_name = COALESCE(agency_contacts.first_name, EXCLUDED.first_name),
        zip_code = COALESCE(
            NULLIF(NULLIF(agency_contacts.zip_code, ''), '00000'), EXCLUDED.zip_code
        ),
        phones = CASE
            WHEN $6::text IS NULL OR $6::text = ANY(agency_contacts.phones)
                THEN agency_contacts.phones
            ELSE array_append(agency_contacts.phones, $6::text)
        END,
        emails = CASE
            WHEN $7::text IS NULL OR $7::text = ANY(agency_contacts.emails)
                THEN agency_contacts.emails
            ELSE array_append(agency_contacts.emails, $7::text)
        END,
        street_address = COALESCE(agency_contacts.street_address, EXCLUDED.street_address),
        city = COALESCE(agency_contacts.city, EXCLUDED.city),
        state = COALESCE(agency_contacts.state, EXCLUDED.state),
        updated_at = now()
    RETURNING id
"""


async def find_contacts_by_phone(
    pool: Any, agency_id: UUID, phone: str, *, limit: int = 2
) -> list[UUID]:
    """Return up to *limit* contact ids in the agency whose phones contain *phone*."""
    rows = await pool.fetch(
        """
        SELECT id FROM agency_contacts
        WHERE agency_id = $1 AND phones @> ARRAY[$2::text]
        ORDER BY id
        LIMIT $3
        """,
        agency_id,
        phone,
        limit,
    )
    return [row["id"] for row in rows]


async def _merge_into(pool: Any, contact_id: UUID, contact: NormalizedContact) -> UUID | None:
    row = await pool.fetchrow(
        _MERGE_BY_ID_SQL,
        contact_id,
        contact.first_name,
        contact.zip_code,
        contact.phone,
        contact.email,
        contact.street_address,
        contact.city,
        contact.state,
    )
    if row is None:
        return None
    await _rekey_if_free(pool, row)
    return row["id"]


async def _rekey_if_free(pool: Any, row: Any) -> None:
    """Move a merged contact to the key of its filled-in name and zip.

    When another contact already holds that key the stored key is left as is;
    key renormalization merges the pair later.
    """
    new_key = household_key(row["first_name"], row["last_name"], row["zip_code"])
    if new_key == row["household_key"]:
        return
    try:
        await pool.execute(_REKEY_IF_FREE_SQL, row["id"], row["agency_id"], new_key)
    except asyncpg.UniqueViolationError:
        logger.info(
            "Household key %s was taken concurrently; contact %s keeps %s",
            new_key,
            row["id"],
            row["household_key"],
        )


async def _upsert_by_key(pool: Any, agency_id: UUID, contact: NormalizedContact) -> UUID:
    row = await pool.fetchrow(
        _UPSERT_BY_KEY_SQL,
        agency_id,
        contact.first_name,
        contact.last_name,
        contact.household_key,
        contact.zip_code,
        contact.phone,
        contact.email,
        contact.street_address,
        contact.city,
        contact.state,
    )
    return row["id"]


@operation_span("resolver.resolve_contact")
async def resolve_contact_input(pool: Any, agency_id: UUID, contact: ContactInput) -> UUID:
    """Resolve a :class:`ContactInput` to a contact id, creating the contact if needed.

    Parameters
    ----------
    pool:
        asyncpg pool (or connection) for the contacts database.
    agency_id:
        Tenant scope; matches never cross agencies.
    contact:
        Raw person fragments.

    Returns
    -------
    UUID
        The canonical contact id.

    Raises
    ------
    InvalidInputError
        When the last name has no alphabetic character. Nothing is read or
        written in that case.
    """
    normalized = normalize_contact_input(contact)

    if normalized.phone is not None:
        matches = await find_contacts_by_phone(pool, agency_id, normalized.phone)
        if len(matches) == 1:
            merged = await _merge_into(pool, matches[0], normalized)
            if merged is not None:
                logger.debug("Resolved contact %s by phone", merged)
                return merged
        elif len(matches) > 1:
            logger.debug(
                "Phone %s is shared by several contacts in agency %s; matching by household key",
                normalized.phone,
                agency_id,
            )

    contact_id = await _upsert_by_key(pool, agency_id, normalized)
    logger.debug("Resolved contact %s by household key %s", contact_id, normalized.household_key)
    return contact_id


async def resolve_contact(
    pool: Any,
    agency_id: UUID,
    *,
    last_name: str | None,
    first_name: str | None = None,
    zip_code: str | None = None,
    phone: str | None = None,
    email: str | None = None,
    street_address: str | None = None,
    city: str | None = None,
    state: str | None = None,
) -> UUID:
    """Keyword form of :func:`resolve_contact_input`."""
    return await resolve_contact_input(
        pool,
        agency_id,
        ContactInput(
            last_name=last_name,
            first_name=first_name,
            zip_code=zip_code,
            phone=phone,
            email=email,
            street_address=street_address,
            city=city,
            state=state,
        ),
    )


async def resolve_contacts(
    pool: Any, agency_id: UUID, inputs: list[ContactInput]
) -> list[UUID | None]:
    """Resolve a batch of uploaded rows in order.

    Rows with an unusable last name yield ``None`` (and are logged); any other
    error propagates.
    """
    results: list[UUID | None] = []
    for index, contact in enumerate(inputs):
        try:
            results.append(await resolve_contact_input(pool, agency_id, contact))
        except InvalidInputError as exc:
            logger.warning("Skipping row %d for agency %s: %s", index, agency_id, exc)
            results.append(None)
    return results


__all__ = [
    "NormalizedContact",
    "find_contacts_by_phone",
    "normalize_contact_input",
    "resolve_contact",
    "resolve_contact_input",
    "resolve_contacts",
]
