"""Versioned field mappings for ingestion payloads.

Upload templates and web forms name their person fields however the agency
configured them (``"Insured Last"``, ``"lname"``, ...). Each template has a
versioned mapping from logical resolver fields to the payload's physical keys,
stored in ``field_mappings`` and applied exactly once at ingestion time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from agency_contacts.errors import InvalidInputError
from agency_contacts.models import ContactInput
from agency_contacts.normalize import split_full_name

logger = logging.getLogger(__name__)

LOGICAL_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "full_name",
        "zip_code",
        "phone",
        "email",
        "street_address",
        "city",
        "state",
    }
)


@dataclass(frozen=True)
class FieldMapping:
    template_id: str
    version: int
    fields: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.fields) - LOGICAL_FIELDS
        if unknown:
            raise InvalidInputError(f"Unknown logical field(s): {', '.join(sorted(unknown))}")


async def load_field_mapping(pool: Any, agency_id: UUID, template_id: str) -> FieldMapping | None:
    """Load the latest mapping version for *template_id*, or ``None`` if there is none."""
    rows = await pool.fetch(
        """
        SELECT version, logical_field, physical_key
        FROM field_mappings
        WHERE agency_id = $1 AND template_id = $2
          AND version = (
              SELECT max(version) FROM field_mappings
              WHERE agency_id = $1 AND template_id = $2
          )
        """,
        agency_id,
        template_id,
    )
    if not rows:
        return None
    return FieldMapping(
        template_id=template_id,
        version=rows[0]["version"],
        fields={row["logical_field"]: row["physical_key"] for row in rows},
    )


async def save_field_mapping(pool: Any, agency_id: UUID, mapping: FieldMapping) -> None:
    """Store *mapping* as a new version; existing versions are immutable."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for logical, physical in mapping.fields.items():
                await conn.execute(
                    """
                    INSERT INTO field_mappings
                        (agency_id, template_id, version, logical_field, physical_key)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    agency_id,
                    mapping.template_id,
                    mapping.version,
                    logical,
                    physical,
                )
    logger.info(
        "Saved field mapping %s v%d for agency %s",
        mapping.template_id,
        mapping.version,
        agency_id,
    )


def _value(payload: dict[str, Any], mapping: FieldMapping, logical: str) -> Any:
    key = mapping.fields.get(logical)
    if key is None:
        return None
    value = payload.get(key)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def extract_contact_input(payload: dict[str, Any], mapping: FieldMapping) -> ContactInput:
    """Map a raw submission onto resolver input using *mapping* only.

    When the mapping has no ``last_name`` but a ``full_name``, the full name is
    split: the last word is the last name, the rest the first name.
    """
    first_name = _value(payload, mapping, "first_name")
    last_name = _value(payload, mapping, "last_name")
    if last_name is None:
        full_name = _value(payload, mapping, "full_name")
        if full_name is not None:
            split_first, split_last = split_full_name(full_name)
            first_name = first_name or split_first or None
            last_name = split_last or None
    return ContactInput(
        last_name=last_name,
        first_name=first_name,
        zip_code=_value(payload, mapping, "zip_code"),
        phone=_value(payload, mapping, "phone"),
        email=_value(payload, mapping, "email"),
        street_address=_value(payload, mapping, "street_address"),
        city=_value(payload, mapping, "city"),
        state=_value(payload, mapping, "state"),
    )
