"""Domain records shared by the resolver, query layer and profile view."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class ContactInput:
    """Raw person fragments as supplied by an ingestion path."""

    last_name: str | None
    first_name: str | None = None
    zip_code: str | None = None
    phone: str | None = None
    email: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ContactInput:
        """Build from a dict keyed by resolver field names, ignoring extras."""
        return cls(
            last_name=data.get("last_name"),
            first_name=data.get("first_name"),
            zip_code=data.get("zip_code"),
            phone=data.get("phone"),
            email=data.get("email"),
            street_address=data.get("street_address"),
            city=data.get("city"),
            state=data.get("state"),
        )


@dataclass(frozen=True)
class Contact:
    """A canonical contact row."""

    id: UUID
    agency_id: UUID
    first_name: str | None
    last_name: str
    household_key: str
    zip_code: str | None = None
    phones: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> Contact:
        return cls(
            id=row["id"],
            agency_id=row["agency_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            household_key=row["household_key"],
            zip_code=row["zip_code"],
            phones=list(row["phones"] or []),
            emails=list(row["emails"] or []),
            street_address=row["street_address"],
            city=row["city"],
            state=row["state"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


CONTACT_COLUMNS = (
    "id, agency_id, first_name, last_name, household_key, zip_code, phones, emails, "
    "street_address, city, state, created_at, updated_at"
)
