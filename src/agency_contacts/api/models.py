"""Pydantic request/response models for the contacts API.

Provides the generic ``{"data": ..., "meta": {...}}`` wrapper, the error
envelope, and the contact-specific payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from agency_contacts.models import ContactInput
from agency_contacts.profile import ContactProfile
from agency_contacts.query import ContactPage, ContactSummary

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    agency_id: str | None = None
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class ContactPageMeta(BaseModel):
    """Pagination metadata for the contact list.

    ``next_cursor`` is set only for cursor (or first-page) requests that
    have more rows; ``offset`` is echoed for offset-mode requests.
    """

    total: int
    limit: int
    offset: int | None = None
    next_cursor: str | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class ResolveContactRequest(BaseModel):
    """Person fragments from an ingestion path."""

    last_name: str | None = None
    first_name: str | None = None
    zip_code: str | None = None
    phone: str | None = None
    email: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None

    def to_input(self) -> ContactInput:
        return ContactInput(**self.model_dump())


class IngestRequest(BaseModel):
    """A raw form/upload row plus the template whose mapping applies to it."""

    template_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ReconcileRequest(BaseModel):
    steps: list[str] | None = None


class ResolvedContact(BaseModel):
    contact_id: UUID


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


class ContactSummaryModel(BaseModel):
    id: UUID
    agency_id: UUID
    first_name: str | None = None
    last_name: str
    household_key: str
    zip_code: str | None = None
    phones: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    current_stage: str
    last_activity_at: datetime | None = None
    last_activity_type: str | None = None
    assigned_staff_name: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_summary(cls, summary: ContactSummary) -> ContactSummaryModel:
        return cls(
            id=summary.id,
            agency_id=summary.agency_id,
            first_name=summary.first_name,
            last_name=summary.last_name,
            household_key=summary.household_key,
            zip_code=summary.zip_code,
            phones=summary.phones,
            emails=summary.emails,
            current_stage=str(summary.current_stage),
            last_activity_at=summary.last_activity_at,
            last_activity_type=summary.last_activity_type,
            assigned_staff_name=summary.assigned_staff_name,
            street_address=summary.street_address,
            city=summary.city,
            state=summary.state,
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        )


class ContactListResponse(BaseModel):
    data: list[ContactSummaryModel]
    meta: ContactPageMeta


class LinkedRecordModel(BaseModel):
    id: UUID
    module: str
    status: str | None = None
    created_at: datetime | None = None


class ActivityModel(BaseModel):
    id: UUID
    activity_type: str
    source_module: str | None = None
    notes: str | None = None
    created_at: datetime


class ContactProfileModel(BaseModel):
    """A contact with its derived stage, module flags, records and activity."""

    id: UUID
    agency_id: UUID
    first_name: str | None = None
    last_name: str
    display_name: str
    household_key: str
    zip_code: str | None = None
    phones: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    current_stage: str
    flags: dict[str, bool] = Field(default_factory=dict)
    records: dict[str, list[LinkedRecordModel]] = Field(default_factory=dict)
    activities: list[ActivityModel] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: ContactProfile) -> ContactProfileModel:
        contact = profile.contact
        return cls(
            id=contact.id,
            agency_id=contact.agency_id,
            first_name=contact.first_name,
            last_name=contact.last_name,
            display_name=contact.display_name,
            household_key=contact.household_key,
            zip_code=contact.zip_code,
            phones=contact.phones,
            emails=contact.emails,
            street_address=contact.street_address,
            city=contact.city,
            state=contact.state,
            current_stage=str(profile.stage),
            flags={
                "has_active_winback": profile.flags.has_active_winback,
                "is_customer": profile.flags.is_customer,
                "has_open_cancel_audit": profile.flags.has_open_cancel_audit,
                "has_open_renewal": profile.flags.has_open_renewal,
                "has_open_quote": profile.flags.has_open_quote,
            },
            records={
                module: [
                    LinkedRecordModel(
                        id=r.id, module=r.module, status=r.status, created_at=r.created_at
                    )
                    for r in records
                ]
                for module, records in profile.records.items()
            },
            activities=[
                ActivityModel(
                    id=a.id,
                    activity_type=a.activity_type,
                    source_module=a.source_module,
                    notes=a.notes,
                    created_at=a.created_at,
                )
                for a in profile.activities
            ],
        )


def page_response(page: ContactPage, *, limit: int, offset: int | None) -> ContactListResponse:
    return ContactListResponse(
        data=[ContactSummaryModel.from_summary(item) for item in page.items],
        meta=ContactPageMeta(
            total=page.total_count,
            limit=limit,
            offset=offset,
            next_cursor=page.next_cursor,
        ),
    )
