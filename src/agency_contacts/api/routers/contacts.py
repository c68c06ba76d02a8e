"""Contact endpoints — resolve, ingest, list, profile and reconcile.

Provides:

- ``router`` — all endpoints under ``/api/agencies/{agency_id}``

The caller identity arrives in ``X-User-Id`` / ``X-Staff-Session`` headers set
by the gateway; tenant access is checked by :class:`ContactsService`.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query

from agency_contacts.api.models import (
    ApiResponse,
    ContactListResponse,
    ContactProfileModel,
    IngestRequest,
    ReconcileRequest,
    ResolveContactRequest,
    ResolvedContact,
    page_response,
)
from agency_contacts.authz import Principal
from agency_contacts.errors import InvalidInputError
from agency_contacts.query import clamp_limit
from agency_contacts.service import ContactsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agencies/{agency_id}", tags=["contacts"])


def _get_service() -> ContactsService:
    """Dependency stub — overridden at app startup or in tests."""
    raise RuntimeError("ContactsService not initialized")


def get_principal(
    x_user_id: str | None = Header(None),
    x_staff_session: str | None = Header(None),
) -> Principal:
    user_id: UUID | None = None
    if x_user_id:
        try:
            user_id = UUID(x_user_id)
        except ValueError:
            raise InvalidInputError("X-User-Id must be a UUID") from None
    return Principal(user_id=user_id, staff_session_token=x_staff_session or None)


# ---------------------------------------------------------------------------
# POST /api/agencies/{agency_id}/contacts/resolve
# ---------------------------------------------------------------------------


@router.post("/contacts/resolve", response_model=ApiResponse[ResolvedContact])
async def resolve_contact(
    agency_id: UUID,
    body: ResolveContactRequest,
    principal: Principal = Depends(get_principal),
    service: ContactsService = Depends(_get_service),
) -> ApiResponse[ResolvedContact]:
    """Return the canonical contact id for the given person fragments."""
    contact_id = await service.resolve(principal, agency_id, body.to_input())
    return ApiResponse[ResolvedContact](data=ResolvedContact(contact_id=contact_id))


@router.post("/contacts/ingest", response_model=ApiResponse[ResolvedContact])
async def ingest_contact(
    agency_id: UUID,
    body: IngestRequest,
    principal: Principal = Depends(get_principal),
    service: ContactsService = Depends(_get_service),
) -> ApiResponse[ResolvedContact]:
    """Resolve a raw form/upload row through its template's field mapping."""
    contact_id = await service.resolve_payload(
        principal, agency_id, body.template_id, body.payload
    )
    return ApiResponse[ResolvedContact](data=ResolvedContact(contact_id=contact_id))


# ---------------------------------------------------------------------------
# GET /api/agencies/{agency_id}/contacts
# ---------------------------------------------------------------------------


@router.get("/contacts", response_model=ContactListResponse)
async def list_contacts(
    agency_id: UUID,
    stage: str | None = Query(None, description="Lifecycle stage, or 'all'"),
    search: str | None = Query(None, description="Name, phone or email fragment"),
    sort_by: str = Query("name", description="name | last_activity | stage | assigned"),
    sort_dir: str = Query("asc", description="asc | desc"),
    cursor: str | None = Query(None, description="Opaque cursor from a previous page"),
    offset: int | None = Query(None, ge=0, description="Row offset (exclusive with cursor)"),
    limit: int | None = Query(None, ge=1, description="Page size"),
    principal: Principal = Depends(get_principal),
    service: ContactsService = Depends(_get_service),
) -> ContactListResponse:
    """Return one page of contacts with their derived lifecycle stage.

    Keyset pagination: pass the previous response's ``meta.next_cursor`` as
    ``cursor`` to fetch the next page.
    """
    page = await service.list_contacts(
        principal,
        agency_id,
        stage=stage,
        search=search,
        sort_by=sort_by,
        sort_dir=sort_dir,
        cursor=cursor,
        offset=offset,
        limit=limit,
    )
    effective_limit = clamp_limit(
        limit,
        default=service.config.query.default_limit,
        maximum=service.config.query.max_limit,
    )
    return page_response(page, limit=effective_limit, offset=offset)


# ---------------------------------------------------------------------------
# GET /api/agencies/{agency_id}/contacts/{contact_id}
# ---------------------------------------------------------------------------


@router.get("/contacts/{contact_id}", response_model=ApiResponse[ContactProfileModel])
async def get_contact(
    agency_id: UUID,
    contact_id: UUID,
    principal: Principal = Depends(get_principal),
    service: ContactsService = Depends(_get_service),
) -> ApiResponse[ContactProfileModel]:
    profile = await service.get_profile(principal, agency_id, contact_id)
    return ApiResponse[ContactProfileModel](data=ContactProfileModel.from_profile(profile))


# ---------------------------------------------------------------------------
# POST /api/agencies/{agency_id}/reconcile
# ---------------------------------------------------------------------------


@router.post("/reconcile", response_model=ApiResponse[dict])
async def reconcile_agency(
    agency_id: UUID,
    body: ReconcileRequest | None = None,
    principal: Principal = Depends(get_principal),
    service: ContactsService = Depends(_get_service),
) -> ApiResponse[dict]:
    """Run link, merge and key-repair jobs for the agency and return the report."""
    steps = tuple(body.steps) if body is not None and body.steps else None
    report = await service.reconcile(principal, agency_id, steps=steps)
    return ApiResponse[dict](data=report.to_dict())
