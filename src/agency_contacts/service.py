"""Authorized entry points for the HTTP API and the CLI.

Every method checks tenant access first and only then touches contact data.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from agency_contacts.authz import Principal, authorize
from agency_contacts.config import ContactsConfig
from agency_contacts.core.logging import set_agency_context
from agency_contacts.errors import AccessDeniedError, InvalidInputError
from agency_contacts.mapping import extract_contact_input, load_field_mapping
from agency_contacts.models import ContactInput
from agency_contacts.profile import ContactProfile, get_contact_profile
from agency_contacts.query import ContactPage, list_contacts_by_stage
from agency_contacts.reconcile import ReconcileReport, run_reconciliation
from agency_contacts.resolver import resolve_contact_input

logger = logging.getLogger(__name__)


class ContactsService:
    def __init__(self, pool: Any, config: ContactsConfig | None = None) -> None:
        self.pool = pool
        self.config = config or ContactsConfig()

    async def _authorize(self, principal: Principal, agency_id: UUID) -> None:
        await authorize(self.pool, principal, agency_id)
        set_agency_context(agency_id)

    async def resolve(
        self, principal: Principal, agency_id: UUID, contact: ContactInput
    ) -> UUID:
        await self._authorize(principal, agency_id)
        return await resolve_contact_input(self.pool, agency_id, contact)

    async def resolve_payload(
        self,
        principal: Principal,
        agency_id: UUID,
        template_id: str,
        payload: dict[str, Any],
    ) -> UUID:
        """Resolve a raw form/upload payload through the template's field mapping."""
        await self._authorize(principal, agency_id)
        mapping = await load_field_mapping(self.pool, agency_id, template_id)
        if mapping is None:
            raise InvalidInputError(f"No field mapping for template {template_id!r}")
        return await resolve_contact_input(
            self.pool, agency_id, extract_contact_input(payload, mapping)
        )

    async def list_contacts(
        self,
        principal: Principal,
        agency_id: UUID,
        *,
        stage: str | None = None,
        search: str | None = None,
        sort_by: str = "name",
        sort_dir: str = "asc",
        cursor: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> ContactPage:
        await self._authorize(principal, agency_id)
        return await list_contacts_by_stage(
            self.pool,
            agency_id,
            stage=stage,
            search=search,
            sort_by=sort_by,
            sort_dir=sort_dir,
            cursor=cursor,
            offset=offset,
            limit=limit if limit is not None else self.config.query.default_limit,
            max_limit=self.config.query.max_limit,
        )

    async def get_profile(
        self, principal: Principal, agency_id: UUID, contact_id: UUID
    ) -> ContactProfile:
        await self._authorize(principal, agency_id)
        return await get_contact_profile(self.pool, agency_id, contact_id)

    async def reconcile(
        self,
        principal: Principal,
        agency_id: UUID | None,
        *,
        steps: tuple[str, ...] | None = None,
    ) -> ReconcileReport:
        """Run reconciliation for one agency, or all agencies for internal callers."""
        if agency_id is None:
            if not principal.internal:
                raise AccessDeniedError("*", "all-agency reconciliation is internal only")
        else:
            await self._authorize(principal, agency_id)
        return await run_reconciliation(
            self.pool, agency_id, config=self.config.reconcile, steps=steps
        )
