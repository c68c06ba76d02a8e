"""Tenant authorization.

Deny by default: a caller may act on an agency only if it is an internal
job, an agency member, or holds an unexpired staff session for that agency.
:func:`authorize` runs before any read or write in the service layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from agency_contacts.errors import AccessDeniedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Who is calling.

    ``internal`` marks trusted in-process callers (CLI, scheduled batch jobs).
    """

    user_id: UUID | None = None
    staff_session_token: str | None = None
    internal: bool = False

    @classmethod
    def system(cls) -> Principal:
        return cls(internal=True)

    @property
    def is_anonymous(self) -> bool:
        return not self.internal and self.user_id is None and not self.staff_session_token


async def has_agency_access(pool: Any, user_id: UUID, agency_id: UUID) -> bool:
    row = await pool.fetchrow(
        "SELECT 1 FROM agency_members WHERE user_id = $1 AND agency_id = $2",
        user_id,
        agency_id,
    )
    return row is not None


async def verify_staff_session(pool: Any, token: str, agency_id: UUID) -> bool:
    """True when *token* is an unexpired, unrevoked staff session for *agency_id*."""
    row = await pool.fetchrow(
        """
        SELECT 1 FROM staff_sessions
        WHERE token = $1 AND agency_id = $2
          AND expires_at > now() AND revoked_at IS NULL
        """,
        token,
        agency_id,
    )
    return row is not None


async def authorize(pool: Any, principal: Principal, agency_id: UUID) -> None:
    """Raise :class:`AccessDeniedError` unless *principal* may act on *agency_id*."""
    if principal.internal:
        return
    if principal.user_id is not None and await has_agency_access(
        pool, principal.user_id, agency_id
    ):
        return
    if principal.staff_session_token and await verify_staff_session(
        pool, principal.staff_session_token, agency_id
    ):
        return
    reason = "no credentials" if principal.is_anonymous else "not authorized"
    logger.info("Access denied to agency %s: %s", agency_id, reason)
    raise AccessDeniedError(agency_id, reason)
