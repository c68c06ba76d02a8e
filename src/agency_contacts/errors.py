"""Exception hierarchy for the contacts core.

Every error raised by the resolver, reconciler, classifier and query layer
derives from :class:`ContactsError`. The API layer maps these to HTTP status
codes; batch jobs catch them per record and keep going.
"""

from __future__ import annotations

from uuid import UUID


class ContactsError(Exception):
    """Base class for all agency-contacts errors."""


class InvalidInputError(ContactsError, ValueError):
    """Raised when caller-supplied data cannot be used (empty last name, bad cursor...)."""


class AccessDeniedError(ContactsError, PermissionError):
    """Raised when the caller is not authorized for the requested agency."""

    def __init__(self, agency_id: UUID | str, reason: str = "not authorized") -> None:
        self.agency_id = agency_id
        self.reason = reason
        super().__init__(f"Access denied to agency {agency_id}: {reason}")


class MergeConflictError(ContactsError):
    """Raised when repointing a record during a merge would violate a unique constraint."""

    def __init__(self, table: str, record_id: UUID | str, detail: str = "") -> None:
        self.table = table
        self.record_id = record_id
        self.detail = detail
        message = f"Merge conflict repointing {table} record {record_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ContactNotFoundError(ContactsError, LookupError):
    """Raised when a contact does not exist in the requested agency."""

    def __init__(self, contact_id: UUID | str) -> None:
        self.contact_id = contact_id
        super().__init__(f"Contact not found: {contact_id}")


__all__ = [
    "AccessDeniedError",
    "ContactNotFoundError",
    "ContactsError",
    "InvalidInputError",
    "MergeConflictError",
]
