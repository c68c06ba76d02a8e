"""Catalogue of the module tables that reference contacts.

Each upload stream (quotes, sales, renewals, cancellation audits, win-back
campaigns) owns its own table with its own column names for the person it
describes. :data:`MODULE_TABLES` maps those columns onto the resolver's
fields so that reconciliation jobs can treat the five tables uniformly, and
:data:`CONTACT_REFERENCES` enumerates every foreign key to
``agency_contacts`` that a merge must repoint.

Table and column names here are trusted constants; they are interpolated into
SQL and must never come from user input.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModuleTable:
    """Column mapping for one module table."""

    module: str
    table: str
    first_name_col: str
    last_name_col: str
    phone_col: str
    email_col: str
    zip_col: str | None = None
    street_col: str | None = None
    city_col: str | None = None
    state_col: str | None = None
    status_col: str | None = None
    assignee_col: str | None = None
    contact_col: str = "contact_id"

    def column_or_null(self, col: str | None, alias: str) -> str:
        if col is None:
            return f"NULL::text AS {alias}"
        return f"{col} AS {alias}"

    def person_select(self) -> str:
        """SELECT list exposing this table's person fields under resolver names."""
        return ", ".join(
            [
                "id",
                "agency_id",
                self.column_or_null(self.first_name_col, "first_name"),
                self.column_or_null(self.last_name_col, "last_name"),
                self.column_or_null(self.zip_col, "zip_code"),
                self.column_or_null(self.phone_col, "phone"),
                self.column_or_null(self.email_col, "email"),
                self.column_or_null(self.street_col, "street_address"),
                self.column_or_null(self.city_col, "city"),
                self.column_or_null(self.state_col, "state"),
            ]
        )

    def status_expr(self, alias: str = "m") -> str:
        if self.status_col is None:
            return f"'{self.module}'::text"
        return f"{alias}.{self.status_col}"


LQS = ModuleTable(
    module="lqs",
    table="lqs_households",
    first_name_col="first_name",
    last_name_col="last_name",
    phone_col="phone",
    email_col="email",
    zip_col="zip_code",
    status_col="status",
    assignee_col="team_member_id",
)

SALES = ModuleTable(
    module="sale",
    table="sales",
    first_name_col="customer_first_name",
    last_name_col="customer_last_name",
    phone_col="customer_phone",
    email_col="customer_email",
    zip_col="customer_zip",
    assignee_col="team_member_id",
)

RENEWALS = ModuleTable(
    module="renewal",
    table="renewal_records",
    first_name_col="first_name",
    last_name_col="last_name",
    phone_col="phone",
    email_col="email",
    status_col="current_status",
    assignee_col="assigned_team_member_id",
)

CANCEL_AUDITS = ModuleTable(
    module="cancel_audit",
    table="cancel_audit_records",
    first_name_col="insured_first_name",
    last_name_col="insured_last_name",
    phone_col="insured_phone",
    email_col="insured_email",
    status_col="status",
    assignee_col="assigned_team_member_id",
)

WINBACKS = ModuleTable(
    module="winback",
    table="winback_households",
    first_name_col="first_name",
    last_name_col="last_name",
    phone_col="phone",
    email_col="email",
    zip_col="zip_code",
    street_col="street_address",
    city_col="city",
    state_col="state",
    status_col="status",
    assignee_col="assigned_to",
)

MODULE_TABLES: tuple[ModuleTable, ...] = (LQS, SALES, RENEWALS, CANCEL_AUDITS, WINBACKS)


@dataclass(frozen=True)
class ContactReference:
    """A foreign-key column pointing at ``agency_contacts.id``."""

    table: str
    column: str = "contact_id"


CONTACT_REFERENCES: tuple[ContactReference, ...] = (
    *(ContactReference(m.table, m.contact_col) for m in MODULE_TABLES),
    ContactReference("contact_activities"),
)


def get_module(name: str) -> ModuleTable:
    """Look up a module table by module name or table name."""
    for module in MODULE_TABLES:
        if name in (module.module, module.table):
            return module
    raise KeyError(name)


__all__ = [
    "CANCEL_AUDITS",
    "CONTACT_REFERENCES",
    "LQS",
    "MODULE_TABLES",
    "RENEWALS",
    "SALES",
    "WINBACKS",
    "ContactReference",
    "ModuleTable",
    "get_module",
]
