"""Lifecycle stage classification.

A contact's stage is never stored. It is derived on read from the records the
five module tables hold for that contact:

    winback > customer > cancel_audit > renewal > quoted > open_lead

Each stage except ``open_lead`` is gated by one boolean flag, and each flag is
the OR of plain existence checks against individual module tables
(:data:`MODULE_PREDICATES`). :data:`STAGE_PRIORITY` is the single ordered
table consumed both by :func:`classify_stage` (Python) and by
:func:`stage_case_sql` (the SQL ``CASE`` used by the query layer), so the two
cannot drift apart.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from agency_contacts.errors import ContactNotFoundError, InvalidInputError
from agency_contacts.modules import CANCEL_AUDITS, LQS, RENEWALS, SALES, WINBACKS, ModuleTable


class LifecycleStage(enum.StrEnum):
    WINBACK = "winback"
    CUSTOMER = "customer"
    CANCEL_AUDIT = "cancel_audit"
    RENEWAL = "renewal"
    QUOTED = "quoted"
    OPEN_LEAD = "open_lead"


@dataclass(frozen=True)
class ModuleFlags:
    has_active_winback: bool = False
    is_customer: bool = False
    has_open_cancel_audit: bool = False
    has_open_renewal: bool = False
    has_open_quote: bool = False


STAGE_PRIORITY: tuple[tuple[LifecycleStage, str | None], ...] = (
    (LifecycleStage.WINBACK, "has_active_winback"),
    (LifecycleStage.CUSTOMER, "is_customer"),
    (LifecycleStage.CANCEL_AUDIT, "has_open_cancel_audit"),
    (LifecycleStage.RENEWAL, "has_open_renewal"),
    (LifecycleStage.QUOTED, "has_open_quote"),
    (LifecycleStage.OPEN_LEAD, None),
)

STAGE_RANK: dict[LifecycleStage, int] = {
    stage: rank for rank, (stage, _flag) in enumerate(STAGE_PRIORITY)
}


@dataclass(frozen=True)
class ModulePredicate:
    """One existence check: *flag* holds if *module* has a row matching *condition*.

    ``condition`` is SQL over the module row aliased as ``m``.
    """

    flag: str
    module: ModuleTable
    condition: str = "TRUE"

    def exists_sql(self, contact_alias: str = "c") -> str:
        return (
            f"EXISTS (SELECT 1 FROM {self.module.table} m "
            f"WHERE m.{self.module.contact_col} = {contact_alias}.id "
            f"AND m.agency_id = {contact_alias}.agency_id AND ({self.condition}))"
        )


_CANCEL_SAVED = "m.is_active AND lower(COALESCE(m.cancel_status, '')) = 'saved'"

MODULE_PREDICATES: tuple[ModulePredicate, ...] = (
    ModulePredicate("has_active_winback", WINBACKS, "m.status IN ('untouched', 'in_progress')"),
    ModulePredicate("is_customer", SALES),
    ModulePredicate("is_customer", LQS, "m.status = 'sold'"),
    ModulePredicate("is_customer", RENEWALS, "m.current_status = 'success'"),
    ModulePredicate("is_customer", WINBACKS, "m.status = 'won_back'"),
    ModulePredicate("is_customer", CANCEL_AUDITS, _CANCEL_SAVED),
    ModulePredicate(
        "has_open_cancel_audit",
        CANCEL_AUDITS,
        "m.is_active AND m.status IN ('new', 'in_progress') "
        "AND lower(COALESCE(m.cancel_status, '')) <> 'saved'",
    ),
    ModulePredicate(
        "has_open_renewal",
        RENEWALS,
        "m.is_active AND m.current_status IN ('uncontacted', 'pending')",
    ),
    ModulePredicate("has_open_quote", LQS, "m.status = 'quoted'"),
    ModulePredicate("has_open_quote", WINBACKS, "m.status = 'moved_to_quoted'"),
)

FLAG_NAMES: tuple[str, ...] = tuple(flag for _stage, flag in STAGE_PRIORITY if flag is not None)


def classify_stage(flags: ModuleFlags) -> LifecycleStage:
    """Return the highest-priority stage whose flag is set (``open_lead`` otherwise)."""
    for stage, flag in STAGE_PRIORITY:
        if flag is None or getattr(flags, flag):
            return stage
    return LifecycleStage.OPEN_LEAD


def parse_stage(value: str | LifecycleStage | None) -> LifecycleStage | None:
    """Parse a stage filter; ``None``, ``""`` and ``"all"`` mean no filter."""
    if value is None or isinstance(value, LifecycleStage):
        return value
    normalized = value.strip().lower()
    if normalized in ("", "all"):
        return None
    try:
        return LifecycleStage(normalized)
    except ValueError as exc:
        raise InvalidInputError(f"Unknown lifecycle stage: {value!r}") from exc


def flag_sql(flag: str, contact_alias: str = "c") -> str:
    """SQL boolean expression for one :class:`ModuleFlags` field."""
    clauses = [p.exists_sql(contact_alias) for p in MODULE_PREDICATES if p.flag == flag]
    if not clauses:
        raise KeyError(flag)
    return "(" + " OR ".join(clauses) + ")"


def stage_case_sql(contact_alias: str = "c") -> str:
    """SQL ``CASE`` expression yielding the stage value for the aliased contact row."""
    branches = []
    fallback = LifecycleStage.OPEN_LEAD
    for stage, flag in STAGE_PRIORITY:
        if flag is None:
            fallback = stage
            continue
        branches.append(f"WHEN {flag_sql(flag, contact_alias)} THEN '{stage.value}'")
    return "CASE " + " ".join(branches) + f" ELSE '{fallback.value}' END"


def stage_rank_sql(stage_expr: str) -> str:
    """SQL ``CASE`` mapping a stage value expression to its priority rank."""
    branches = " ".join(
        f"WHEN '{stage.value}' THEN {rank}" for stage, rank in STAGE_RANK.items()
    )
    return f"(CASE {stage_expr} {branches} END)"


async def fetch_module_flags(pool: Any, agency_id: UUID, contact_id: UUID) -> ModuleFlags:
    """Evaluate every module predicate for one contact.

    Raises :class:`ContactNotFoundError` when the contact is not in the agency.
    """
    columns = ", ".join(f"{flag_sql(flag)} AS {flag}" for flag in FLAG_NAMES)
    row = await pool.fetchrow(
        f"SELECT {columns} FROM agency_contacts c "  # noqa: S608
        "WHERE c.id = $1 AND c.agency_id = $2",
        contact_id,
        agency_id,
    )
    if row is None:
        raise ContactNotFoundError(contact_id)
    return ModuleFlags(**{flag: bool(row[flag]) for flag in FLAG_NAMES})


async def check_predicate(pool: Any, agency_id: UUID, contact_id: UUID, flag: str) -> bool:
    """Evaluate a single module flag for ``(agency_id, contact_id)``.

    An unknown contact evaluates to ``False``.
    """
    if flag not in FLAG_NAMES:
        raise InvalidInputError(f"Unknown module flag: {flag!r}")
    value = await pool.fetchval(
        f"SELECT {flag_sql(flag)} FROM agency_contacts c "  # noqa: S608
        "WHERE c.id = $1 AND c.agency_id = $2",
        contact_id,
        agency_id,
    )
    return bool(value)


async def get_contact_stage(pool: Any, agency_id: UUID, contact_id: UUID) -> LifecycleStage:
    return classify_stage(await fetch_module_flags(pool, agency_id, contact_id))


__all__ = [
    "FLAG_NAMES",
    "MODULE_PREDICATES",
    "STAGE_PRIORITY",
    "STAGE_RANK",
    "LifecycleStage",
    "ModuleFlags",
    "ModulePredicate",
    "check_predicate",
    "classify_stage",
    "fetch_module_flags",
    "flag_sql",
    "get_contact_stage",
    "parse_stage",
    "stage_case_sql",
    "stage_rank_sql",
]
