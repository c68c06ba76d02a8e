"""Batch reconciliation of module records and duplicate contacts.

Jobs (run in this order by :func:`run_reconciliation`):

- ``renormalize_keys`` — recompute stale household keys; a key that collides
  with another contact's key merges the two.
- ``link_backfill`` — link unlinked module records to the contact with the
  same phone (when exactly one holds it) or exactly the same household key.
- ``fallback_link`` — optional, lower-confidence pass matching first+last
  name only and picking the most recently updated contact.
- ``create_missing_contacts`` — optional, resolve still-unlinked records
  through the resolver and link the result.
- ``merge_households`` — merge placeholder-zip contacts into the single
  real-zip contact with the same name.

Every job is idempotent and re-runnable. Records are processed one at a time
and each one commits on its own; a failure is logged with its agency, table
and record id, recorded in the :class:`ReconcileReport`, and the batch moves on.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

import asyncpg

from agency_contacts.config import ReconcileConfig
from agency_contacts.core.telemetry import operation_span
from agency_contacts.errors import ContactNotFoundError, InvalidInputError, MergeConflictError
from agency_contacts.models import ContactInput
from agency_contacts.modules import CONTACT_REFERENCES, MODULE_TABLES, ModuleTable
from agency_contacts.normalize import (
    has_usable_last_name,
    household_key,
    name_key,
    normalize_phone,
)
from agency_contacts.resolver import find_contacts_by_phone, resolve_contact_input

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class ReconcileFailure:
    step: str
    agency_id: UUID | None
    table: str
    record_id: UUID | None
    error: str


@dataclass
class ReconcileReport:
    """Counters for one or more reconciliation jobs."""

    linked_by_phone: int = 0
    linked_by_key: int = 0
    linked_by_name: int = 0
    contacts_created: int = 0
    contacts_merged: int = 0
    keys_renormalized: int = 0
    skipped_ambiguous: int = 0
    merge_conflicts: int = 0
    failures: list[ReconcileFailure] = field(default_factory=list)

    @property
    def linked(self) -> int:
        return self.linked_by_phone + self.linked_by_key + self.linked_by_name

    def add(self, other: ReconcileReport) -> ReconcileReport:
        for name in (
            "linked_by_phone",
            "linked_by_key",
            "linked_by_name",
            "contacts_created",
            "contacts_merged",
            "keys_renormalized",
            "skipped_ambiguous",
            "merge_conflicts",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.failures.extend(other.failures)
        return self

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["linked"] = self.linked
        data["failures"] = [
            {
                "step": f.step,
                "agency_id": str(f.agency_id) if f.agency_id else None,
                "table": f.table,
                "record_id": str(f.record_id) if f.record_id else None,
                "error": f.error,
            }
            for f in self.failures
        ]
        return data


@dataclass
class MergeResult:
    source_id: UUID
    target_id: UUID
    merged: bool = False
    repointed: int = 0
    conflicts: list[MergeConflictError] = field(default_factory=list)


@dataclass
class RekeyResult:
    """Outcome of :func:`renormalize_contact_key`.

    ``rekeyed`` is true only when the stored key actually changed; ``merge`` is
    set when the contact collided with another key holder and was merged.
    """

    contact_id: UUID
    rekeyed: bool = False
    merge: MergeResult | None = None


def _record_failure(
    report: ReconcileReport,
    step: str,
    agency_id: UUID | None,
    table: str,
    record_id: UUID | None,
    exc: BaseException,
) -> None:
    logger.warning(
        "Reconcile %s failed: agency=%s table=%s record=%s error=%s",
        step,
        agency_id,
        table,
        record_id,
        exc,
    )
    report.failures.append(
        ReconcileFailure(
            step=step,
            agency_id=agency_id,
            table=table,
            record_id=record_id,
            error=str(exc),
        )
    )


async def _iter_unlinked(
    pool: Any,
    module: ModuleTable,
    agency_id: UUID | None,
    batch_size: int,
) -> AsyncIterator[Any]:
    """Yield unlinked records of *module* with a last name, in id order, batch by batch."""
    last_id: UUID | None = None
    while True:
        rows = await pool.fetch(
            f"""
            SELECT {module.person_select()}
            FROM {module.table}
            WHERE {module.contact_col} IS NULL
              AND {module.last_name_col} IS NOT NULL
              AND ($1::uuid IS NULL OR agency_id = $1)
              AND ($2::uuid IS NULL OR id > $2)
            ORDER BY id
            LIMIT $3
            """,  # noqa: S608
            agency_id,
            last_id,
            batch_size,
        )
        if not rows:
            return
        for row in rows:
            yield row
        last_id = rows[-1]["id"]


async def _link_record(
    pool: Any,
    module: ModuleTable,
    record_id: UUID,
    contact_id: UUID,
    report: ReconcileReport,
) -> bool:
    """Set the record's contact reference if it is still unlinked.

    A link that would break a per-contact uniqueness constraint (the record
    clashes with one the contact already owns) is counted as a merge conflict
    and the record stays unlinked.
    """
    try:
        result = await pool.execute(
            f"UPDATE {module.table} SET {module.contact_col} = $1 "  # noqa: S608
            f"WHERE id = $2 AND {module.contact_col} IS NULL",
            contact_id,
            record_id,
        )
    except asyncpg.UniqueViolationError as exc:
        logger.warning(
            "Link conflict: table=%s record=%s contact=%s error=%s",
            module.table,
            record_id,
            contact_id,
            exc,
        )
        report.merge_conflicts += 1
        return False
    return result.endswith(" 1")


# ---------------------------------------------------------------------------
# Link backfill
# ---------------------------------------------------------------------------


@operation_span("reconcile.link_backfill")
async def link_backfill(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ReconcileReport:
    """Link unlinked module records by unique phone, then by exact household key."""
    report = ReconcileReport()
    for module in MODULE_TABLES:
        async for row in _iter_unlinked(pool, module, agency_id, batch_size):
            if not has_usable_last_name(row["last_name"]):
                continue
            try:
                await _link_one_exact(pool, module, row, report)
            except Exception as exc:
                _record_failure(
                    report, "link_backfill", row["agency_id"], module.table, row["id"], exc
                )
    logger.info(
        "Link backfill: %d by phone, %d by key (agency=%s)",
        report.linked_by_phone,
        report.linked_by_key,
        agency_id,
    )
    return report


async def _link_one_exact(
    pool: Any, module: ModuleTable, row: Any, report: ReconcileReport
) -> None:
    phone = normalize_phone(row["phone"])
    if phone is not None:
        matches = await find_contacts_by_phone(pool, row["agency_id"], phone)
        if len(matches) == 1:
            if await _link_record(pool, module, row["id"], matches[0], report):
                report.linked_by_phone += 1
            return

    key = household_key(row["first_name"], row["last_name"], row["zip_code"])
    contact_id = await pool.fetchval(
        "SELECT id FROM agency_contacts WHERE agency_id = $1 AND household_key = $2",
        row["agency_id"],
        key,
    )
    if contact_id is None:
        return
    if await _link_record(pool, module, row["id"], contact_id, report):
        report.linked_by_key += 1


# ---------------------------------------------------------------------------
# Fallback name match
# ---------------------------------------------------------------------------


async def _find_contacts_by_name_key(
    pool: Any,
    agency_id: UUID,
    key: str,
    *,
    exclude_id: UUID | None = None,
    real_zip_only: bool = False,
    limit: int | None = None,
) -> list[UUID]:
    """Contacts whose household key starts with ``LAST_FIRST_``, newest first."""
    conditions = [
        "agency_id = $1",
        "left(household_key, length($2::text) + 1) = $2::text || '_'",
        "($3::uuid IS NULL OR id <> $3)",
    ]
    if real_zip_only:
        conditions.append("zip_code IS NOT NULL AND zip_code NOT IN ('', '00000')")
    sql = (
        "SELECT id FROM agency_contacts WHERE "  # noqa: S608
        + " AND ".join(conditions)
        + " ORDER BY updated_at DESC, id"
    )
    args: list[Any] = [agency_id, key, exclude_id]
    if limit is not None:
        sql += " LIMIT $4"
        args.append(limit)
    rows = await pool.fetch(sql, *args)
    return [row["id"] for row in rows]


@operation_span("reconcile.fallback_link")
async def fallback_link(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ReconcileReport:
    """Link still-unlinked records by first+last name, ignoring zip.

    This is a heuristic: when several contacts share the name, the most
    recently updated one wins.
    """
    report = ReconcileReport()
    for module in MODULE_TABLES:
        async for row in _iter_unlinked(pool, module, agency_id, batch_size):
            if not has_usable_last_name(row["last_name"]):
                continue
            try:
                candidates = await _find_contacts_by_name_key(
                    pool,
                    row["agency_id"],
                    name_key(row["first_name"], row["last_name"]),
                    limit=1,
                )
                if candidates and await _link_record(
                    pool, module, row["id"], candidates[0], report
                ):
                    report.linked_by_name += 1
            except Exception as exc:
                _record_failure(
                    report, "fallback_link", row["agency_id"], module.table, row["id"], exc
                )
    logger.info("Fallback name link: %d linked (agency=%s)", report.linked_by_name, agency_id)
    return report


# ---------------------------------------------------------------------------
# Create missing contacts
# ---------------------------------------------------------------------------


@operation_span("reconcile.create_missing_contacts")
async def create_missing_contacts(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ReconcileReport:
    """Resolve every still-unlinked record through the resolver and link it."""
    report = ReconcileReport()
    for module in MODULE_TABLES:
        async for row in _iter_unlinked(pool, module, agency_id, batch_size):
            if not has_usable_last_name(row["last_name"]):
                continue
            try:
                contact_id = await resolve_contact_input(
                    pool,
                    row["agency_id"],
                    ContactInput(
                        last_name=row["last_name"],
                        first_name=row["first_name"],
                        zip_code=row["zip_code"],
                        phone=row["phone"],
                        email=row["email"],
                        street_address=row["street_address"],
                        city=row["city"],
                        state=row["state"],
                    ),
                )
                if await _link_record(pool, module, row["id"], contact_id, report):
                    report.contacts_created += 1
            except Exception as exc:
                _record_failure(
                    report,
                    "create_missing_contacts",
                    row["agency_id"],
                    module.table,
                    row["id"],
                    exc,
                )
    logger.info(
        "Create missing contacts: %d records linked (agency=%s)",
        report.contacts_created,
        agency_id,
    )
    return report


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


async def _try_rekey(conn: Any, contact_id: UUID) -> tuple[bool, UUID | None]:
    """Bring the contact's household key in line with its current fields.

    Returns ``(updated, holder)``: whether the stored key was changed, and the
    id of another contact already holding the target key (a collision the
    caller must merge).
    """
    row = await conn.fetchrow(
        """
        SELECT id, agency_id, first_name, last_name, zip_code, household_key
        FROM agency_contacts WHERE id = $1
        """,
        contact_id,
    )
    if row is None:
        return False, None
    new_key = household_key(row["first_name"], row["last_name"], row["zip_code"])
    if new_key == row["household_key"]:
        return False, None
    holder = await conn.fetchval(
        "SELECT id FROM agency_contacts WHERE agency_id = $1 AND household_key = $2 AND id <> $3",
        row["agency_id"],
        new_key,
        contact_id,
    )
    if holder is not None:
        return False, holder
    try:
        async with conn.transaction():
            await conn.execute(
                "UPDATE agency_contacts SET household_key = $2, updated_at = now() WHERE id = $1",
                contact_id,
                new_key,
            )
    except asyncpg.UniqueViolationError:
        holder = await conn.fetchval(
            "SELECT id FROM agency_contacts WHERE agency_id = $1 AND household_key = $2",
            row["agency_id"],
            new_key,
        )
        return False, holder
    return True, None


async def merge_contacts(pool: Any, source_id: UUID, target_id: UUID) -> MergeResult:
    """Merge contact *source_id* into *target_id* and delete the source.

    Inside one transaction: both rows are locked, every reference enumerated
    in :data:`CONTACT_REFERENCES` is repointed record by record (each in its
    own savepoint), the target's empty fields are filled from the source,
    phones and emails are unioned, and the source row is deleted.

    A record whose repoint violates a uniqueness constraint is skipped and
    reported as a :class:`MergeConflictError` in the result; the merge goes on.

    Merging a source that no longer exists is a no-op, so re-running a merge
    is harmless.

    Raises
    ------
    InvalidInputError
        When source and target are the same contact or in different agencies.
    ContactNotFoundError
        When the target does not exist.
    """
    if source_id == target_id:
        raise InvalidInputError("Cannot merge a contact into itself")

    result = MergeResult(source_id=source_id, target_id=target_id)
    async with pool.acquire() as conn:
        async with conn.transaction():
            rows = await conn.fetch(
                """
                SELECT id, agency_id FROM agency_contacts
                WHERE id = ANY($1::uuid[])
                ORDER BY id
                FOR UPDATE
                """,
                [source_id, target_id],
            )
            by_id = {row["id"]: row for row in rows}
            source = by_id.get(source_id)
            target = by_id.get(target_id)
            if source is None:
                logger.debug("Merge %s -> %s: source already gone", source_id, target_id)
                return result
            if target is None:
                raise ContactNotFoundError(target_id)
            if source["agency_id"] != target["agency_id"]:
                raise InvalidInputError("Cannot merge contacts from different agencies")

            with operation_span("reconcile.merge_contacts", agency_id=source["agency_id"]):
                for ref in CONTACT_REFERENCES:
                    records = await conn.fetch(
                        f"SELECT id FROM {ref.table} "  # noqa: S608
                        f"WHERE {ref.column} = $1 ORDER BY id",
                        source_id,
                    )
                    for record in records:
                        try:
                            async with conn.transaction():
                                await conn.execute(
                                    f"UPDATE {ref.table} "  # noqa: S608
                                    f"SET {ref.column} = $1 WHERE id = $2",
                                    target_id,
                                    record["id"],
                                )
                            result.repointed += 1
                        except asyncpg.UniqueViolationError as exc:
                            conflict = MergeConflictError(ref.table, record["id"], str(exc))
                            logger.warning(
                                "Merge conflict: agency=%s table=%s record=%s source=%s target=%s",
                                source["agency_id"],
                                ref.table,
                                record["id"],
                                source_id,
                                target_id,
                            )
                            result.conflicts.append(conflict)

                await conn.execute(
                    """
                    UPDATE agency_contacts t SET
                        first_name = COALESCE(t.first_name, s.first_name),
                        zip_code = COALESCE(NULLIF(NULLIF(t.zip_code, ''), '00000'), s.zip_code),
                        street_address = COALESCE(t.street_address, s.street_address),
                        city = COALESCE(t.city, s.city),
                        state = COALESCE(t.state, s.state),
                        phones = t.phones || ARRAY(
                            SELECT p FROM unnest(s.phones) WITH ORDINALITY AS u(p, n)
                            WHERE NOT (p = ANY(t.phones))
                            ORDER BY n
                        ),
                        emails = t.emails || ARRAY(
                            SELECT e FROM unnest(s.emails) WITH ORDINALITY AS u(e, n)
                            WHERE NOT (e = ANY(t.emails))
                            ORDER BY n
                        ),
                        updated_at = now()
                    FROM agency_contacts s
                    WHERE t.id = $1 AND s.id = $2
                    """,
                    target_id,
                    source_id,
                )
                await conn.execute("DELETE FROM agency_contacts WHERE id = $1", source_id)
                _, collision = await _try_rekey(conn, target_id)
                if collision is not None:
                    logger.info(
                        "Merged contact %s now shares a household key with %s; "
                        "left for key renormalization",
                        target_id,
                        collision,
                    )
            result.merged = True

    logger.info(
        "Merged contact %s into %s (%d references repointed, %d conflicts)",
        source_id,
        target_id,
        result.repointed,
        len(result.conflicts),
    )
    return result


def _apply_merge(report: ReconcileReport, merge: MergeResult) -> None:
    if merge.merged:
        report.contacts_merged += 1
    report.merge_conflicts += len(merge.conflicts)


@operation_span("reconcile.merge_households")
async def merge_households(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ReconcileReport:
    """Merge placeholder-zip contacts into their unique real-zip namesake.

    When the name matches more than one contact with a real zip the pair is
    ambiguous and left alone.
    """
    report = ReconcileReport()
    last_id: UUID | None = None
    while True:
        rows = await pool.fetch(
            """
            SELECT id, agency_id, first_name, last_name
            FROM agency_contacts
            WHERE (zip_code IS NULL OR zip_code IN ('', '00000'))
              AND ($1::uuid IS NULL OR agency_id = $1)
              AND ($2::uuid IS NULL OR id > $2)
            ORDER BY id
            LIMIT $3
            """,
            agency_id,
            last_id,
            batch_size,
        )
        if not rows:
            break
        last_id = rows[-1]["id"]
        for row in rows:
            try:
                targets = await _find_contacts_by_name_key(
                    pool,
                    row["agency_id"],
                    name_key(row["first_name"], row["last_name"]),
                    exclude_id=row["id"],
                    real_zip_only=True,
                    limit=2,
                )
                if len(targets) > 1:
                    report.skipped_ambiguous += 1
                    logger.info(
                        "Household merge skipped for contact %s: several real-zip matches",
                        row["id"],
                    )
                    continue
                if targets:
                    _apply_merge(report, await merge_contacts(pool, row["id"], targets[0]))
            except Exception as exc:
                _record_failure(
                    report, "merge_households", row["agency_id"], "agency_contacts", row["id"], exc
                )
    logger.info(
        "Household merge: %d merged, %d ambiguous (agency=%s)",
        report.contacts_merged,
        report.skipped_ambiguous,
        agency_id,
    )
    return report


# ---------------------------------------------------------------------------
# Key renormalization
# ---------------------------------------------------------------------------


async def renormalize_contact_key(pool: Any, contact_id: UUID) -> RekeyResult:
    """Recompute one contact's household key, merging it on collision."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            updated, holder = await _try_rekey(conn, contact_id)
    if holder is None:
        return RekeyResult(contact_id=contact_id, rekeyed=updated)
    merge = await merge_contacts(pool, contact_id, holder)
    return RekeyResult(contact_id=contact_id, merge=merge)


@operation_span("reconcile.renormalize_keys")
async def renormalize_keys(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ReconcileReport:
    """Recompute every stale household key in the agency (or all agencies)."""
    report = ReconcileReport()
    last_id: UUID | None = None
    while True:
        rows = await pool.fetch(
            """
            SELECT id, agency_id, first_name, last_name, zip_code, household_key
            FROM agency_contacts
            WHERE ($1::uuid IS NULL OR agency_id = $1)
              AND ($2::uuid IS NULL OR id > $2)
            ORDER BY id
            LIMIT $3
            """,
            agency_id,
            last_id,
            batch_size,
        )
        if not rows:
            break
        last_id = rows[-1]["id"]
        for row in rows:
            expected = household_key(row["first_name"], row["last_name"], row["zip_code"])
            if expected == row["household_key"]:
                continue
            try:
                rekey = await renormalize_contact_key(pool, row["id"])
                if rekey.rekeyed:
                    report.keys_renormalized += 1
                if rekey.merge is not None:
                    _apply_merge(report, rekey.merge)
            except Exception as exc:
                _record_failure(
                    report, "renormalize_keys", row["agency_id"], "agency_contacts", row["id"], exc
                )
    logger.info(
        "Key renormalization: %d rekeyed, %d merged (agency=%s)",
        report.keys_renormalized,
        report.contacts_merged,
        agency_id,
    )
    return report


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

RECONCILE_STEPS = ("rekey", "link", "fallback", "create", "merge")


async def run_reconciliation(
    pool: Any,
    agency_id: UUID | None = None,
    *,
    config: ReconcileConfig | None = None,
    steps: tuple[str, ...] | None = None,
) -> ReconcileReport:
    """Run the reconciliation jobs in order and return the combined report.

    ``steps`` restricts the run to a subset of :data:`RECONCILE_STEPS`. The
    ``fallback`` and ``create`` steps also require their config switches.
    """
    config = config or ReconcileConfig()
    selected = set(steps or RECONCILE_STEPS)
    unknown = selected - set(RECONCILE_STEPS)
    if unknown:
        raise InvalidInputError(f"Unknown reconcile step(s): {', '.join(sorted(unknown))}")

    batch_size = config.batch_size
    report = ReconcileReport()
    if "rekey" in selected:
        report.add(await renormalize_keys(pool, agency_id, batch_size=batch_size))
    if "link" in selected:
        report.add(await link_backfill(pool, agency_id, batch_size=batch_size))
    if "fallback" in selected and config.fallback_name_match:
        report.add(await fallback_link(pool, agency_id, batch_size=batch_size))
    if "create" in selected and config.create_missing_contacts:
        report.add(await create_missing_contacts(pool, agency_id, batch_size=batch_size))
    if "merge" in selected:
        report.add(await merge_households(pool, agency_id, batch_size=batch_size))
    logger.info(
        "Reconciliation finished (agency=%s): linked=%d created=%d merged=%d failures=%d",
        agency_id,
        report.linked,
        report.contacts_created,
        report.contacts_merged,
        len(report.failures),
    )
    return report


__all__ = [
    "RECONCILE_STEPS",
    "MergeResult",
    "RekeyResult",
    "ReconcileFailure",
    "ReconcileReport",
    "create_missing_contacts",
    "fallback_link",
    "link_backfill",
    "merge_contacts",
    "merge_households",
    "renormalize_contact_key",
    "renormalize_keys",
    "run_reconciliation",
]
