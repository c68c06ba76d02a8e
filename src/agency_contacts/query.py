"""Contact list queries: stage filter, search, sorting and pagination.

The stage of each contact is computed in SQL from the same priority table the
Python classifier uses (see :mod:`agency_contacts.stages`). Ordering is always
``(sort value IS NULL), sort value <dir>, id ASC`` so NULLs sort last in both
directions and ties are broken deterministically, which keeps keyset cursors
stable across pages.
"""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from agency_contacts.core.telemetry import operation_span
from agency_contacts.errors import InvalidInputError
from agency_contacts.stages import LifecycleStage, parse_stage, stage_case_sql, stage_rank_sql

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
_MIN_SEARCH_DIGITS = 3


class SortKey(enum.StrEnum):
    NAME = "name"
    LAST_ACTIVITY = "last_activity"
    STAGE = "stage"
    ASSIGNED = "assigned"


class SortDirection(enum.StrEnum):
    ASC = "asc"
    DESC = "desc"


# SQL over the ``base`` CTE row, and the parameter type used for cursor values.
_SORT_EXPRESSIONS: dict[SortKey, tuple[str, str]] = {
    SortKey.NAME: (
        "lower(COALESCE(b.last_name, '')) || ' ' || lower(COALESCE(b.first_name, ''))",
        "text",
    ),
    SortKey.LAST_ACTIVITY: ("b.last_activity_at", "timestamptz"),
    SortKey.STAGE: (stage_rank_sql("b.current_stage"), "int"),
    SortKey.ASSIGNED: ("lower(b.assigned_staff_name)", "text"),
}

# Assigned staff: the first non-null of active win-back, active cancellation
# audit, active renewal, quote owner, latest sale.
_ASSIGNED_STAFF_SQL = """
    COALESCE(
        (SELECT tm.name FROM winback_households m JOIN team_members tm ON tm.id = m.assigned_to
         WHERE m.contact_id = c.id AND m.status IN ('untouched', 'in_progress')
         ORDER BY m.updated_at DESC LIMIT 1),
        (SELECT tm.name FROM cancel_audit_records m
         JOIN team_members tm ON tm.id = m.assigned_team_member_id
         WHERE m.contact_id = c.id AND m.is_active
         ORDER BY m.updated_at DESC LIMIT 1),
        (SELECT tm.name FROM renewal_records m
         JOIN team_members tm ON tm.id = m.assigned_team_member_id
         WHERE m.contact_id = c.id AND m.is_active
         ORDER BY m.updated_at DESC LIMIT 1),
        (SELECT tm.name FROM lqs_households m JOIN team_members tm ON tm.id = m.team_member_id
         WHERE m.contact_id = c.id
         ORDER BY m.updated_at DESC LIMIT 1),
        (SELECT tm.name FROM sales m JOIN team_members tm ON tm.id = m.team_member_id
         WHERE m.contact_id = c.id
         ORDER BY m.sale_date DESC NULLS LAST, m.created_at DESC LIMIT 1)
    )
"""


@dataclass(frozen=True)
class ContactSummary:
    """One row of a contact list."""

    id: UUID
    agency_id: UUID
    first_name: str | None
    last_name: str
    household_key: str
    zip_code: str | None
    phones: list[str]
    emails: list[str]
    current_stage: LifecycleStage
    last_activity_at: datetime | None = None
    last_activity_type: str | None = None
    assigned_staff_name: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> ContactSummary:
        return cls(
            id=row["id"],
            agency_id=row["agency_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            household_key=row["household_key"],
            zip_code=row["zip_code"],
            phones=list(row["phones"] or []),
            emails=list(row["emails"] or []),
            current_stage=LifecycleStage(row["current_stage"]),
            last_activity_at=row["last_activity_at"],
            last_activity_type=row["last_activity_type"],
            assigned_staff_name=row["assigned_staff_name"],
            street_address=row["street_address"],
            city=row["city"],
            state=row["state"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ContactPage:
    items: list[ContactSummary] = field(default_factory=list)
    total_count: int = 0
    next_cursor: str | None = None


@dataclass(frozen=True)
class SearchTerms:
    """A parsed search string.

    ``tokens`` must each appear in the first or last name; ``text`` is matched
    against phones and emails; ``digits`` against phones.
    """

    tokens: tuple[str, ...]
    text: str
    digits: str | None


def parse_search(search: str | None) -> SearchTerms | None:
    if search is None:
        return None
    text = search.strip().lower()
    if not text:
        return None
    digits = "".join(ch for ch in text if ch in "0123456789")
    return SearchTerms(
        tokens=tuple(text.split()),
        text=text,
        digits=digits if len(digits) >= _MIN_SEARCH_DIGITS else None,
    )


@dataclass(frozen=True)
class Cursor:
    """Keyset position: the sort value and id of the last row of a page."""

    sort_key: SortKey
    direction: SortDirection
    value: Any
    contact_id: UUID

    @property
    def is_null(self) -> bool:
        return self.value is None


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode_value(sort_key: SortKey, raw: Any) -> Any:
    if raw is None:
        return None
    sql_type = _SORT_EXPRESSIONS[sort_key][1]
    if sql_type == "timestamptz":
        return datetime.fromisoformat(raw)
    if sql_type == "int":
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError("expected integer sort value")
        return raw
    if not isinstance(raw, str):
        raise ValueError("expected text sort value")
    return raw


def encode_cursor(cursor: Cursor) -> str:
    payload = {
        "k": cursor.sort_key.value,
        "d": cursor.direction.value,
        "v": _encode_value(cursor.value),
        "id": str(cursor.contact_id),
    }
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_cursor(token: str) -> Cursor:
    """Decode an opaque cursor token, raising :class:`InvalidInputError` if malformed."""
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        sort_key = SortKey(payload["k"])
        return Cursor(
            sort_key=sort_key,
            direction=SortDirection(payload["d"]),
            value=_decode_value(sort_key, payload["v"]),
            contact_id=UUID(payload["id"]),
        )
    except (binascii.Error, KeyError, TypeError, ValueError) as exc:
        raise InvalidInputError("Invalid cursor") from exc


def _parse_sort(
    sort_by: SortKey | str, sort_dir: SortDirection | str
) -> tuple[SortKey, SortDirection]:
    try:
        key = SortKey(sort_by)
    except ValueError as exc:
        raise InvalidInputError(f"Unknown sort key: {sort_by!r}") from exc
    try:
        direction = SortDirection(str(sort_dir).lower())
    except ValueError as exc:
        raise InvalidInputError(f"Unknown sort direction: {sort_dir!r}") from exc
    return key, direction


def clamp_limit(
    limit: int | None, *, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT
) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def build_contacts_query(
    agency_id: UUID,
    *,
    stage: LifecycleStage | None,
    search: SearchTerms | None,
    sort_key: SortKey,
    direction: SortDirection,
    cursor: Cursor | None,
    offset: int,
    limit: int,
) -> tuple[str, list[Any]]:
    """Build the list query and its positional arguments.

    Fetches ``limit + 1`` rows so the caller can tell whether another page
    exists. The row set is wrapped around a count of the filtered set so an
    empty page still reports ``total_count``.
    """
    args: list[Any] = [agency_id]
    idx = 2
    base_conditions = ["c.agency_id = $1"]

    if search is not None:
        args.append(list(search.tokens))
        tokens_idx = idx
        args.append(search.text)
        text_idx = idx + 1
        idx += 2
        clauses = [
            f"(SELECT bool_and(strpos(lower(COALESCE(c.first_name, '')), t) > 0"
            f" OR strpos(lower(c.last_name), t) > 0) FROM unnest(${tokens_idx}::text[]) AS t)",
            f"EXISTS (SELECT 1 FROM unnest(c.phones) AS ph"
            f" WHERE strpos(lower(ph), ${text_idx}) > 0)",
            f"EXISTS (SELECT 1 FROM unnest(c.emails) AS em"
            f" WHERE strpos(lower(em), ${text_idx}) > 0)",
        ]
        if search.digits is not None:
            args.append(search.digits)
            clauses.append(
                f"EXISTS (SELECT 1 FROM unnest(c.phones) AS ph WHERE strpos(ph, ${idx}) > 0)"
            )
            idx += 1
        base_conditions.append("(" + " OR ".join(clauses) + ")")

    filtered_conditions = ["TRUE"]
    if stage is not None:
        args.append(stage.value)
        filtered_conditions.append(f"b.current_stage = ${idx}")
        idx += 1

    sort_expr, sort_type = _SORT_EXPRESSIONS[sort_key]
    order_dir = "ASC" if direction is SortDirection.ASC else "DESC"
    page_conditions = ["TRUE"]
    if cursor is not None:
        args.append(cursor.contact_id)
        id_idx = idx
        idx += 1
        if cursor.is_null:
            page_conditions.append(f"(f.sort_value IS NULL AND f.id > ${id_idx})")
        else:
            args.append(cursor.value)
            value_idx = idx
            idx += 1
            cmp = ">" if direction is SortDirection.ASC else "<"
            page_conditions.append(
                f"(f.sort_value IS NULL"
                f" OR f.sort_value {cmp} ${value_idx}::{sort_type}"
                f" OR (f.sort_value = ${value_idx}::{sort_type} AND f.id > ${id_idx}))"
            )

    args.append(limit + 1)
    limit_idx = idx
    args.append(offset)
    offset_idx = idx + 1

    order_by = "(f.sort_value IS NULL) ASC, f.sort_value {dir}, f.id ASC"
    sql = f"""
        WITH base AS (
            SELECT
                c.id, c.agency_id, c.first_name, c.last_name, c.household_key, c.zip_code,
                c.phones, c.emails, c.street_address, c.city, c.state,
                c.created_at, c.updated_at,
                {stage_case_sql("c")} AS current_stage,
                la.created_at AS last_activity_at,
                la.activity_type AS last_activity_type,
                {_ASSIGNED_STAFF_SQL} AS assigned_staff_name
            FROM agency_contacts c
            LEFT JOIN LATERAL (
                SELECT ca.created_at, ca.activity_type
                FROM contact_activities ca
                WHERE ca.contact_id = c.id
                ORDER BY ca.created_at DESC, ca.id DESC
                LIMIT 1
            ) la ON TRUE
            WHERE {" AND ".join(base_conditions)}
        ),
        filtered AS (
            SELECT b.*, {sort_expr} AS sort_value
            FROM base b
            WHERE {" AND ".join(filtered_conditions)}
        ),
        total AS (
            SELECT count(*) AS total_count FROM filtered
        )
        SELECT total.total_count, p.*
        FROM total
        LEFT JOIN LATERAL (
            SELECT f.* FROM filtered f
            WHERE {" AND ".join(page_conditions)}
            ORDER BY {order_by.format(dir=order_dir)}
            LIMIT ${limit_idx} OFFSET ${offset_idx}
        ) p ON TRUE
        ORDER BY {order_by.replace("f.", "p.").format(dir=order_dir)}
    """  # noqa: S608
    return sql, args


@operation_span("query.list_contacts_by_stage")
async def list_contacts_by_stage(
    pool: Any,
    agency_id: UUID,
    *,
    stage: LifecycleStage | str | None = None,
    search: str | None = None,
    sort_by: SortKey | str = SortKey.NAME,
    sort_dir: SortDirection | str = SortDirection.ASC,
    cursor: str | None = None,
    offset: int | None = None,
    limit: int | None = None,
    max_limit: int = MAX_LIMIT,
) -> ContactPage:
    """List an agency's contacts with their derived stage.

    Parameters
    ----------
    stage:
        Only contacts currently in this stage; ``None`` or ``"all"`` for every stage.
    search:
        Whitespace-separated tokens that must all appear in the first or last
        name, or a substring of any phone or email.
    sort_by, sort_dir:
        Sort key and direction. NULL sort values always come last.
    cursor:
        Opaque token from a previous page's ``next_cursor``. It must have been
        produced with the same sort key and direction.
    offset:
        Row offset; cannot be combined with *cursor*.
    limit:
        Page size, clamped to ``[1, max_limit]``.
    """
    sort_key, direction = _parse_sort(sort_by, sort_dir)
    stage_filter = parse_stage(stage)
    page_limit = clamp_limit(limit, default=min(DEFAULT_LIMIT, max_limit), maximum=max_limit)

    decoded: Cursor | None = None
    if cursor:
        if offset:
            raise InvalidInputError("cursor and offset cannot be combined")
        decoded = decode_cursor(cursor)
        if decoded.sort_key != sort_key or decoded.direction != direction:
            raise InvalidInputError("cursor was created for a different sort order")
    if offset is not None and offset < 0:
        raise InvalidInputError("offset must be >= 0")

    sql, args = build_contacts_query(
        agency_id,
        stage=stage_filter,
        search=parse_search(search),
        sort_key=sort_key,
        direction=direction,
        cursor=decoded,
        offset=offset or 0,
        limit=page_limit,
    )
    rows = await pool.fetch(sql, *args)

    total_count = int(rows[0]["total_count"]) if rows else 0
    page_rows = [row for row in rows if row["id"] is not None]
    has_more = len(page_rows) > page_limit
    page_rows = page_rows[:page_limit]

    next_cursor = None
    if has_more and page_rows:
        last = page_rows[-1]
        next_cursor = encode_cursor(
            Cursor(
                sort_key=sort_key,
                direction=direction,
                value=last["sort_value"],
                contact_id=last["id"],
            )
        )

    return ContactPage(
        items=[ContactSummary.from_row(row) for row in page_rows],
        total_count=total_count,
        next_cursor=next_cursor,
    )


__all__ = [
    "ContactPage",
    "ContactSummary",
    "Cursor",
    "SearchTerms",
    "SortDirection",
    "SortKey",
    "build_contacts_query",
    "clamp_limit",
    "decode_cursor",
    "encode_cursor",
    "list_contacts_by_stage",
    "parse_search",
]
