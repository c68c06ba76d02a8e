"""Integration tests for batch reconciliation against a real PostgreSQL database."""

from __future__ import annotations

import shutil
import uuid

import pytest

from agency_contacts.config import ReconcileConfig
from agency_contacts.errors import ContactNotFoundError, InvalidInputError
from agency_contacts.reconcile import (
    fallback_link,
    link_backfill,
    merge_contacts,
    merge_households,
    renormalize_keys,
    run_reconciliation,
)
from agency_contacts.resolver import resolve_contact

# Skip all tests in this module if Docker is not available
docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


@pytest.fixture
async def pool(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as p:
        yield p


async def _insert_sale(pool, agency, *, first, last, zip_code=None, phone=None, contact_id=None):
    return await pool.fetchval(
        """
        INSERT INTO sales (agency_id, contact_id, customer_first_name, customer_last_name,
                           customer_zip, customer_phone)
        VALUES ($1, $2, $3, $4, $5, $6) RETURNING id
        """,
        agency,
        contact_id,
        first,
        last,
        zip_code,
        phone,
    )


async def _insert_renewal(pool, agency, *, contact_id, policy, last="Smith", first="John"):
    return await pool.fetchval(
        """
        INSERT INTO renewal_records (agency_id, contact_id, first_name, last_name, policy_number)
        VALUES ($1, $2, $3, $4, $5) RETURNING id
        """,
        agency,
        contact_id,
        first,
        last,
        policy,
    )


async def _contact_id_of(pool, table, record_id):
    sql = f"SELECT contact_id FROM {table} WHERE id = $1"  # noqa: S608
    return await pool.fetchval(sql, record_id)


# ---------------------------------------------------------------------------
# Link backfill
# ---------------------------------------------------------------------------


async def test_link_backfill_by_key_and_phone(pool):
    agency = uuid.uuid4()
    by_key = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="12345"
    )
    by_phone = await resolve_contact(
        pool, agency, last_name="Jones", first_name="Amy", phone="5559990000"
    )
    sale_key = await _insert_sale(pool, agency, first="JOHN", last="smith", zip_code="12345")
    sale_phone = await _insert_sale(
        pool, agency, first="A.", last="Jones-Smith", phone="555-999-0000"
    )
    sale_none = await _insert_sale(pool, agency, first="Zed", last="Nobody", zip_code="99999")

    report = await link_backfill(pool, agency)

    assert report.linked_by_key == 1
    assert report.linked_by_phone == 1
    assert await _contact_id_of(pool, "sales", sale_key) == by_key
    assert await _contact_id_of(pool, "sales", sale_phone) == by_phone
    assert await _contact_id_of(pool, "sales", sale_none) is None

    rerun = await link_backfill(pool, agency)
    assert rerun.linked == 0


async def test_link_backfill_is_tenant_scoped(pool):
    agency, other = uuid.uuid4(), uuid.uuid4()
    await resolve_contact(pool, other, last_name="Smith", first_name="John", zip_code="12345")
    sale = await _insert_sale(pool, agency, first="John", last="Smith", zip_code="12345")

    report = await link_backfill(pool, None)

    assert report.linked == 0
    assert await _contact_id_of(pool, "sales", sale) is None


async def test_fallback_link_picks_most_recent(pool):
    agency = uuid.uuid4()
    older = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="11111"
    )
    newer = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="22222"
    )
    await pool.execute(
        "UPDATE agency_contacts SET updated_at = now() - interval '1 day' WHERE id = $1", older
    )
    sale = await _insert_sale(pool, agency, first="John", last="Smith", zip_code="33333")

    report = await fallback_link(pool, agency)

    assert report.linked_by_name == 1
    assert await _contact_id_of(pool, "sales", sale) == newer


async def test_create_missing_contacts_step(pool):
    agency = uuid.uuid4()
    sale = await _insert_sale(pool, agency, first="New", last="Person", zip_code="40404")

    report = await run_reconciliation(
        pool,
        agency,
        config=ReconcileConfig(create_missing_contacts=True, fallback_name_match=False),
    )

    assert report.contacts_created == 1
    contact_id = await _contact_id_of(pool, "sales", sale)
    key = await pool.fetchval(
        "SELECT household_key FROM agency_contacts WHERE id = $1", contact_id
    )
    assert key == "PERSON_NEW_40404"


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


async def test_household_merge_moves_records_and_unions_fields(pool):
    agency = uuid.uuid4()
    target = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="12345", phone="5550000001"
    )
    source = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", phone="5550000002",
        email="john@example.com", city="Austin",
    )
    sale = await _insert_sale(pool, agency, first="John", last="Smith", contact_id=source)

    report = await merge_households(pool, agency)

    assert report.contacts_merged == 1
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts") == 1
    assert await _contact_id_of(pool, "sales", sale) == target
    row = await pool.fetchrow("SELECT * FROM agency_contacts WHERE id = $1", target)
    assert row["phones"] == ["5550000001", "5550000002"]
    assert row["emails"] == ["john@example.com"]
    assert row["city"] == "Austin"
    assert row["zip_code"] == "12345"


async def test_household_merge_skips_ambiguous(pool):
    agency = uuid.uuid4()
    await resolve_contact(pool, agency, last_name="Smith", first_name="John", zip_code="11111")
    await resolve_contact(pool, agency, last_name="Smith", first_name="John", zip_code="22222")
    await resolve_contact(pool, agency, last_name="Smith", first_name="John")

    report = await merge_households(pool, agency)

    assert report.contacts_merged == 0
    assert report.skipped_ambiguous == 1
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts") == 3


async def test_merge_conflict_is_reported_and_merge_completes(pool):
    agency = uuid.uuid4()
    target = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="12345"
    )
    source = await resolve_contact(pool, agency, last_name="Smith", first_name="John")
    kept = await _insert_renewal(pool, agency, contact_id=target, policy="P-1")
    clashing = await _insert_renewal(pool, agency, contact_id=source, policy="P-1")
    moved = await _insert_renewal(pool, agency, contact_id=source, policy="P-2")

    result = await merge_contacts(pool, source, target)

    assert result.merged
    assert result.repointed == 1
    assert [c.record_id for c in result.conflicts] == [clashing]
    assert result.conflicts[0].table == "renewal_records"
    assert await _contact_id_of(pool, "renewal_records", kept) == target
    assert await _contact_id_of(pool, "renewal_records", moved) == target
    assert await _contact_id_of(pool, "renewal_records", clashing) is None
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts WHERE id = $1", source) == 0


async def test_conflicting_record_is_not_a_failure_on_later_runs(pool):
    agency = uuid.uuid4()
    target = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="12345"
    )
    source = await resolve_contact(pool, agency, last_name="Smith", first_name="John")
    await _insert_renewal(pool, agency, contact_id=target, policy="P-1")
    clashing = await _insert_renewal(pool, agency, contact_id=source, policy="P-1")
    await merge_contacts(pool, source, target)

    for _ in range(2):
        report = await run_reconciliation(pool, agency)
        assert report.failures == []
        assert report.merge_conflicts == 1

    assert await _contact_id_of(pool, "renewal_records", clashing) is None
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts") == 1


async def test_merge_is_idempotent(pool):
    agency = uuid.uuid4()
    target = await resolve_contact(pool, agency, last_name="Doe", zip_code="12345")
    source = await resolve_contact(pool, agency, last_name="Doe")

    first = await merge_contacts(pool, source, target)
    second = await merge_contacts(pool, source, target)

    assert first.merged
    assert not second.merged
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts") == 1


async def test_merge_validation(pool):
    agency = uuid.uuid4()
    a = await resolve_contact(pool, agency, last_name="Doe")
    b = await resolve_contact(pool, uuid.uuid4(), last_name="Doe")

    with pytest.raises(InvalidInputError, match="different agencies"):
        await merge_contacts(pool, a, b)
    with pytest.raises(ContactNotFoundError):
        await merge_contacts(pool, a, uuid.uuid4())
    assert await pool.fetchval("SELECT count(*) FROM agency_contacts") == 2


# ---------------------------------------------------------------------------
# Key renormalization
# ---------------------------------------------------------------------------


async def test_renormalize_fixes_stale_key(pool):
    agency = uuid.uuid4()
    cid = await resolve_contact(pool, agency, last_name="Smith", first_name="John")
    await pool.execute("UPDATE agency_contacts SET zip_code = '12345' WHERE id = $1", cid)

    report = await renormalize_keys(pool, agency)

    assert report.keys_renormalized == 1
    key = await pool.fetchval("SELECT household_key FROM agency_contacts WHERE id = $1", cid)
    assert key == "SMITH_JOHN_12345"
    assert (await renormalize_keys(pool, agency)).keys_renormalized == 0


async def test_renormalize_collision_merges(pool):
    agency = uuid.uuid4()
    holder = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", zip_code="12345"
    )
    stale = await resolve_contact(
        pool, agency, last_name="Smith", first_name="John", phone="5551234567"
    )
    await pool.execute("UPDATE agency_contacts SET zip_code = '12345' WHERE id = $1", stale)
    sale = await _insert_sale(pool, agency, first="John", last="Smith", contact_id=stale)

    report = await renormalize_keys(pool, agency)

    assert report.contacts_merged == 1
    assert await _contact_id_of(pool, "sales", sale) == holder
    phones = await pool.fetchval("SELECT phones FROM agency_contacts WHERE id = $1", holder)
    assert phones == ["5551234567"]
