"""Tests for agency_contacts.stages — priority classification and SQL generation."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from agency_contacts.errors import ContactNotFoundError, InvalidInputError
from agency_contacts.stages import (
    FLAG_NAMES,
    STAGE_PRIORITY,
    LifecycleStage,
    ModuleFlags,
    check_predicate,
    classify_stage,
    fetch_module_flags,
    flag_sql,
    get_contact_stage,
    parse_stage,
    stage_case_sql,
    stage_rank_sql,
)

pytestmark = pytest.mark.unit

_AGENCY = uuid.uuid4()
_CONTACT = uuid.uuid4()


# ---------------------------------------------------------------------------
# classify_stage
# ---------------------------------------------------------------------------


class TestClassifyStage:
    def test_no_flags_is_open_lead(self):
        assert classify_stage(ModuleFlags()) is LifecycleStage.OPEN_LEAD

    def test_winback_beats_everything(self):
        flags = ModuleFlags(
            has_active_winback=True,
            is_customer=True,
            has_open_cancel_audit=True,
            has_open_renewal=True,
            has_open_quote=True,
        )
        assert classify_stage(flags) is LifecycleStage.WINBACK

    def test_customer_beats_cancel_audit(self):
        flags = ModuleFlags(is_customer=True, has_open_cancel_audit=True)
        assert classify_stage(flags) is LifecycleStage.CUSTOMER

    def test_cancel_audit_beats_renewal(self):
        flags = ModuleFlags(has_open_cancel_audit=True, has_open_renewal=True)
        assert classify_stage(flags) is LifecycleStage.CANCEL_AUDIT

    def test_renewal_beats_quote(self):
        flags = ModuleFlags(has_open_renewal=True, has_open_quote=True)
        assert classify_stage(flags) is LifecycleStage.RENEWAL

    def test_quote_only(self):
        assert classify_stage(ModuleFlags(has_open_quote=True)) is LifecycleStage.QUOTED

    def test_priority_table_order(self):
        assert [stage for stage, _ in STAGE_PRIORITY] == [
            LifecycleStage.WINBACK,
            LifecycleStage.CUSTOMER,
            LifecycleStage.CANCEL_AUDIT,
            LifecycleStage.RENEWAL,
            LifecycleStage.QUOTED,
            LifecycleStage.OPEN_LEAD,
        ]


class TestParseStage:
    @pytest.mark.parametrize("value", [None, "", "all", " ALL "])
    def test_no_filter(self, value):
        assert parse_stage(value) is None

    def test_known_stage(self):
        assert parse_stage("Cancel_Audit") is LifecycleStage.CANCEL_AUDIT

    def test_unknown_stage(self):
        with pytest.raises(InvalidInputError, match="Unknown lifecycle stage"):
            parse_stage("prospect")


# ---------------------------------------------------------------------------
# SQL generation
# ---------------------------------------------------------------------------


class TestStageSql:
    def test_case_branches_follow_priority(self):
        sql = stage_case_sql("c")
        positions = [sql.index(f"THEN '{stage.value}'") for stage, flag in STAGE_PRIORITY if flag]
        assert positions == sorted(positions)
        assert sql.endswith("ELSE 'open_lead' END")

    def test_customer_flag_covers_all_sources(self):
        sql = flag_sql("is_customer")
        for table in (
            "sales",
            "lqs_households",
            "renewal_records",
            "winback_households",
            "cancel_audit_records",
        ):
            assert f"FROM {table} m" in sql
        assert "m.status = 'won_back'" in sql

    def test_predicates_are_tenant_scoped(self):
        sql = flag_sql("has_open_renewal", "x")
        assert "m.contact_id = x.id" in sql
        assert "m.agency_id = x.agency_id" in sql

    def test_unknown_flag(self):
        with pytest.raises(KeyError):
            flag_sql("is_vip")

    def test_rank_sql(self):
        sql = stage_rank_sql("s.current_stage")
        assert sql.startswith("(CASE s.current_stage")
        assert "WHEN 'winback' THEN 0" in sql
        assert "WHEN 'open_lead' THEN 5" in sql


# ---------------------------------------------------------------------------
# DB-backed helpers (mocked pool)
# ---------------------------------------------------------------------------


class TestFetchModuleFlags:
    async def test_returns_flags(self):
        row = {flag: False for flag in FLAG_NAMES} | {"has_open_renewal": True}
        pool = AsyncMock()
        pool.fetchrow = AsyncMock(return_value=row)

        flags = await fetch_module_flags(pool, _AGENCY, _CONTACT)

        assert flags == ModuleFlags(has_open_renewal=True)
        args = pool.fetchrow.await_args.args
        assert args[1:] == (_CONTACT, _AGENCY)

    async def test_missing_contact(self):
        pool = AsyncMock()
        pool.fetchrow = AsyncMock(return_value=None)
        with pytest.raises(ContactNotFoundError):
            await fetch_module_flags(pool, _AGENCY, _CONTACT)

    async def test_get_contact_stage(self):
        row = {flag: False for flag in FLAG_NAMES} | {"has_open_quote": True}
        pool = AsyncMock()
        pool.fetchrow = AsyncMock(return_value=row)
        assert await get_contact_stage(pool, _AGENCY, _CONTACT) is LifecycleStage.QUOTED


class TestCheckPredicate:
    async def test_true(self):
        pool = AsyncMock()
        pool.fetchval = AsyncMock(return_value=True)
        assert await check_predicate(pool, _AGENCY, _CONTACT, "is_customer") is True

    async def test_unknown_contact_is_false(self):
        pool = AsyncMock()
        pool.fetchval = AsyncMock(return_value=None)
        assert await check_predicate(pool, _AGENCY, _CONTACT, "is_customer") is False

    async def test_unknown_flag(self):
        pool = AsyncMock()
        with pytest.raises(InvalidInputError):
            await check_predicate(pool, _AGENCY, _CONTACT, "is_vip")
        pool.fetchval.assert_not_awaited()
