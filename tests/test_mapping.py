"""Tests for agency_contacts.mapping — versioned ingestion field mappings."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from agency_contacts.errors import InvalidInputError
from agency_contacts.mapping import (
    FieldMapping,
    extract_contact_input,
    load_field_mapping,
    save_field_mapping,
)

pytestmark = pytest.mark.unit

_AGENCY = uuid.uuid4()


class TestFieldMapping:
    def test_unknown_logical_field(self):
        with pytest.raises(InvalidInputError, match="premium"):
            FieldMapping("quotes", 1, {"premium": "Premium"})


class TestExtractContactInput:
    def test_maps_physical_keys(self):
        mapping = FieldMapping(
            "renewals_v2",
            2,
            {
                "first_name": "Insured First",
                "last_name": "Insured Last",
                "phone": "Phone #",
                "zip_code": "ZIP",
            },
        )
        payload = {
            "Insured First": " Jane ",
            "Insured Last": "Doe",
            "Phone #": "555.123.4567",
            "ZIP": 12345,
            "last_name": "ignored",
        }

        contact = extract_contact_input(payload, mapping)

        assert contact.first_name == "Jane"
        assert contact.last_name == "Doe"
        assert contact.phone == "555.123.4567"
        assert contact.zip_code == 12345
        assert contact.email is None

    def test_full_name_split(self):
        mapping = FieldMapping("sales", 1, {"full_name": "Customer Name"})
        contact = extract_contact_input({"Customer Name": "mary jane watson"}, mapping)
        assert contact.first_name == "Mary Jane"
        assert contact.last_name == "Watson"

    def test_explicit_last_name_wins_over_full_name(self):
        mapping = FieldMapping("sales", 1, {"full_name": "Name", "last_name": "Last"})
        contact = extract_contact_input({"Name": "Jane Roe", "Last": "Doe"}, mapping)
        assert contact.last_name == "Doe"
        assert contact.first_name is None

    def test_blank_values_become_none(self):
        mapping = FieldMapping("web", 1, {"last_name": "lname", "email": "mail"})
        contact = extract_contact_input({"lname": "   ", "mail": ""}, mapping)
        assert contact.last_name is None
        assert contact.email is None


class TestLoadSave:
    async def test_load_latest_version(self):
        pool = AsyncMock()
        pool.fetch = AsyncMock(
            return_value=[
                {"version": 3, "logical_field": "last_name", "physical_key": "Last"},
                {"version": 3, "logical_field": "phone", "physical_key": "Tel"},
            ]
        )
        mapping = await load_field_mapping(pool, _AGENCY, "quotes")
        assert mapping == FieldMapping("quotes", 3, {"last_name": "Last", "phone": "Tel"})

    async def test_load_missing(self):
        pool = AsyncMock()
        pool.fetch = AsyncMock(return_value=[])
        assert await load_field_mapping(pool, _AGENCY, "quotes") is None

    async def test_save_inserts_one_row_per_field(self):
        conn = AsyncMock()
        tx = MagicMock()
        tx.__aenter__ = AsyncMock(return_value=None)
        tx.__aexit__ = AsyncMock(return_value=False)
        conn.transaction = MagicMock(return_value=tx)
        acquire = MagicMock()
        acquire.__aenter__ = AsyncMock(return_value=conn)
        acquire.__aexit__ = AsyncMock(return_value=False)
        pool = MagicMock()
        pool.acquire = MagicMock(return_value=acquire)

        await save_field_mapping(
            pool, _AGENCY, FieldMapping("quotes", 4, {"last_name": "L", "email": "E"})
        )

        assert conn.execute.await_count == 2
        rows = {call.args[4]: call.args[5] for call in conn.execute.await_args_list}
        assert rows == {"last_name": "L", "email": "E"}
