"""Tests for the CLI commands."""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from click.testing import CliRunner

from agency_contacts.cli import cli
from agency_contacts.reconcile import ReconcileFailure, ReconcileReport

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    with patch("agency_contacts.cli.configure_logging"):
        yield


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestHelpers:
    def test_normalize_phone(self, runner):
        result = runner.invoke(cli, ["normalize-phone", "+1 (555) 123-4567"])
        assert result.exit_code == 0
        assert result.output.strip() == "5551234567"

    def test_normalize_phone_unusable(self, runner):
        result = runner.invoke(cli, ["normalize-phone", "N/A"])
        assert result.exit_code == 1
        assert "no usable phone" in result.output

    def test_household_key(self, runner):
        result = runner.invoke(cli, ["household-key", "Mary-Jane", "O'Brien", "90210-1234"])
        assert result.exit_code == 0
        assert result.output.strip() == "OBRIEN_MARYJANE_90210"

    def test_household_key_without_zip(self, runner):
        result = runner.invoke(cli, ["household-key", "", "Smith"])
        assert result.output.strip() == "SMITH_UNKNOWN_00000"


class TestReconcile:
    def test_prints_summary(self, runner):
        report = ReconcileReport(linked_by_phone=3, linked_by_key=2, contacts_merged=1)
        agency_id = uuid4()
        with patch("agency_contacts.cli._reconcile", AsyncMock(return_value=report)) as run:
            result = runner.invoke(
                cli, ["reconcile", "--agency", str(agency_id), "--step", "link"]
            )

        assert result.exit_code == 0, result.output
        assert "Linked:            5" in result.output
        assert "Contacts merged:   1" in result.output
        _config, called_agency, steps = run.await_args.args
        assert called_agency == agency_id
        assert steps == ("link",)

    def test_all_steps_by_default(self, runner):
        with patch(
            "agency_contacts.cli._reconcile", AsyncMock(return_value=ReconcileReport())
        ) as run:
            result = runner.invoke(cli, ["reconcile"])
        assert result.exit_code == 0
        assert run.await_args.args[2] is None

    def test_failures_exit_nonzero(self, runner):
        report = ReconcileReport(
            failures=[ReconcileFailure("merge", uuid4(), "sales", uuid4(), "boom")]
        )
        with patch("agency_contacts.cli._reconcile", AsyncMock(return_value=report)):
            result = runner.invoke(cli, ["reconcile"])
        assert result.exit_code == 1
        assert "[merge] sales" in result.output

    def test_unknown_step(self, runner):
        result = runner.invoke(cli, ["reconcile", "--step", "dedupe"])
        assert result.exit_code == 2


class TestConfig:
    def test_invalid_config_exits(self, runner, tmp_path):
        path = tmp_path / "agency_contacts.toml"
        path.write_text("[query]\nmax_limit = 0\n")
        result = runner.invoke(cli, ["--config", str(path), "reconcile"])
        assert result.exit_code == 1
        assert "Config error" in result.output
