"""Tests for the core_001 contact tables migration."""

from __future__ import annotations

import importlib.util
import shutil
import uuid
from pathlib import Path
from unittest.mock import patch

import pytest

from agency_contacts.migrations import _build_alembic_config, run_migrations
from agency_contacts.schema import ALL_DDL, DROP_TABLES

ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"
CORE_MIGRATIONS_DIR = ALEMBIC_DIR / "versions" / "core"
MIGRATION_FILE = CORE_MIGRATIONS_DIR / "001_create_contact_tables.py"

docker_available = shutil.which("docker") is not None


def _load_migration():
    """Load the core_001 migration module dynamically."""
    spec = importlib.util.spec_from_file_location("migration_core_001", MIGRATION_FILE)
    assert spec is not None
    assert spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


@pytest.mark.unit
class TestCore001Migration:
    def test_revision_identifiers(self):
        mod = _load_migration()
        assert mod.revision == "core_001"
        assert mod.down_revision is None
        assert mod.branch_labels == ("core",)

    def test_upgrade_executes_every_statement(self):
        mod = _load_migration()
        with patch.object(mod, "op") as op:
            mod.upgrade()
        assert [c.args[0] for c in op.execute.call_args_list] == ALL_DDL

    def test_downgrade_drops_every_table(self):
        mod = _load_migration()
        with patch.object(mod, "op") as op:
            mod.downgrade()
        statements = [c.args[0] for c in op.execute.call_args_list]
        assert statements == [f"DROP TABLE IF EXISTS {t} CASCADE" for t in DROP_TABLES]

    def test_every_created_table_is_dropped(self):
        created = {
            stmt.split("IF NOT EXISTS", 1)[1].split("(", 1)[0].strip()
            for stmt in ALL_DDL
            if "CREATE TABLE" in stmt
        }
        assert created == set(DROP_TABLES)
        # Referencing tables are dropped before agency_contacts.
        assert DROP_TABLES[-1] == "agency_contacts"

    def test_config_escapes_percent_in_url(self):
        config = _build_alembic_config("postgresql://u:p%40ss@h:5432/db")
        assert config.get_main_option("sqlalchemy.url") == "postgresql://u:p%40ss@h:5432/db"
        assert config.get_main_option("version_locations") == str(CORE_MIGRATIONS_DIR)


@pytest.mark.integration
@pytest.mark.skipif(not docker_available, reason="Docker not available")
async def test_run_migrations_creates_schema(postgres_container):
    from agency_contacts.db import Database

    db = Database(
        db_name=f"test_{uuid.uuid4().hex[:12]}",
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
        min_pool_size=1,
        max_pool_size=2,
    )
    await db.provision()
    await run_migrations(db.url)
    # Re-running at head is a no-op.
    await run_migrations(db.url)

    pool = await db.connect()
    try:
        tables = {
            row["tablename"]
            for row in await pool.fetch(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
            )
        }
        assert set(DROP_TABLES) <= tables
        assert await pool.fetchval("SELECT version_num FROM alembic_version") == "core_001"
    finally:
        await db.close()
