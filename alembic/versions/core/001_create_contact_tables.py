"""create_contact_tables

Revision ID: core_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
from agency_contacts.schema import ALL_DDL, DROP_TABLES

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    for statement in ALL_DDL:
        op.execute(statement)


def downgrade() -> None:
    for table in DROP_TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
