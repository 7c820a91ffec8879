"""Store the status trail and page records by insertion order.

Revision ID: 0002_status_history
Revises: 0001_initial
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from traceherb.adapters.sqlalchemy.mappings import StatusHistoryType

revision = "0002_status_history"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("batch_record") as batch_op:
        batch_op.add_column(sa.Column("status_history", StatusHistoryType(), nullable=True))
        batch_op.drop_index("ix_batch_record_role_updated")
        batch_op.create_index("ix_batch_record_role_id", ["source_role", "id"])


def downgrade() -> None:
    with op.batch_alter_table("batch_record") as batch_op:
        batch_op.drop_index("ix_batch_record_role_id")
        batch_op.create_index("ix_batch_record_role_updated", ["source_role", "last_updated"])
        batch_op.drop_column("status_history")

