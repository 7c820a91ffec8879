"""Create the raw record store.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from traceherb.adapters.sqlalchemy.mappings import FieldValuesType, UTCDateTime

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_ROLES = ("originator", "processor", "laboratory", "regulator")
_STATUSES = (
    "pending",
    "processing",
    "processed",
    "testing",
    "tested",
    "approved",
    "rejected",
    "completed",
)
_NAMESPACES = ("qrCode", "collectionId", "id")


def upgrade() -> None:
    op.create_table(
        "batch_record",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column(
            "source_role",
            sa.Enum(*_ROLES, name="sourcerole", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*_STATUSES, name="batchstatus", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("fields", FieldValuesType(), nullable=False),
        sa.Column("last_updated", UTCDateTime(), nullable=True),
        sa.Column("stored_at", UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_batch_record"),
        sa.UniqueConstraint("fingerprint", name="uq_batch_record_fingerprint"),
    )
    op.create_index(
        "ix_batch_record_role_updated", "batch_record", ["source_role", "last_updated"]
    )
    op.create_table(
        "batch_record_external_id",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column(
            "namespace",
            sa.Enum(*_NAMESPACES, name="externalnamespace", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("value", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["batch_record.id"],
            name="fk_batch_record_external_id_record_id_batch_record",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_batch_record_external_id"),
        sa.UniqueConstraint(
            "record_id", "namespace", name="uq_batch_record_external_id_namespace"
        ),
    )
    op.create_index(
        "ix_batch_record_external_id_value", "batch_record_external_id", ["value"]
    )


def downgrade() -> None:
    op.drop_index("ix_batch_record_external_id_value", table_name="batch_record_external_id")
    op.drop_table("batch_record_external_id")
    op.drop_index("ix_batch_record_role_updated", table_name="batch_record")
    op.drop_table("batch_record")
