"""Initial schema: cost ledger and audit log tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "cost_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("total_cost", sa.DECIMAL(14, 4), nullable=False),
        sa.UniqueConstraint("owner", "day", name="uq_cost_owner_day"),
        comment="Per-owner daily spend aggregates; monotonically non-decreasing",
    )
    op.create_index(op.f("ix_cost_records_owner"), "cost_records", ["owner"])
    op.create_index(op.f("ix_cost_records_day"), "cost_records", ["day"])

    op.create_table(
        "cost_postings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("reference", sa.String(255), nullable=False),
        sa.Column("amount", sa.DECIMAL(14, 4), nullable=False),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("owner", "reference", name="uq_cost_posting_reference"),
        comment="Individual cost postings backing cost_records",
    )
    op.create_index(op.f("ix_cost_postings_owner"), "cost_postings", ["owner"])
    op.create_index("idx_cost_postings_owner_day", "cost_postings", ["owner", "day"])

    op.create_table(
        "audit_entries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner", sa.String(255), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("actor", sa.String(255), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("target_type", sa.String(64), nullable=False),
        sa.Column("target_id", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("prev_hash", sa.String(64), nullable=False),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.UniqueConstraint("owner", "sequence", name="uq_audit_owner_sequence"),
        comment="Hash-chained governance audit trail, append-only",
    )
    op.create_index(op.f("ix_audit_entries_owner"), "audit_entries", ["owner"])
    op.create_index("idx_audit_owner_timestamp", "audit_entries", ["owner", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_audit_owner_timestamp", table_name="audit_entries")
    op.drop_index(op.f("ix_audit_entries_owner"), table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_index("idx_cost_postings_owner_day", table_name="cost_postings")
    op.drop_index(op.f("ix_cost_postings_owner"), table_name="cost_postings")
    op.drop_table("cost_postings")
    op.drop_index(op.f("ix_cost_records_day"), table_name="cost_records")
    op.drop_index(op.f("ix_cost_records_owner"), table_name="cost_records")
    op.drop_table("cost_records")
