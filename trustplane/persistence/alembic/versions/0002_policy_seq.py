"""policy insertion sequence

Revision ID: 0002_policy_seq
Revises: 0001_init
Create Date: 2026-10-19 14:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_policy_seq"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Equal-priority policies resolve by insertion order; created_at alone can tie.
    op.execute("CREATE SEQUENCE policies_seq_seq AS BIGINT")
    op.add_column("policies", sa.Column("seq", sa.BigInteger(), nullable=True))
    # Backfill existing rows in the order they were previously evaluated.
    op.execute(
        """
        UPDATE policies SET seq = ordered.rn
        FROM (
            SELECT id, row_number() OVER (ORDER BY created_at ASC, id ASC) AS rn
            FROM policies
        ) AS ordered
        WHERE policies.id = ordered.id
        """
    )
    op.execute("SELECT setval('policies_seq_seq', COALESCE((SELECT MAX(seq) FROM policies), 0) + 1, false)")
    op.alter_column(
        "policies",
        "seq",
        nullable=False,
        server_default=sa.text("nextval('policies_seq_seq')"),
    )
    op.execute("ALTER SEQUENCE policies_seq_seq OWNED BY policies.seq")

    op.drop_constraint("policies_pkey", "policies", type_="primary")
    op.create_primary_key("policies_pkey", "policies", ["seq"])
    op.create_index("ix_policies_id", "policies", ["id"], unique=True)
    op.drop_index("ix_policies_org_created", table_name="policies")
    op.create_index("ix_policies_org_seq", "policies", ["org_id", "seq"])


def downgrade() -> None:
    op.drop_index("ix_policies_org_seq", table_name="policies")
    op.create_index("ix_policies_org_created", "policies", ["org_id", "created_at"])
    op.drop_index("ix_policies_id", table_name="policies")
    op.drop_constraint("policies_pkey", "policies", type_="primary")
    op.create_primary_key("policies_pkey", "policies", ["id"])
    # Dropping the column also drops the owned sequence.
    op.drop_column("policies", "seq")
