"""c3_usage_cost_double_and_rate_limits

Revision ID: b4c5d6e7f809
Revises: 7e2d4b6a8c01
Create Date: 2026-10-19 10:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "b4c5d6e7f809"
down_revision: str | None = "7e2d4b6a8c01"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    # NUMERIC(12, 4) rounds costs below 0.00005 to zero and trips the cost > 0 check.
    op.alter_column(
        "usage_events",
        "cost",
        existing_type=sa.Numeric(12, 4),
        type_=sa.Double(),
        existing_nullable=False,
        postgresql_using="cost::double precision",
    )

    op.create_table(
        "rate_limit_buckets",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hits", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("hits >= 0", name="ck_rate_limit_buckets_hits_non_negative"),
        sa.PrimaryKeyConstraint("user_id", "scope", "window_start"),
    )
    op.create_index("idx_rate_limit_buckets_window_start", "rate_limit_buckets", ["window_start"])


def downgrade() -> None:
    op.drop_index("idx_rate_limit_buckets_window_start", table_name="rate_limit_buckets")
    op.drop_table("rate_limit_buckets")

    op.alter_column(
        "usage_events",
        "cost",
        existing_type=sa.Double(),
        type_=sa.Numeric(12, 4),
        existing_nullable=False,
        postgresql_using="cost::numeric(12, 4)",
    )
