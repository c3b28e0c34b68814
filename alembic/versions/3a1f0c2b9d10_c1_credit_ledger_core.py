"""c1_credit_ledger_core

Revision ID: 3a1f0c2b9d10
Revises:
Create Date: 2026-10-12 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3a1f0c2b9d10"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("plan_tier", sa.String(16), nullable=False, server_default=sa.text("'free'")),
        sa.Column("credits_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "plan_tier IN ('free','starter','professional','enterprise')",
            name="ck_users_plan_tier",
        ),
        sa.CheckConstraint("credits_balance >= 0", name="ck_users_credits_balance_non_negative"),
    )
    op.create_index("idx_users_plan_tier", "users", ["plan_tier"])
    op.create_index("idx_users_created_at", "users", ["created_at"])

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("direction", sa.String(8), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("related_generation_id", sa.Uuid(), nullable=True),
        sa.Column("refund_of_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
        sa.CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after_non_negative"),
        sa.CheckConstraint(
            "transaction_type IN ('purchase','grant','refund','monthly_reset','usage')",
            name="ck_credit_transactions_type",
        ),
        sa.CheckConstraint("direction IN ('CREDIT','DEBIT')", name="ck_credit_transactions_direction"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["refund_of_transaction_id"], ["credit_transactions.id"]),
        sa.UniqueConstraint("refund_of_transaction_id", name="uq_credit_transactions_refund_of"),
        sa.UniqueConstraint("idempotency_key", name="uq_credit_transactions_idempotency_key"),
    )
    op.create_index("idx_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"])
    op.create_index("idx_credit_transactions_created_date", "credit_transactions", ["created_date"])
    op.create_index("idx_credit_transactions_generation", "credit_transactions", ["related_generation_id"])

    op.create_table(
        "generations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("generation_type", sa.String(16), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("credit_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column(
            "settings",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("result_urls", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("generation_type IN ('apparel','product','video')", name="ck_generations_type"),
        sa.CheckConstraint("count >= 1", name="ck_generations_count_positive"),
        sa.CheckConstraint("credits_used >= 0", name="ck_generations_credits_used_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["credit_transaction_id"], ["credit_transactions.id"]),
    )
    op.create_index("idx_generations_user_created", "generations", ["user_id", "created_at"])
    op.create_index("idx_generations_credit_transaction", "generations", ["credit_transaction_id"])

    op.create_table(
        "usage_analytics",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("generation_type", sa.String(16), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("count >= 0", name="ck_usage_analytics_count_non_negative"),
        sa.CheckConstraint("credits_used >= 0", name="ck_usage_analytics_credits_used_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id", "usage_date", "generation_type"),
    )
    op.create_index("idx_usage_analytics_date", "usage_analytics", ["usage_date"])

    op.create_table(
        "usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("cost", sa.Numeric(12, 4), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.String(128), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("credit_transaction_id", sa.Uuid(), nullable=True),
        sa.Column("created_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("cost > 0", name="ck_usage_events_cost_positive"),
        sa.CheckConstraint("tokens IS NULL OR tokens >= 0", name="ck_usage_events_tokens_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["credit_transaction_id"], ["credit_transactions.id"]),
        sa.UniqueConstraint("user_id", "request_id", name="uq_usage_events_user_request"),
    )
    op.create_index("idx_usage_events_user_created", "usage_events", ["user_id", "created_at"])
    op.create_index("idx_usage_events_created_date", "usage_events", ["created_date"])
    op.create_index("idx_usage_events_type", "usage_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("idx_usage_events_type", table_name="usage_events")
    op.drop_index("idx_usage_events_created_date", table_name="usage_events")
    op.drop_index("idx_usage_events_user_created", table_name="usage_events")
    op.drop_table("usage_events")

    op.drop_index("idx_usage_analytics_date", table_name="usage_analytics")
    op.drop_table("usage_analytics")

    op.drop_index("idx_generations_credit_transaction", table_name="generations")
    op.drop_index("idx_generations_user_created", table_name="generations")
    op.drop_table("generations")

    op.drop_index("idx_credit_transactions_generation", table_name="credit_transactions")
    op.drop_index("idx_credit_transactions_created_date", table_name="credit_transactions")
    op.drop_index("idx_credit_transactions_user_created", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("idx_users_created_at", table_name="users")
    op.drop_index("idx_users_plan_tier", table_name="users")
    op.drop_table("users")
