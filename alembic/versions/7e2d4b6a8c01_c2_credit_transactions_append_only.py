"""c2_credit_transactions_append_only

Revision ID: 7e2d4b6a8c01
Revises: 3a1f0c2b9d10
Create Date: 2026-10-12 09:30:00.000000
"""

from collections.abc import Sequence

from alembic import op

revision: str = "7e2d4b6a8c01"
down_revision: str | None = "3a1f0c2b9d10"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION fn_credit_transactions_append_only()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_OP = 'UPDATE'
               AND OLD.related_generation_id IS NULL
               AND NEW.related_generation_id IS NOT NULL
               AND (to_jsonb(NEW) - 'related_generation_id') = (to_jsonb(OLD) - 'related_generation_id')
            THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'credit_transactions is append-only';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_credit_transactions_append_only
        BEFORE UPDATE OR DELETE ON credit_transactions
        FOR EACH ROW
        EXECUTE FUNCTION fn_credit_transactions_append_only();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_credit_transactions_append_only ON credit_transactions;")
    op.execute("DROP FUNCTION IF EXISTS fn_credit_transactions_append_only();")
