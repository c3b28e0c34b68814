from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from studio_ledger.db.models.base import Base, JSONPayload


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after_non_negative"),
        CheckConstraint(
            "transaction_type IN ('purchase','grant','refund','monthly_reset','usage')",
            name="ck_credit_transactions_type",
        ),
        CheckConstraint("direction IN ('CREDIT','DEBIT')", name="ck_credit_transactions_direction"),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index("idx_credit_transactions_created_date", "created_date"),
        Index("idx_credit_transactions_generation", "related_generation_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    related_generation_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    refund_of_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_transactions.id"),
        unique=True,
        nullable=True,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    metadata_: Mapped[dict[str, object]] = mapped_column(
        "metadata",
        JSONPayload,
        nullable=False,
        default=dict,
    )
    created_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@event.listens_for(CreditTransaction, "before_update")
def _reject_update(mapper, connection, target: CreditTransaction) -> None:  # type: ignore[no-untyped-def]
    state = inspect(target)
    for attr in state.attrs:
        history = attr.history
        if not history.has_changes():
            continue
        # related_generation_id may be backfilled once, from NULL.
        if attr.key == "related_generation_id" and all(value is None for value in history.deleted):
            continue
        raise ValueError("credit_transactions is append-only")


@event.listens_for(CreditTransaction, "before_delete")
def _reject_delete(mapper, connection, target: CreditTransaction) -> None:  # type: ignore[no-untyped-def]
    raise ValueError("credit_transactions is append-only")
