from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from studio_ledger.db.models.base import Base, BigIntegerPK, JSONPayload


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        CheckConstraint("cost > 0", name="ck_usage_events_cost_positive"),
        CheckConstraint("tokens IS NULL OR tokens >= 0", name="ck_usage_events_tokens_non_negative"),
        UniqueConstraint("user_id", "request_id", name="uq_usage_events_user_request"),
        Index("idx_usage_events_user_created", "user_id", "created_at"),
        Index("idx_usage_events_created_date", "created_date"),
        Index("idx_usage_events_type", "event_type"),
    )

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    cost: Mapped[float] = mapped_column(Double, nullable=False)
    tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[dict[str, object]] = mapped_column(
        "metadata",
        JSONPayload,
        nullable=False,
        default=dict,
    )
    credit_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_transactions.id"),
        nullable=True,
    )
    created_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
