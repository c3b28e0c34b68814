from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from studio_ledger.db.models.base import Base, JSONPayload


class Generation(Base):
    __tablename__ = "generations"
    __table_args__ = (
        CheckConstraint(
            "generation_type IN ('apparel','product','video')",
            name="ck_generations_type",
        ),
        CheckConstraint("count >= 1", name="ck_generations_count_positive"),
        CheckConstraint("credits_used >= 0", name="ck_generations_credits_used_non_negative"),
        Index("idx_generations_user_created", "user_id", "created_at"),
        Index("idx_generations_credit_transaction", "credit_transaction_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    generation_type: Mapped[str] = mapped_column(String(16), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_transactions.id"),
        nullable=True,
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    settings: Mapped[dict[str, object]] = mapped_column(JSONPayload, nullable=False, default=dict)
    result_urls: Mapped[list[str]] = mapped_column(JSONPayload, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
