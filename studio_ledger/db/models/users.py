from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from studio_ledger.db.models.base import Base

# Balance and amount columns are 32-bit INTEGER on PostgreSQL.
CREDITS_MAX = 2_147_483_647


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "plan_tier IN ('free','starter','professional','enterprise')",
            name="ck_users_plan_tier",
        ),
        CheckConstraint("credits_balance >= 0", name="ck_users_credits_balance_non_negative"),
        Index("idx_users_plan_tier", "plan_tier"),
        Index("idx_users_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    plan_tier: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'free'"))
    credits_balance: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
