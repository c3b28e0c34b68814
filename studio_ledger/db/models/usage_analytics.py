from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from studio_ledger.db.models.base import Base


class UsageAnalytics(Base):
    __tablename__ = "usage_analytics"
    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_usage_analytics_count_non_negative"),
        CheckConstraint("credits_used >= 0", name="ck_usage_analytics_credits_used_non_negative"),
        Index("idx_usage_analytics_date", "usage_date"),
    )

    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), primary_key=True)
    usage_date: Mapped[date] = mapped_column(Date, primary_key=True)
    generation_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
