from __future__ import annotations

from datetime import date, datetime

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.usage_analytics import UsageAnalytics
from studio_ledger.db.session import dialect_name


class UsageAnalyticsRepo:
    @staticmethod
    async def upsert_increment(
        session: AsyncSession,
        *,
        user_id: str,
        usage_date: date,
        generation_type: str,
        count: int,
        credits_used: int,
        now_utc: datetime,
    ) -> None:
        insert = postgresql.insert if dialect_name(session) == "postgresql" else sqlite.insert
        stmt = insert(UsageAnalytics).values(
            user_id=user_id,
            usage_date=usage_date,
            generation_type=generation_type,
            count=count,
            credits_used=credits_used,
            updated_at=now_utc,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                UsageAnalytics.user_id,
                UsageAnalytics.usage_date,
                UsageAnalytics.generation_type,
            ],
            set_={
                "count": UsageAnalytics.count + stmt.excluded.count,
                "credits_used": UsageAnalytics.credits_used + stmt.excluded.credits_used,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await session.execute(stmt)

    @staticmethod
    async def get(
        session: AsyncSession,
        *,
        user_id: str,
        usage_date: date,
        generation_type: str,
    ) -> UsageAnalytics | None:
        return await session.get(UsageAnalytics, (user_id, usage_date, generation_type))
