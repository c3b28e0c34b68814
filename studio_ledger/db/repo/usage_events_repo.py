from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.usage_events import UsageEvent


class UsageEventsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, usage_event: UsageEvent) -> UsageEvent:
        session.add(usage_event)
        await session.flush()
        return usage_event

    @staticmethod
    async def get_by_request_id(
        session: AsyncSession,
        *,
        user_id: str,
        request_id: str,
    ) -> UsageEvent | None:
        stmt = select(UsageEvent).where(
            UsageEvent.user_id == user_id,
            UsageEvent.request_id == request_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user_between(
        session: AsyncSession,
        *,
        user_id: str,
        from_utc: datetime,
        to_utc: datetime,
        limit: int,
    ) -> list[UsageEvent]:
        stmt = (
            select(UsageEvent)
            .where(
                UsageEvent.user_id == user_id,
                UsageEvent.created_at >= from_utc,
                UsageEvent.created_at <= to_utc,
            )
            .order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
