from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.generations import Generation


class GenerationsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, generation: Generation) -> Generation:
        session.add(generation)
        await session.flush()
        return generation

    @staticmethod
    async def get_by_id(session: AsyncSession, generation_id: UUID) -> Generation | None:
        return await session.get(Generation, generation_id)

    @staticmethod
    async def list_for_user(session: AsyncSession, *, user_id: str, limit: int) -> list[Generation]:
        stmt = (
            select(Generation)
            .where(Generation.user_id == user_id)
            .order_by(Generation.created_at.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
