from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.users import User


class UsersRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, user_id: str) -> User | None:
        return await session.get(User, user_id)

    @staticmethod
    async def get_balance(session: AsyncSession, user_id: str) -> int | None:
        stmt = select(User.credits_balance).where(User.id == user_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        user_id: str,
        email: str | None,
        plan_tier: str,
        credits_balance: int = 0,
        now_utc: datetime,
    ) -> User:
        user = User(
            id=user_id,
            email=email,
            plan_tier=plan_tier,
            credits_balance=credits_balance,
            created_at=now_utc,
            updated_at=now_utc,
        )
        session.add(user)
        await session.flush()
        return user

    @staticmethod
    async def apply_credit(
        session: AsyncSession,
        *,
        user_id: str,
        amount: int,
        max_balance: int,
        now_utc: datetime,
    ) -> int | None:
        """Returns the new balance, or None when the user is missing or the balance would exceed max_balance."""
        stmt = (
            update(User)
            .where(User.id == user_id, User.credits_balance <= max_balance - amount)
            .values(credits_balance=User.credits_balance + amount, updated_at=now_utc)
            .returning(User.credits_balance)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def apply_debit(
        session: AsyncSession,
        *,
        user_id: str,
        amount: int,
        now_utc: datetime,
    ) -> int | None:
        """Compare-and-swap debit. Returns the new balance, or None when no row matched."""
        stmt = (
            update(User)
            .where(User.id == user_id, User.credits_balance >= amount)
            .values(credits_balance=User.credits_balance - amount, updated_at=now_utc)
            .returning(User.credits_balance)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def set_plan_tier(
        session: AsyncSession,
        *,
        user_id: str,
        plan_tier: str,
        now_utc: datetime,
    ) -> bool:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(plan_tier=plan_tier, updated_at=now_utc)
            .returning(User.id)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def list_ids(
        session: AsyncSession,
        *,
        limit: int,
        plan_tiers: tuple[str, ...] | None = None,
    ) -> list[str]:
        stmt = select(User.id).order_by(User.created_at.desc(), User.id.asc()).limit(max(1, int(limit)))
        if plan_tiers is not None:
            stmt = stmt.where(User.plan_tier.in_(plan_tiers))
        result = await session.execute(stmt)
        return [str(user_id) for user_id in result.scalars().all()]

    @staticmethod
    async def count_by_plan(session: AsyncSession) -> dict[str, int]:
        stmt = select(User.plan_tier, func.count(User.id)).group_by(User.plan_tier)
        result = await session.execute(stmt)
        return {str(plan_tier): int(total or 0) for plan_tier, total in result.all()}
