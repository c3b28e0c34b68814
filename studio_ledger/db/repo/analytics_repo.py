from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.credit_transactions import CreditTransaction
from studio_ledger.db.models.usage_analytics import UsageAnalytics
from studio_ledger.db.models.usage_events import UsageEvent
from studio_ledger.db.models.users import User

_CREDITS_IN = func.coalesce(
    func.sum(case((CreditTransaction.direction == "CREDIT", CreditTransaction.amount), else_=0)),
    0,
)
_CREDITS_OUT = func.coalesce(
    func.sum(case((CreditTransaction.direction == "DEBIT", CreditTransaction.amount), else_=0)),
    0,
)


class AnalyticsRepo:
    @staticmethod
    async def credit_totals(
        session: AsyncSession,
        *,
        from_utc: datetime,
        to_utc: datetime,
        user_id: str | None = None,
    ) -> tuple[int, int]:
        stmt = select(_CREDITS_IN, _CREDITS_OUT).where(
            CreditTransaction.created_at >= from_utc,
            CreditTransaction.created_at <= to_utc,
        )
        if user_id is not None:
            stmt = stmt.where(CreditTransaction.user_id == user_id)
        result = await session.execute(stmt)
        credits_in, credits_out = result.one()
        return int(credits_in or 0), int(credits_out or 0)

    @staticmethod
    async def credit_daily(
        session: AsyncSession,
        *,
        user_id: str,
        from_utc: datetime,
        to_utc: datetime,
    ) -> dict[date, tuple[int, int]]:
        stmt = (
            select(CreditTransaction.created_date, _CREDITS_IN, _CREDITS_OUT)
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.created_at >= from_utc,
                CreditTransaction.created_at <= to_utc,
            )
            .group_by(CreditTransaction.created_date)
        )
        result = await session.execute(stmt)
        return {
            created_date: (int(credits_in or 0), int(credits_out or 0))
            for created_date, credits_in, credits_out in result.all()
        }

    @staticmethod
    async def usage_totals(
        session: AsyncSession,
        *,
        from_utc: datetime,
        to_utc: datetime,
        user_id: str | None = None,
    ) -> tuple[float, int]:
        stmt = select(
            func.coalesce(func.sum(UsageEvent.cost), 0),
            func.coalesce(func.sum(UsageEvent.tokens), 0),
        ).where(
            UsageEvent.created_at >= from_utc,
            UsageEvent.created_at <= to_utc,
        )
        if user_id is not None:
            stmt = stmt.where(UsageEvent.user_id == user_id)
        result = await session.execute(stmt)
        usage_cost, tokens = result.one()
        return float(usage_cost or 0), int(tokens or 0)

    @staticmethod
    async def usage_daily(
        session: AsyncSession,
        *,
        user_id: str,
        from_utc: datetime,
        to_utc: datetime,
    ) -> dict[date, tuple[float, int]]:
        stmt = (
            select(
                UsageEvent.created_date,
                func.coalesce(func.sum(UsageEvent.cost), 0),
                func.coalesce(func.sum(UsageEvent.tokens), 0),
            )
            .where(
                UsageEvent.user_id == user_id,
                UsageEvent.created_at >= from_utc,
                UsageEvent.created_at <= to_utc,
            )
            .group_by(UsageEvent.created_date)
        )
        result = await session.execute(stmt)
        return {
            created_date: (float(usage_cost or 0), int(tokens or 0))
            for created_date, usage_cost, tokens in result.all()
        }

    @staticmethod
    async def usage_by_event(
        session: AsyncSession,
        *,
        user_id: str,
        from_utc: datetime,
        to_utc: datetime,
    ) -> list[tuple[str, int, float, int]]:
        stmt = (
            select(
                UsageEvent.event_type,
                func.count(UsageEvent.id),
                func.coalesce(func.sum(UsageEvent.cost), 0),
                func.coalesce(func.sum(UsageEvent.tokens), 0),
            )
            .where(
                UsageEvent.user_id == user_id,
                UsageEvent.created_at >= from_utc,
                UsageEvent.created_at <= to_utc,
            )
            .group_by(UsageEvent.event_type)
            .order_by(UsageEvent.event_type.asc())
        )
        result = await session.execute(stmt)
        return [
            (str(event_type), int(total or 0), float(cost or 0), int(tokens or 0))
            for event_type, total, cost, tokens in result.all()
        ]

    @staticmethod
    async def generations_by_type(
        session: AsyncSession,
        *,
        from_date: date,
        to_date: date,
        user_id: str | None = None,
    ) -> list[tuple[str, int, int]]:
        stmt = (
            select(
                UsageAnalytics.generation_type,
                func.coalesce(func.sum(UsageAnalytics.count), 0),
                func.coalesce(func.sum(UsageAnalytics.credits_used), 0),
            )
            .where(
                UsageAnalytics.usage_date >= from_date,
                UsageAnalytics.usage_date <= to_date,
            )
            .group_by(UsageAnalytics.generation_type)
            .order_by(UsageAnalytics.generation_type.asc())
        )
        if user_id is not None:
            stmt = stmt.where(UsageAnalytics.user_id == user_id)
        result = await session.execute(stmt)
        return [
            (str(generation_type), int(total or 0), int(credits_used or 0))
            for generation_type, total, credits_used in result.all()
        ]

    @staticmethod
    async def top_by_credits_out(
        session: AsyncSession,
        *,
        from_utc: datetime,
        to_utc: datetime,
        limit: int,
    ) -> list[tuple[str, str | None, int]]:
        credits_out = func.sum(CreditTransaction.amount).label("credits_out")
        stmt = (
            select(CreditTransaction.user_id, User.email, credits_out)
            .join(User, User.id == CreditTransaction.user_id)
            .where(
                CreditTransaction.direction == "DEBIT",
                CreditTransaction.created_at >= from_utc,
                CreditTransaction.created_at <= to_utc,
            )
            .group_by(CreditTransaction.user_id, User.email)
            .order_by(credits_out.desc(), CreditTransaction.user_id.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [(str(user_id), email, int(total or 0)) for user_id, email, total in result.all()]

    @staticmethod
    async def top_by_usage_cost(
        session: AsyncSession,
        *,
        from_utc: datetime,
        to_utc: datetime,
        limit: int,
    ) -> list[tuple[str, str | None, float]]:
        usage_cost = func.sum(UsageEvent.cost).label("usage_cost")
        stmt = (
            select(UsageEvent.user_id, User.email, usage_cost)
            .join(User, User.id == UsageEvent.user_id)
            .where(
                UsageEvent.created_at >= from_utc,
                UsageEvent.created_at <= to_utc,
            )
            .group_by(UsageEvent.user_id, User.email)
            .order_by(usage_cost.desc(), UsageEvent.user_id.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [(str(user_id), email, float(total or 0)) for user_id, email, total in result.all()]

    @staticmethod
    async def per_user_totals(
        session: AsyncSession,
        *,
        from_utc: datetime,
        to_utc: datetime,
    ) -> list[tuple[str, str | None, int, int, float, int]]:
        credit_rows = (
            select(
                CreditTransaction.user_id.label("user_id"),
                _CREDITS_IN.label("credits_in"),
                _CREDITS_OUT.label("credits_out"),
            )
            .where(
                CreditTransaction.created_at >= from_utc,
                CreditTransaction.created_at <= to_utc,
            )
            .group_by(CreditTransaction.user_id)
            .subquery()
        )
        usage_rows = (
            select(
                UsageEvent.user_id.label("user_id"),
                func.coalesce(func.sum(UsageEvent.cost), 0).label("usage_cost"),
                func.coalesce(func.sum(UsageEvent.tokens), 0).label("tokens"),
            )
            .where(
                UsageEvent.created_at >= from_utc,
                UsageEvent.created_at <= to_utc,
            )
            .group_by(UsageEvent.user_id)
            .subquery()
        )
        stmt = (
            select(
                User.id,
                User.email,
                func.coalesce(credit_rows.c.credits_in, 0),
                func.coalesce(credit_rows.c.credits_out, 0),
                func.coalesce(usage_rows.c.usage_cost, 0),
                func.coalesce(usage_rows.c.tokens, 0),
            )
            .outerjoin(credit_rows, credit_rows.c.user_id == User.id)
            .outerjoin(usage_rows, usage_rows.c.user_id == User.id)
            .where((credit_rows.c.user_id.is_not(None)) | (usage_rows.c.user_id.is_not(None)))
            .order_by(User.id.asc())
        )
        result = await session.execute(stmt)
        return [
            (str(user_id), email, int(c_in or 0), int(c_out or 0), float(cost or 0), int(tokens or 0))
            for user_id, email, c_in, c_out, cost, tokens in result.all()
        ]
