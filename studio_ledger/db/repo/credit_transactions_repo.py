from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.credit_transactions import CreditTransaction


class CreditTransactionsRepo:
    @staticmethod
    async def create(session: AsyncSession, *, transaction: CreditTransaction) -> CreditTransaction:
        session.add(transaction)
        await session.flush()
        return transaction

    @staticmethod
    async def get_by_id(session: AsyncSession, transaction_id: UUID) -> CreditTransaction | None:
        return await session.get(CreditTransaction, transaction_id)

    @staticmethod
    async def get_by_id_for_update(
        session: AsyncSession,
        transaction_id: UUID,
    ) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(CreditTransaction.id == transaction_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_idempotency_key(
        session: AsyncSession,
        idempotency_key: str,
    ) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(CreditTransaction.idempotency_key == idempotency_key)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_refund_for(
        session: AsyncSession,
        original_transaction_id: UUID,
    ) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.refund_of_transaction_id == original_transaction_id
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: str,
        limit: int,
    ) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_for_user_between(
        session: AsyncSession,
        *,
        user_id: str,
        from_utc: datetime,
        to_utc: datetime,
        limit: int,
    ) -> list[CreditTransaction]:
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.created_at >= from_utc,
                CreditTransaction.created_at <= to_utc,
            )
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def link_generation(
        session: AsyncSession,
        *,
        transaction_id: UUID,
        user_id: str,
        generation_id: UUID,
    ) -> bool:
        """One-time backfill of related_generation_id. False when already linked or not owned."""
        stmt = (
            update(CreditTransaction)
            .where(
                CreditTransaction.id == transaction_id,
                CreditTransaction.user_id == user_id,
                CreditTransaction.related_generation_id.is_(None),
            )
            .values(related_generation_id=generation_id)
            .returning(CreditTransaction.id)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
