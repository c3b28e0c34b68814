from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import select

from studio_ledger.db.models.credit_transactions import CreditTransaction
from studio_ledger.db.repo.credit_transactions_repo import CreditTransactionsRepo
from studio_ledger.economy.credits.types import TransactionType


@pytest.mark.asyncio
async def test_orm_update_of_ledger_row_is_rejected(ledger, make_account, session_factory) -> None:
    await make_account("a-update", balance=5)
    transaction_id = (await ledger.get_history("a-update"))[0].transaction_id

    with pytest.raises(ValueError, match="append-only"):
        async with session_factory.begin() as session:
            row = await session.get(CreditTransaction, transaction_id)
            row.amount = 500

    assert await ledger.get_balance("a-update") == 5
    assert (await ledger.get_history("a-update"))[0].amount == 5


@pytest.mark.asyncio
async def test_orm_delete_of_ledger_row_is_rejected(ledger, make_account, session_factory) -> None:
    await make_account("a-delete", balance=5)
    transaction_id = (await ledger.get_history("a-delete"))[0].transaction_id

    with pytest.raises(ValueError, match="append-only"):
        async with session_factory.begin() as session:
            row = await session.get(CreditTransaction, transaction_id)
            await session.delete(row)

    assert len(await ledger.get_history("a-delete")) == 1


@pytest.mark.asyncio
async def test_generation_link_is_a_one_time_backfill(ledger, make_account, session_factory) -> None:
    await make_account("a-link", balance=5)
    debit = await ledger.debit("a-link", amount=1, description="product generation x1")
    generation_id = uuid4()

    async with session_factory.begin() as session:
        first = await CreditTransactionsRepo.link_generation(
            session,
            transaction_id=debit.transaction_id,
            user_id="a-link",
            generation_id=generation_id,
        )
        second = await CreditTransactionsRepo.link_generation(
            session,
            transaction_id=debit.transaction_id,
            user_id="a-link",
            generation_id=uuid4(),
        )

    assert first is True
    assert second is False
    async with session_factory() as session:
        stored = await session.scalar(
            select(CreditTransaction.related_generation_id).where(CreditTransaction.id == debit.transaction_id)
        )
    assert stored == generation_id


@pytest.mark.asyncio
async def test_orm_backfill_from_null_is_allowed(ledger, make_account, session_factory) -> None:
    await make_account("a-orm-link")
    credit = await ledger.credit("a-orm-link", amount=3, description="gift", tx_type=TransactionType.GRANT)
    generation_id = uuid4()

    async with session_factory.begin() as session:
        row = await session.get(CreditTransaction, credit.transaction_id)
        row.related_generation_id = generation_id

    history = await ledger.get_history("a-orm-link")
    assert history[0].related_generation_id == generation_id
