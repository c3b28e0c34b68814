from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.db.models import Base
from studio_ledger.db.session import build_engine, build_session_factory
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.types import CreditAccount, PlanTier, TransactionType
from tests.ledger_fixtures import NOW_UTC


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CreditLedger:
    return CreditLedger(session_factory)


AccountFactory = Callable[..., Awaitable[CreditAccount]]


@pytest.fixture
def make_account(ledger: CreditLedger) -> AccountFactory:
    async def _make(
        user_id: str,
        *,
        balance: int = 0,
        plan_tier: PlanTier = PlanTier.FREE,
        email: str | None = None,
        now_utc: datetime = NOW_UTC,
    ) -> CreditAccount:
        await ledger.ensure_account(
            user_id,
            email=email or f"{user_id}@studio.test",
            plan_tier=plan_tier,
            now_utc=now_utc,
        )
        if balance > 0:
            await ledger.credit(
                user_id,
                amount=balance,
                description="Opening balance",
                tx_type=TransactionType.GRANT,
                now_utc=now_utc,
            )
        return await ledger.get_account(user_id)

    return _make
