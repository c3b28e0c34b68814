from __future__ import annotations

from datetime import date, timedelta

import pytest

from studio_ledger.economy.credits.tracker import GenerationLogInput, GenerationTracker
from studio_ledger.economy.credits.types import PlanTier
from studio_ledger.services.usage_analytics import (
    build_admin_overview,
    build_usage_export,
    build_user_usage_analytics,
)
from tests.ledger_fixtures import NOW_UTC


@pytest.fixture
async def seeded(ledger, make_account, session_factory):
    await make_account("an-a", balance=20, now_utc=NOW_UTC - timedelta(days=1))
    await make_account(
        "an-b",
        balance=30,
        plan_tier=PlanTier.PROFESSIONAL,
        email="b@studio.test",
        now_utc=NOW_UTC - timedelta(days=1),
    )
    await ledger.record_usage_event(
        "an-a",
        event_type="upscale",
        cost=1,
        request_id="old",
        now_utc=NOW_UTC - timedelta(days=10),
    )
    await ledger.record_usage_event(
        "an-a",
        event_type="upscale",
        cost=2.5,
        tokens=100,
        request_id="recent",
        now_utc=NOW_UTC - timedelta(hours=2),
    )
    debit = await ledger.debit(
        "an-a",
        amount=4,
        description="apparel generation x2",
        now_utc=NOW_UTC - timedelta(hours=1),
    )
    await GenerationTracker(session_factory).log_success(
        GenerationLogInput(
            user_id="an-a",
            generation_type="apparel",
            count=2,
            credits_used=4,
            result_urls=["s3://gen/1.png", "s3://gen/2.png"],
            credit_transaction_id=debit.transaction_id,
        ),
        now_utc=NOW_UTC - timedelta(hours=1),
    )
    await ledger.debit("an-b", amount=10, description="video generation x2", now_utc=NOW_UTC - timedelta(hours=3))
    return session_factory


@pytest.mark.asyncio
async def test_user_usage_analytics_zero_fills_days(seeded) -> None:
    async with seeded() as session:
        analytics = await build_user_usage_analytics(session, user_id="an-a", days=7, now_utc=NOW_UTC)

    assert analytics.from_utc.date() == date(2026, 3, 8)
    assert analytics.to_utc == NOW_UTC
    assert [item.day for item in analytics.daily] == [date(2026, 3, 8) + timedelta(days=i) for i in range(7)]
    by_day = {item.day: item for item in analytics.daily}
    assert by_day[date(2026, 3, 13)].credits_in == 20
    assert by_day[date(2026, 3, 14)].credits_out == 7
    assert by_day[date(2026, 3, 14)].usage_cost == pytest.approx(2.5)
    assert by_day[date(2026, 3, 14)].tokens == 100
    assert by_day[date(2026, 3, 10)].credits_in == 0

    assert analytics.totals.credits_in == 20
    assert analytics.totals.credits_out == 7
    assert analytics.totals.usage_cost == pytest.approx(2.5)
    assert [(e.event_type, e.count, e.tokens) for e in analytics.by_event] == [("upscale", 1, 100)]
    assert [(g.generation_type, g.count, g.credits_used) for g in analytics.by_generation_type] == [
        ("apparel", 2, 4)
    ]


@pytest.mark.asyncio
async def test_user_usage_analytics_clamps_days(seeded) -> None:
    async with seeded() as session:
        analytics = await build_user_usage_analytics(session, user_id="an-a", days=0, now_utc=NOW_UTC)

    assert len(analytics.daily) == 1
    assert analytics.daily[0].day == NOW_UTC.date()


@pytest.mark.asyncio
async def test_admin_overview_totals_plans_and_top_users(seeded) -> None:
    async with seeded() as session:
        overview = await build_admin_overview(session, days=7, limit=10, now_utc=NOW_UTC)

    assert overview.totals.credits_in == 50
    assert overview.totals.credits_out == 17
    assert overview.totals.usage_cost == pytest.approx(2.5)
    assert [(item.plan, item.users) for item in overview.by_plan] == [
        ("free", 1),
        ("starter", 0),
        ("professional", 1),
        ("enterprise", 0),
    ]
    assert [(item.user_id, item.value) for item in overview.top_by_credits_out] == [("an-b", 10.0), ("an-a", 7.0)]
    assert overview.top_by_credits_out[0].email == "b@studio.test"
    assert [item.user_id for item in overview.top_by_usage_cost] == ["an-a"]
    assert [(g.generation_type, g.count) for g in overview.by_generation_type] == [("apparel", 2)]


@pytest.mark.asyncio
async def test_admin_overview_limit_is_clamped_to_at_least_one(seeded) -> None:
    async with seeded() as session:
        overview = await build_admin_overview(session, days=7, limit=0, now_utc=NOW_UTC)

    assert [item.user_id for item in overview.top_by_credits_out] == ["an-b"]


@pytest.mark.asyncio
async def test_usage_export_rows_per_active_user(seeded) -> None:
    async with seeded() as session:
        rows = await build_usage_export(session, days=30, now_utc=NOW_UTC)

    assert [row.user_id for row in rows] == ["an-a", "an-b"]
    assert (rows[0].credits_in, rows[0].credits_out) == (20, 8)
    assert rows[0].usage_cost == pytest.approx(3.5)
    assert (rows[1].credits_in, rows[1].credits_out) == (30, 10)
