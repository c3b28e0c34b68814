from __future__ import annotations

import csv
import io
from datetime import date, datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.api.deps import assert_internal_access, get_current_user, get_session_factory
from studio_ledger.api.schemas import CamelModel
from studio_ledger.core.clock import utc_now
from studio_ledger.services.session_auth import SessionUser
from studio_ledger.services.usage_analytics import (
    GenerationUsage,
    UsageTotals,
    build_admin_overview,
    build_usage_export,
    build_user_usage_analytics,
)

router = APIRouter(tags=["analytics"])

DAYS_MIN = 7
DAYS_MAX = 365
TOP_LIMIT_MIN = 10
TOP_LIMIT_MAX = 100


class TotalsResponse(CamelModel):
    credits_in: int
    credits_out: int
    usage_cost: float
    tokens: int


class DailyResponse(CamelModel):
    day: date = Field(alias="date")
    credits_in: int
    credits_out: int
    usage_cost: float
    tokens: int


class EventResponse(CamelModel):
    event_type: str
    count: int
    cost: float
    tokens: int


class GenerationTypeResponse(CamelModel):
    generation_type: str
    count: int
    credits_used: int


class UserAnalyticsResponse(CamelModel):
    from_: datetime = Field(alias="from")
    to: datetime
    totals: TotalsResponse
    daily: list[DailyResponse]
    by_event: list[EventResponse]
    by_generation_type: list[GenerationTypeResponse]


class PlanResponse(CamelModel):
    plan: str
    users: int


class TopCreditsResponse(CamelModel):
    user_id: str
    email: str | None
    credits_out: int


class TopUsageResponse(CamelModel):
    user_id: str
    email: str | None
    usage_cost: float


class AdminOverviewResponse(CamelModel):
    from_: datetime = Field(alias="from")
    to: datetime
    totals: TotalsResponse
    by_plan: list[PlanResponse]
    by_generation_type: list[GenerationTypeResponse]
    top_by_credits_out: list[TopCreditsResponse]
    top_by_usage_cost: list[TopUsageResponse]


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _totals(totals: UsageTotals) -> TotalsResponse:
    return TotalsResponse(
        credits_in=totals.credits_in,
        credits_out=totals.credits_out,
        usage_cost=totals.usage_cost,
        tokens=totals.tokens,
    )


def _generation_types(rows: list[GenerationUsage]) -> list[GenerationTypeResponse]:
    return [
        GenerationTypeResponse(
            generation_type=row.generation_type,
            count=row.count,
            credits_used=row.credits_used,
        )
        for row in rows
    ]


@router.get("/analytics/me", response_model=UserAnalyticsResponse)
async def get_my_analytics(
    days: int = Query(default=30),
    user: SessionUser = Depends(get_current_user),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> UserAnalyticsResponse:
    async with session_factory() as session:
        analytics = await build_user_usage_analytics(
            session,
            user_id=user.id,
            days=_clamp(days, DAYS_MIN, DAYS_MAX),
            now_utc=utc_now(),
        )

    return UserAnalyticsResponse(
        from_=analytics.from_utc,
        to=analytics.to_utc,
        totals=_totals(analytics.totals),
        daily=[
            DailyResponse(
                day=item.day,
                credits_in=item.credits_in,
                credits_out=item.credits_out,
                usage_cost=item.usage_cost,
                tokens=item.tokens,
            )
            for item in analytics.daily
        ],
        by_event=[
            EventResponse(event_type=item.event_type, count=item.count, cost=item.cost, tokens=item.tokens)
            for item in analytics.by_event
        ],
        by_generation_type=_generation_types(analytics.by_generation_type),
    )


@router.get("/internal/analytics/overview", response_model=AdminOverviewResponse)
async def get_admin_overview(
    request: Request,
    days: int = Query(default=30),
    limit: int = Query(default=20),
) -> AdminOverviewResponse:
    assert_internal_access(request)
    async with get_session_factory(request)() as session:
        overview = await build_admin_overview(
            session,
            days=_clamp(days, DAYS_MIN, DAYS_MAX),
            limit=_clamp(limit, TOP_LIMIT_MIN, TOP_LIMIT_MAX),
            now_utc=utc_now(),
        )

    return AdminOverviewResponse(
        from_=overview.from_utc,
        to=overview.to_utc,
        totals=_totals(overview.totals),
        by_plan=[PlanResponse(plan=item.plan, users=item.users) for item in overview.by_plan],
        by_generation_type=_generation_types(overview.by_generation_type),
        top_by_credits_out=[
            TopCreditsResponse(user_id=item.user_id, email=item.email, credits_out=int(item.value))
            for item in overview.top_by_credits_out
        ],
        top_by_usage_cost=[
            TopUsageResponse(user_id=item.user_id, email=item.email, usage_cost=item.value)
            for item in overview.top_by_usage_cost
        ],
    )


@router.get("/internal/analytics/usage.csv")
async def export_usage_csv(
    request: Request,
    days: int = Query(default=30),
) -> Response:
    assert_internal_access(request)
    async with get_session_factory(request)() as session:
        rows = await build_usage_export(session, days=_clamp(days, DAYS_MIN, DAYS_MAX), now_utc=utc_now())

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(["user_id", "email", "credits_in", "credits_out", "usage_cost", "tokens"])
    for row in rows:
        writer.writerow([row.user_id, row.email or "", row.credits_in, row.credits_out, row.usage_cost, row.tokens])

    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Cache-Control": "no-store"},
    )
