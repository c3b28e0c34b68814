from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.repo.analytics_repo import AnalyticsRepo
from studio_ledger.db.repo.users_repo import UsersRepo
from studio_ledger.economy.credits.plans import PLAN_ORDER

MIN_DAYS = 1
MAX_DAYS = 365
MIN_TOP_LIMIT = 1
MAX_TOP_LIMIT = 100


@dataclass(slots=True)
class UsageTotals:
    credits_in: int = 0
    credits_out: int = 0
    usage_cost: float = 0.0
    tokens: int = 0


@dataclass(slots=True)
class DailyUsage:
    day: date
    credits_in: int = 0
    credits_out: int = 0
    usage_cost: float = 0.0
    tokens: int = 0


@dataclass(slots=True)
class EventUsage:
    event_type: str
    count: int
    cost: float
    tokens: int


@dataclass(slots=True)
class GenerationUsage:
    generation_type: str
    count: int
    credits_used: int


@dataclass(slots=True)
class UserUsageAnalytics:
    from_utc: datetime
    to_utc: datetime
    totals: UsageTotals
    daily: list[DailyUsage] = field(default_factory=list)
    by_event: list[EventUsage] = field(default_factory=list)
    by_generation_type: list[GenerationUsage] = field(default_factory=list)


@dataclass(slots=True)
class PlanUsers:
    plan: str
    users: int


@dataclass(slots=True)
class TopUser:
    user_id: str
    email: str | None
    value: float


@dataclass(slots=True)
class AdminOverview:
    from_utc: datetime
    to_utc: datetime
    totals: UsageTotals
    by_plan: list[PlanUsers] = field(default_factory=list)
    by_generation_type: list[GenerationUsage] = field(default_factory=list)
    top_by_credits_out: list[TopUser] = field(default_factory=list)
    top_by_usage_cost: list[TopUser] = field(default_factory=list)


@dataclass(slots=True)
class UserUsageRow:
    user_id: str
    email: str | None
    credits_in: int
    credits_out: int
    usage_cost: float
    tokens: int


def _clamp(value: int, *, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def _user_window(*, days: int, now_utc: datetime) -> tuple[datetime, datetime]:
    """Window covering `days` full UTC days, ending at now_utc."""
    start_day = now_utc.date() - timedelta(days=days - 1)
    return datetime.combine(start_day, time.min, tzinfo=timezone.utc), now_utc


async def build_user_usage_analytics(
    session: AsyncSession,
    *,
    user_id: str,
    days: int,
    now_utc: datetime,
) -> UserUsageAnalytics:
    resolved_days = _clamp(days, low=MIN_DAYS, high=MAX_DAYS)
    from_utc, to_utc = _user_window(days=resolved_days, now_utc=now_utc)

    credits_daily = await AnalyticsRepo.credit_daily(
        session,
        user_id=user_id,
        from_utc=from_utc,
        to_utc=to_utc,
    )
    usage_daily = await AnalyticsRepo.usage_daily(
        session,
        user_id=user_id,
        from_utc=from_utc,
        to_utc=to_utc,
    )
    by_event = await AnalyticsRepo.usage_by_event(
        session,
        user_id=user_id,
        from_utc=from_utc,
        to_utc=to_utc,
    )
    by_generation_type = await AnalyticsRepo.generations_by_type(
        session,
        user_id=user_id,
        from_date=from_utc.date(),
        to_date=to_utc.date(),
    )

    totals = UsageTotals()
    daily: list[DailyUsage] = []
    for offset in range(resolved_days):
        day = from_utc.date() + timedelta(days=offset)
        credits_in, credits_out = credits_daily.get(day, (0, 0))
        usage_cost, tokens = usage_daily.get(day, (0.0, 0))
        daily.append(
            DailyUsage(
                day=day,
                credits_in=credits_in,
                credits_out=credits_out,
                usage_cost=usage_cost,
                tokens=tokens,
            )
        )
        totals.credits_in += credits_in
        totals.credits_out += credits_out
        totals.usage_cost += usage_cost
        totals.tokens += tokens

    return UserUsageAnalytics(
        from_utc=from_utc,
        to_utc=to_utc,
        totals=totals,
        daily=daily,
        by_event=[
            EventUsage(event_type=event_type, count=count, cost=cost, tokens=tokens)
            for event_type, count, cost, tokens in by_event
        ],
        by_generation_type=[
            GenerationUsage(generation_type=generation_type, count=count, credits_used=credits_used)
            for generation_type, count, credits_used in by_generation_type
        ],
    )


async def build_admin_overview(
    session: AsyncSession,
    *,
    days: int,
    limit: int,
    now_utc: datetime,
) -> AdminOverview:
    resolved_days = _clamp(days, low=MIN_DAYS, high=MAX_DAYS)
    resolved_limit = _clamp(limit, low=MIN_TOP_LIMIT, high=MAX_TOP_LIMIT)
    from_utc = now_utc - timedelta(days=resolved_days)
    to_utc = now_utc

    credits_in, credits_out = await AnalyticsRepo.credit_totals(session, from_utc=from_utc, to_utc=to_utc)
    usage_cost, tokens = await AnalyticsRepo.usage_totals(session, from_utc=from_utc, to_utc=to_utc)
    plan_counts = await UsersRepo.count_by_plan(session)
    by_generation_type = await AnalyticsRepo.generations_by_type(
        session,
        from_date=from_utc.date(),
        to_date=to_utc.date(),
    )
    top_credits = await AnalyticsRepo.top_by_credits_out(
        session,
        from_utc=from_utc,
        to_utc=to_utc,
        limit=resolved_limit,
    )
    top_usage = await AnalyticsRepo.top_by_usage_cost(
        session,
        from_utc=from_utc,
        to_utc=to_utc,
        limit=resolved_limit,
    )

    known_plans = [plan.value for plan in PLAN_ORDER]
    extra_plans = sorted(plan for plan in plan_counts if plan not in known_plans)
    return AdminOverview(
        from_utc=from_utc,
        to_utc=to_utc,
        totals=UsageTotals(
            credits_in=credits_in,
            credits_out=credits_out,
            usage_cost=usage_cost,
            tokens=tokens,
        ),
        by_plan=[PlanUsers(plan=plan, users=plan_counts.get(plan, 0)) for plan in known_plans + extra_plans],
        by_generation_type=[
            GenerationUsage(generation_type=generation_type, count=count, credits_used=credits_used)
            for generation_type, count, credits_used in by_generation_type
        ],
        top_by_credits_out=[
            TopUser(user_id=user_id, email=email, value=float(total)) for user_id, email, total in top_credits
        ],
        top_by_usage_cost=[
            TopUser(user_id=user_id, email=email, value=total) for user_id, email, total in top_usage
        ],
    )


async def build_usage_export(
    session: AsyncSession,
    *,
    days: int,
    now_utc: datetime,
) -> list[UserUsageRow]:
    resolved_days = _clamp(days, low=MIN_DAYS, high=MAX_DAYS)
    rows = await AnalyticsRepo.per_user_totals(
        session,
        from_utc=now_utc - timedelta(days=resolved_days),
        to_utc=now_utc,
    )
    return [
        UserUsageRow(
            user_id=user_id,
            email=email,
            credits_in=credits_in,
            credits_out=credits_out,
            usage_cost=usage_cost,
            tokens=tokens,
        )
        for user_id, email, credits_in, credits_out, usage_cost, tokens in rows
    ]
