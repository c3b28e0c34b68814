from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.clock import utc_now
from studio_ledger.db.repo.rate_limit_repo import RateLimitRepo
from studio_ledger.economy.credits.errors import RateLimitExceededError
from studio_ledger.economy.credits.types import PlanTier

logger = structlog.get_logger(__name__)

SCOPE_DEFAULT = "default"
SCOPE_GENERATE = "generate"


@dataclass(frozen=True, slots=True)
class ScopeLimit:
    window_seconds: int
    limit: int


RATE_LIMITS: dict[PlanTier, dict[str, ScopeLimit]] = {
    PlanTier.FREE: {SCOPE_DEFAULT: ScopeLimit(window_seconds=60, limit=30)},
    PlanTier.STARTER: {SCOPE_DEFAULT: ScopeLimit(window_seconds=60, limit=120)},
    PlanTier.PROFESSIONAL: {SCOPE_DEFAULT: ScopeLimit(window_seconds=60, limit=600)},
    PlanTier.ENTERPRISE: {SCOPE_DEFAULT: ScopeLimit(window_seconds=60, limit=5_000)},
}


def window_start_for(now_utc: datetime, *, window_seconds: int) -> datetime:
    epoch_seconds = int(now_utc.timestamp())
    return datetime.fromtimestamp(epoch_seconds - epoch_seconds % window_seconds, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    scope: str
    plan: PlanTier
    limit: int
    remaining: int
    reset_at: int


class PlanRateLimiter:
    """Fixed-window request counter per user, scope and plan."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        limits: dict[PlanTier, dict[str, ScopeLimit]] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._limits = limits or RATE_LIMITS

    def _scope_limit(self, plan: PlanTier, scope: str) -> ScopeLimit:
        plan_limits = self._limits[plan]
        return plan_limits.get(scope, plan_limits[SCOPE_DEFAULT])

    async def hit(
        self,
        user_id: str,
        *,
        plan: PlanTier,
        scope: str,
        now_utc: datetime | None = None,
    ) -> RateLimitDecision:
        """Counts the request; raises RateLimitExceededError once the window's limit is passed."""
        effective_now = now_utc or utc_now()
        scope_limit = self._scope_limit(plan, scope)
        window_start = window_start_for(effective_now, window_seconds=scope_limit.window_seconds)
        async with self._session_factory.begin() as session:
            hits = await RateLimitRepo.bump(
                session,
                user_id=user_id,
                scope=scope,
                window_start=window_start,
                now_utc=effective_now,
            )

        reset_at = int(window_start.timestamp()) + scope_limit.window_seconds
        if hits > scope_limit.limit:
            logger.info(
                "rate_limit_exceeded",
                user_id=user_id,
                scope=scope,
                plan_tier=plan.value,
                hits=hits,
                limit=scope_limit.limit,
            )
            raise RateLimitExceededError(
                scope=scope,
                plan=plan.value,
                limit=scope_limit.limit,
                reset_at=reset_at,
            )

        return RateLimitDecision(
            scope=scope,
            plan=plan,
            limit=scope_limit.limit,
            remaining=max(0, scope_limit.limit - hits),
            reset_at=reset_at,
        )
