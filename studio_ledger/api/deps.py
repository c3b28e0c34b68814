from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.config import Settings, get_settings
from studio_ledger.economy.credits.errors import (
    RateLimitExceededError,
    UnauthenticatedError,
    UserNotFoundError,
)
from studio_ledger.economy.credits.guard import CreditGuard
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.rate_limits import SCOPE_GENERATE, PlanRateLimiter, RateLimitDecision
from studio_ledger.economy.credits.tracker import GenerationTracker
from studio_ledger.economy.credits.types import PlanTier
from studio_ledger.services.generation_worker import GenerationWorker
from studio_ledger.services.internal_auth import (
    extract_client_ip,
    is_client_ip_allowed,
    is_internal_request_authenticated,
)
from studio_ledger.services.session_auth import SessionResolver, SessionUser

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class AppServices:
    session_factory: async_sessionmaker[AsyncSession]
    ledger: CreditLedger
    guard: CreditGuard
    tracker: GenerationTracker
    session_resolver: SessionResolver
    generation_worker: GenerationWorker
    rate_limiter: PlanRateLimiter


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return get_services(request).session_factory


def get_ledger(request: Request) -> CreditLedger:
    return get_services(request).ledger


def get_guard(request: Request) -> CreditGuard:
    return get_services(request).guard


def get_tracker(request: Request) -> GenerationTracker:
    return get_services(request).tracker


def get_generation_worker(request: Request) -> GenerationWorker:
    return get_services(request).generation_worker


def get_app_settings() -> Settings:
    return get_settings()


async def get_current_user(request: Request) -> SessionUser:
    try:
        return await get_services(request).session_resolver.resolve(request)
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=401, detail={"code": "E_UNAUTHENTICATED"}) from exc


def assert_internal_access(request: Request) -> None:
    settings = get_settings()
    client_ip = extract_client_ip(request, trusted_proxies=settings.internal_api_trusted_proxies)

    if not is_client_ip_allowed(client_ip=client_ip, allowlist=settings.internal_api_allowlist):
        logger.warning("internal_api_auth_failed", reason="ip_not_allowed", client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})

    if not is_internal_request_authenticated(request, expected_token=settings.internal_api_token):
        logger.warning("internal_api_auth_failed", reason="invalid_credentials", client_ip=client_ip)
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


def _rate_limit_headers(*, limit: int, remaining: int, reset_at: int) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_at),
    }


async def enforce_generation_rate_limit(
    request: Request,
    response: Response,
    user: SessionUser = Depends(get_current_user),
) -> RateLimitDecision:
    services = get_services(request)
    try:
        plan = (await services.ledger.get_account(user.id)).plan_tier
    except UserNotFoundError:
        plan = PlanTier.FREE

    try:
        decision = await services.rate_limiter.hit(user.id, plan=plan, scope=SCOPE_GENERATE)
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=429,
            detail={"code": "E_RATE_LIMITED", "scope": exc.scope, "plan": exc.plan},
            headers=_rate_limit_headers(limit=exc.limit, remaining=0, reset_at=exc.reset_at),
        ) from exc

    response.headers.update(
        _rate_limit_headers(limit=decision.limit, remaining=decision.remaining, reset_at=decision.reset_at)
    )
    return decision
