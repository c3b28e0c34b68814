from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.api.deps import AppServices
from studio_ledger.api.routes.billing import router as billing_router
from studio_ledger.api.routes.generations import router as generations_router
from studio_ledger.api.routes.health import router as health_router
from studio_ledger.api.routes.internal_analytics import router as internal_analytics_router
from studio_ledger.api.routes.internal_credits import router as internal_credits_router
from studio_ledger.core.config import Settings, get_settings
from studio_ledger.core.logging import configure_logging
from studio_ledger.db.session import build_engine, build_session_factory
from studio_ledger.economy.credits.guard import CreditGuard
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.rate_limits import PlanRateLimiter
from studio_ledger.economy.credits.tracker import GenerationTracker
from studio_ledger.services.generation_worker import PlaceholderGenerationWorker
from studio_ledger.services.session_auth import GatewaySessionResolver
from studio_ledger.workers.tasks.refund_retry import schedule_refund_retry


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> AppServices:
    ledger = CreditLedger(session_factory)
    return AppServices(
        session_factory=session_factory,
        ledger=ledger,
        guard=CreditGuard(
            ledger,
            purchase_hint_url=settings.purchase_hint_url,
            refund_failure_handler=schedule_refund_retry,
        ),
        tracker=GenerationTracker(session_factory),
        session_resolver=GatewaySessionResolver(
            gateway_token=settings.session_gateway_token,
            auth_enforce=settings.auth_enforce,
            demo_user_id=settings.demo_session_user_id,
        ),
        generation_worker=PlaceholderGenerationWorker(
            result_base_url=settings.generation_result_base_url,
        ),
        rate_limiter=PlanRateLimiter(session_factory),
    )


def create_app(services: AppServices | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            app.state.services = services
            yield
            return

        engine = build_engine(settings.database_url)
        app.state.services = build_services(build_session_factory(engine), settings)
        try:
            yield
        finally:
            await engine.dispose()

    app = FastAPI(
        title="Studio Ledger API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
    app.include_router(health_router)
    app.include_router(billing_router)
    app.include_router(generations_router)
    app.include_router(internal_analytics_router)
    app.include_router(internal_credits_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "studio_ledger.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()
