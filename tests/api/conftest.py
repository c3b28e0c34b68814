from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from types import SimpleNamespace

import httpx
import pytest

from studio_ledger.api import deps
from studio_ledger.api.deps import AppServices
from studio_ledger.economy.credits.guard import CreditGuard
from studio_ledger.economy.credits.rate_limits import PlanRateLimiter, ScopeLimit
from studio_ledger.economy.credits.tracker import GenerationTracker
from studio_ledger.economy.credits.types import PlanTier
from studio_ledger.main import create_app
from studio_ledger.services.generation_worker import GenerationWorker, PlaceholderGenerationWorker
from studio_ledger.services.session_auth import GatewaySessionResolver
from tests.api.helpers import GATEWAY_TOKEN, INTERNAL_TOKEN


@pytest.fixture(autouse=True)
def api_settings(monkeypatch) -> SimpleNamespace:
    settings = SimpleNamespace(
        internal_api_token=INTERNAL_TOKEN,
        internal_api_allowlist="127.0.0.1/32",
        internal_api_trusted_proxies="",
        low_credit_threshold=10,
        purchase_hint_url="/billing/credits",
    )
    monkeypatch.setattr(deps, "get_settings", lambda: settings)
    return settings


ServicesFactory = Callable[..., AppServices]


@pytest.fixture
def build_services(session_factory, ledger) -> ServicesFactory:
    def _build(
        *,
        worker: GenerationWorker | None = None,
        refund_failure_handler=None,
        rate_limits: dict[PlanTier, dict[str, ScopeLimit]] | None = None,
    ) -> AppServices:
        return AppServices(
            session_factory=session_factory,
            ledger=ledger,
            guard=CreditGuard(
                ledger,
                purchase_hint_url="/billing/credits",
                refund_failure_handler=refund_failure_handler,
            ),
            tracker=GenerationTracker(session_factory),
            session_resolver=GatewaySessionResolver(gateway_token=GATEWAY_TOKEN),
            generation_worker=worker or PlaceholderGenerationWorker(result_base_url="s3://studio-test"),
            rate_limiter=PlanRateLimiter(session_factory, limits=rate_limits),
        )

    return _build


def _client_for(services: AppServices) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=create_app(services), client=("127.0.0.1", 50000))
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest.fixture
def make_client(build_services) -> Callable[..., httpx.AsyncClient]:
    def _make(**kwargs: object) -> httpx.AsyncClient:
        return _client_for(build_services(**kwargs))

    return _make


@pytest.fixture
async def client(build_services) -> AsyncIterator[httpx.AsyncClient]:
    async with _client_for(build_services()) as api_client:
        yield api_client
