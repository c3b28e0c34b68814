from __future__ import annotations

import pytest

from studio_ledger.db.repo.generations_repo import GenerationsRepo
from studio_ledger.economy.credits.rate_limits import SCOPE_DEFAULT, ScopeLimit
from studio_ledger.economy.credits.types import PlanTier, TransactionType
from studio_ledger.services.generation_worker import GenerationFailedError, GenerationOutput, GenerationRequest
from tests.api.helpers import session_headers


class _RecordingWorker:
    def __init__(self) -> None:
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationOutput:
        self.requests.append(request)
        return GenerationOutput(result_urls=["s3://studio-test/recorded.png"] * request.count)


class _FailingWorker:
    def __init__(self) -> None:
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest):
        self.requests.append(request)
        raise GenerationFailedError("model offline")


@pytest.mark.asyncio
async def test_apparel_generation_debits_and_logs(client, ledger, make_account, session_factory) -> None:
    await make_account("gen-ok", balance=10)

    response = await client.post(
        "/generate/apparel",
        headers=session_headers("gen-ok"),
        json={"count": 2, "prompt": "linen shirt", "settings": {"background": "white"}},
    )

    assert response.status_code == 200
    images = response.json()["images"]
    assert len(images) == 2
    assert all(url.startswith("s3://studio-test/gen-ok/apparel/") for url in images)
    assert await ledger.get_balance("gen-ok") == 6

    history = await ledger.get_history("gen-ok")
    assert history[0].description == "Apparel generation"
    async with session_factory() as session:
        generations = await GenerationsRepo.list_for_user(session, user_id="gen-ok", limit=5)
    assert len(generations) == 1
    assert generations[0].prompt == "linen shirt"
    assert generations[0].credit_transaction_id == history[0].transaction_id
    assert history[0].related_generation_id == generations[0].id


@pytest.mark.asyncio
async def test_video_generation_returns_single_url(client, ledger, make_account) -> None:
    await make_account("gen-video", balance=5)

    response = await client.post("/generate/video", headers=session_headers("gen-video"), json={"prompt": "spin"})

    assert response.status_code == 200
    assert response.json()["videoUrl"].endswith(".mp4")
    assert await ledger.get_balance("gen-video") == 0


@pytest.mark.asyncio
async def test_insufficient_credits_is_402_with_purchase_hint(client, ledger, make_account) -> None:
    await make_account("gen-poor", balance=1)

    response = await client.post("/generate/apparel", headers=session_headers("gen-poor"), json={"count": 1})

    assert response.status_code == 402
    assert response.json() == {
        "ok": False,
        "code": "INSUFFICIENT_CREDITS",
        "message": "Not enough credits to run this generation.",
        "needed": 2,
        "have": 1,
        "purchaseHintUrl": "/billing/credits",
    }
    assert await ledger.get_balance("gen-poor") == 1


@pytest.mark.asyncio
async def test_worker_failure_is_500_and_refunds(make_client, ledger, make_account) -> None:
    await make_account("gen-fail", balance=10)
    worker = _FailingWorker()

    async with make_client(worker=worker) as client:
        response = await client.post("/generate/product", headers=session_headers("gen-fail"), json={"count": 3})

    assert response.status_code == 500
    assert response.json() == {"detail": {"code": "E_GENERATION_FAILED"}}
    assert len(worker.requests) == 1
    assert worker.requests[0].count == 3
    assert await ledger.get_balance("gen-fail") == 10
    types = [item.transaction_type for item in await ledger.get_history("gen-fail")]
    assert types.count(TransactionType.REFUND) == 1


@pytest.mark.asyncio
async def test_enterprise_generation_is_free(client, ledger, make_account) -> None:
    await make_account("gen-ent", plan_tier=PlanTier.ENTERPRISE)

    response = await client.post("/generate/video", headers=session_headers("gen-ent"), json={})

    assert response.status_code == 200
    assert await ledger.get_balance("gen-ent") == 0
    assert await ledger.get_history("gen-ent") == []


@pytest.mark.asyncio
async def test_image_count_is_bounded(client, make_account) -> None:
    await make_account("gen-bounds", balance=100)

    too_many = await client.post("/generate/apparel", headers=session_headers("gen-bounds"), json={"count": 9})
    zero = await client.post("/generate/apparel", headers=session_headers("gen-bounds"), json={"count": 0})

    assert too_many.status_code == 422
    assert zero.status_code == 422


@pytest.mark.asyncio
async def test_generation_requires_session(client) -> None:
    response = await client.post("/generate/apparel", json={"count": 1})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_free_plan_generation_is_watermarked(client, make_account) -> None:
    await make_account("gen-free-wm", balance=10)

    response = await client.post("/generate/product", headers=session_headers("gen-free-wm"), json={"count": 2})

    assert response.status_code == 200
    assert response.headers["X-Plan-Code"] == "free"
    assert response.headers["X-Watermarked"] == "true"
    assert all(url.endswith("-wm.png") for url in response.json()["images"])
    assert response.headers["X-RateLimit-Limit"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "29"


@pytest.mark.asyncio
async def test_paid_plan_generation_is_not_watermarked(make_client, make_account) -> None:
    await make_account("gen-paid", balance=10, plan_tier=PlanTier.STARTER)
    worker = _RecordingWorker()

    async with make_client(worker=worker) as client:
        response = await client.post("/generate/apparel", headers=session_headers("gen-paid"), json={"count": 1})

    assert response.status_code == 200
    assert response.headers["X-Plan-Code"] == "starter"
    assert response.headers["X-Watermarked"] == "false"
    assert worker.requests[0].watermark is False
    assert worker.requests[0].plan is PlanTier.STARTER


@pytest.mark.asyncio
async def test_generation_over_plan_rate_limit_is_429(make_client, ledger, make_account) -> None:
    await make_account("gen-burst", balance=20)
    tight_limits = {tier: {SCOPE_DEFAULT: ScopeLimit(window_seconds=86_400, limit=2)} for tier in PlanTier}

    responses = []
    async with make_client(rate_limits=tight_limits) as client:
        for _ in range(3):
            responses.append(
                await client.post("/generate/product", headers=session_headers("gen-burst"), json={"count": 1})
            )

    assert [response.status_code for response in responses] == [200, 200, 429]
    assert responses[2].json() == {"detail": {"code": "E_RATE_LIMITED", "scope": "generate", "plan": "free"}}
    assert responses[2].headers["X-RateLimit-Remaining"] == "0"
    assert await ledger.get_balance("gen-burst") == 18
