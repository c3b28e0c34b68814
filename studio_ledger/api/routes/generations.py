from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from studio_ledger.api.deps import (
    enforce_generation_rate_limit,
    get_current_user,
    get_generation_worker,
    get_guard,
    get_tracker,
)
from studio_ledger.api.schemas import CamelModel
from studio_ledger.economy.credits.guard import (
    CreditGuard,
    GuardContext,
    GuardErrorCode,
    GuardFailure,
    GuardOptions,
)
from studio_ledger.economy.credits.plans import feature_enabled
from studio_ledger.economy.credits.tracker import GenerationLogInput, GenerationTracker
from studio_ledger.economy.credits.types import GenerationType
from studio_ledger.services.generation_worker import (
    GenerationOutput,
    GenerationRequest,
    GenerationWorker,
)
from studio_ledger.services.session_auth import SessionUser

router = APIRouter(
    prefix="/generate",
    tags=["generations"],
    dependencies=[Depends(enforce_generation_rate_limit)],
)
logger = structlog.get_logger(__name__)

MAX_IMAGES_PER_REQUEST = 8

GENERATION_DESCRIPTIONS = {
    GenerationType.APPAREL: "Apparel generation",
    GenerationType.PRODUCT: "Product generation",
    GenerationType.VIDEO: "Video generation",
}


class GenerateImagesRequest(BaseModel):
    count: int = Field(default=1, ge=1, le=MAX_IMAGES_PER_REQUEST)
    prompt: str = Field(default="", max_length=4000)
    settings: dict[str, object] = Field(default_factory=dict)


class GenerateVideoRequest(BaseModel):
    prompt: str = Field(default="", max_length=4000)
    settings: dict[str, object] = Field(default_factory=dict)


class GenerateImagesResponse(BaseModel):
    images: list[str]


class GenerateVideoResponse(CamelModel):
    video_url: str


class GuardFailureBody(CamelModel):
    ok: bool = False
    code: str
    message: str
    needed: int | None = None
    have: int | None = None
    purchase_hint_url: str | None = None


def _failure_response(failure: GuardFailure) -> JSONResponse:
    if failure.code is GuardErrorCode.UNKNOWN:
        raise HTTPException(status_code=500, detail={"code": "E_GENERATION_FAILED"})

    status_code = 402 if failure.code is GuardErrorCode.INSUFFICIENT_CREDITS else 403
    body = GuardFailureBody(
        code=failure.code.value,
        message=failure.message,
        needed=failure.needed,
        have=failure.have,
        purchase_hint_url=failure.purchase_hint_url,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


async def _run_generation(
    *,
    user: SessionUser,
    generation_type: GenerationType,
    count: int,
    prompt: str,
    settings: dict[str, object],
    guard: CreditGuard,
    tracker: GenerationTracker,
    worker: GenerationWorker,
    response: Response,
) -> GenerationOutput | JSONResponse:
    async def work(context: GuardContext) -> GenerationOutput:
        watermark = feature_enabled(context.plan, "watermarking")
        response.headers["X-Plan-Code"] = context.plan.value
        response.headers["X-Watermarked"] = str(watermark).lower()
        output = await worker.generate(
            GenerationRequest(
                user_id=context.user_id,
                plan=context.plan,
                generation_type=generation_type,
                count=count,
                prompt=prompt,
                settings=settings,
                watermark=watermark,
            )
        )
        reservation = context.reservation
        await tracker.log_success(
            GenerationLogInput(
                user_id=context.user_id,
                generation_type=generation_type,
                count=count,
                credits_used=reservation.credits_used if reservation is not None else 0,
                credit_transaction_id=reservation.transaction_id if reservation is not None else None,
                prompt=prompt,
                settings=settings,
                result_urls=output.result_urls,
            )
        )
        return output

    try:
        result = await guard.run_guarded(
            user.id,
            GuardOptions(
                generation_type=generation_type,
                count=count,
                description=GENERATION_DESCRIPTIONS[generation_type],
            ),
            work,
        )
    except Exception as exc:
        logger.error(
            "generation_request_failed",
            user_id=user.id,
            generation_type=generation_type.value,
            error_type=type(exc).__name__,
        )
        raise HTTPException(status_code=500, detail={"code": "E_GENERATION_FAILED"}) from exc

    if isinstance(result, GuardFailure):
        return _failure_response(result)
    return result.data


@router.post("/apparel", response_model=GenerateImagesResponse)
async def generate_apparel(
    payload: GenerateImagesRequest,
    response: Response,
    user: SessionUser = Depends(get_current_user),
    guard: CreditGuard = Depends(get_guard),
    tracker: GenerationTracker = Depends(get_tracker),
    worker: GenerationWorker = Depends(get_generation_worker),
) -> GenerateImagesResponse | JSONResponse:
    output = await _run_generation(
        user=user,
        generation_type=GenerationType.APPAREL,
        count=payload.count,
        prompt=payload.prompt,
        settings=payload.settings,
        guard=guard,
        tracker=tracker,
        worker=worker,
        response=response,
    )
    if isinstance(output, JSONResponse):
        return output
    return GenerateImagesResponse(images=output.result_urls)


@router.post("/product", response_model=GenerateImagesResponse)
async def generate_product(
    payload: GenerateImagesRequest,
    response: Response,
    user: SessionUser = Depends(get_current_user),
    guard: CreditGuard = Depends(get_guard),
    tracker: GenerationTracker = Depends(get_tracker),
    worker: GenerationWorker = Depends(get_generation_worker),
) -> GenerateImagesResponse | JSONResponse:
    output = await _run_generation(
        user=user,
        generation_type=GenerationType.PRODUCT,
        count=payload.count,
        prompt=payload.prompt,
        settings=payload.settings,
        guard=guard,
        tracker=tracker,
        worker=worker,
        response=response,
    )
    if isinstance(output, JSONResponse):
        return output
    return GenerateImagesResponse(images=output.result_urls)


@router.post("/video", response_model=GenerateVideoResponse)
async def generate_video(
    payload: GenerateVideoRequest,
    response: Response,
    user: SessionUser = Depends(get_current_user),
    guard: CreditGuard = Depends(get_guard),
    tracker: GenerationTracker = Depends(get_tracker),
    worker: GenerationWorker = Depends(get_generation_worker),
) -> GenerateVideoResponse | JSONResponse:
    output = await _run_generation(
        user=user,
        generation_type=GenerationType.VIDEO,
        count=1,
        prompt=payload.prompt,
        settings=payload.settings,
        guard=guard,
        tracker=tracker,
        worker=worker,
        response=response,
    )
    if isinstance(output, JSONResponse):
        return output
    return GenerateVideoResponse(video_url=output.result_urls[0])
