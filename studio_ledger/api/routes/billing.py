from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import Field

from studio_ledger.api.deps import get_app_settings, get_current_user, get_ledger
from studio_ledger.api.schemas import CamelModel
from studio_ledger.core.clock import utc_now
from studio_ledger.core.config import Settings
from studio_ledger.economy.credits.errors import (
    InsufficientCreditsError,
    InvalidInputError,
    UserNotFoundError,
)
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.plans import is_low_credit
from studio_ledger.services.session_auth import SessionUser

router = APIRouter(prefix="/billing", tags=["billing"])
logger = structlog.get_logger(__name__)

HISTORY_DAYS_DEFAULT = 30
HISTORY_DAYS_MIN = 7
HISTORY_DAYS_MAX = 365
HISTORY_LIMIT_DEFAULT = 50
HISTORY_LIMIT_MIN = 10
HISTORY_LIMIT_MAX = 200


class BalanceResponse(CamelModel):
    balance: int
    plan_tier: str
    is_low_credit: bool
    purchase_hint_url: str


class CreditHistoryItem(CamelModel):
    id: UUID
    transaction_type: str
    direction: str
    amount: int
    delta: int
    balance_after: int
    description: str
    related_generation_id: UUID | None
    refund_of_transaction_id: UUID | None
    metadata: dict[str, Any]
    created_at: datetime


class UsageHistoryItem(CamelModel):
    id: int
    event_type: str
    cost: float
    tokens: int | None
    request_id: str | None
    created_at: datetime


class HistoryResponse(CamelModel):
    from_: datetime = Field(alias="from")
    to: datetime
    credits: list[CreditHistoryItem]
    usage: list[UsageHistoryItem]


class RecordUsageResponse(CamelModel):
    event_id: int
    new_balance: int
    was_duplicate: bool


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "E_INVALID_REQUEST", "message": message})


def _parse_query_int(raw: str | None, *, name: str, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise _bad_request(f"{name} must be an integer") from exc


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user: SessionUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
    settings: Settings = Depends(get_app_settings),
) -> BalanceResponse:
    try:
        account = await ledger.get_account(user.id)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_ACCOUNT_NOT_FOUND"}) from exc

    return BalanceResponse(
        balance=account.credits_balance,
        plan_tier=account.plan_tier.value,
        is_low_credit=is_low_credit(account.credits_balance, threshold=settings.low_credit_threshold),
        purchase_hint_url=settings.purchase_hint_url,
    )


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    days: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    user: SessionUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
) -> HistoryResponse:
    resolved_days = _clamp(
        _parse_query_int(days, name="days", default=HISTORY_DAYS_DEFAULT),
        HISTORY_DAYS_MIN,
        HISTORY_DAYS_MAX,
    )
    resolved_limit = _clamp(
        _parse_query_int(limit, name="limit", default=HISTORY_LIMIT_DEFAULT),
        HISTORY_LIMIT_MIN,
        HISTORY_LIMIT_MAX,
    )
    to_utc = utc_now()
    from_utc = to_utc - timedelta(days=resolved_days)

    credits = await ledger.get_history_between(
        user.id,
        from_utc=from_utc,
        to_utc=to_utc,
        limit=resolved_limit,
    )
    usage = await ledger.get_usage_events_between(
        user.id,
        from_utc=from_utc,
        to_utc=to_utc,
        limit=resolved_limit,
    )
    return HistoryResponse(
        from_=from_utc,
        to=to_utc,
        credits=[
            CreditHistoryItem(
                id=item.transaction_id,
                transaction_type=item.transaction_type.value,
                direction=item.direction.value,
                amount=item.amount,
                delta=item.delta,
                balance_after=item.balance_after,
                description=item.description,
                related_generation_id=item.related_generation_id,
                refund_of_transaction_id=item.refund_of_transaction_id,
                metadata=item.metadata,
                created_at=item.created_at,
            )
            for item in credits
        ],
        usage=[
            UsageHistoryItem(
                id=item.event_id,
                event_type=item.event_type,
                cost=item.cost,
                tokens=item.tokens,
                request_id=item.request_id,
                created_at=item.created_at,
            )
            for item in usage
        ],
    )


def _parse_record_usage_body(body: object) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise _bad_request("Invalid request body")

    event_type = body.get("eventType")
    if not isinstance(event_type, str) or not event_type.strip():
        raise _bad_request("eventType is required")

    cost = body.get("cost")
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or not math.isfinite(cost) or cost <= 0:
        raise _bad_request("cost must be a positive number")

    tokens = body.get("tokens")
    if tokens is not None and (isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0):
        raise _bad_request("tokens must be a non-negative integer")

    request_id = body.get("requestId")
    if request_id is not None and (not isinstance(request_id, (str, int)) or isinstance(request_id, bool)):
        raise _bad_request("requestId must be a string")

    metadata = body.get("metadata")
    return {
        "event_type": event_type.strip(),
        "cost": float(cost),
        "tokens": tokens,
        "request_id": str(request_id) if request_id is not None else None,
        "metadata": metadata if isinstance(metadata, dict) else {},
    }


@router.post("/record-usage", response_model=RecordUsageResponse)
async def record_usage(
    request: Request,
    user: SessionUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
) -> RecordUsageResponse:
    try:
        body = await request.json()
    except ValueError as exc:
        raise _bad_request("Invalid request body") from exc
    parsed = _parse_record_usage_body(body)

    try:
        result = await ledger.record_usage_event(user.id, **parsed)
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={"code": "E_INSUFFICIENT_CREDITS", "needed": exc.needed, "have": exc.have},
        ) from exc
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_ACCOUNT_NOT_FOUND"}) from exc
    except InvalidInputError as exc:
        raise _bad_request(str(exc)) from exc

    return RecordUsageResponse(
        event_id=result.event_id,
        new_balance=result.new_balance,
        was_duplicate=result.was_duplicate,
    )
