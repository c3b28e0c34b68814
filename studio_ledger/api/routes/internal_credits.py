from __future__ import annotations

from typing import Literal
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from studio_ledger.api.deps import assert_internal_access, get_ledger
from studio_ledger.economy.credits.errors import (
    InvalidInputError,
    TransactionNotFoundError,
    TransactionNotRefundableError,
    TransactionOwnershipMismatchError,
    UserNotFoundError,
)
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.monthly_grant import run_monthly_grant_for_all_users
from studio_ledger.economy.credits.types import (
    CreditAccount,
    CreditTransactionResult,
    PlanTier,
    TransactionType,
)

router = APIRouter(prefix="/internal/credits", tags=["internal", "credits"])
logger = structlog.get_logger(__name__)


class AccountUpsertRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    email: str | None = Field(default=None, max_length=320)
    plan_tier: PlanTier = PlanTier.FREE


class PlanChangeRequest(BaseModel):
    plan_tier: PlanTier


class AccountResponse(BaseModel):
    user_id: str
    email: str | None
    plan_tier: PlanTier
    credits_balance: int


class GrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(gt=0, le=1_000_000)
    tx_type: Literal["purchase", "grant"] = "purchase"
    description: str = Field(default="Credit purchase", min_length=1, max_length=500)
    idempotency_key: str = Field(min_length=8, max_length=128)
    metadata: dict[str, object] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    transaction_id: UUID
    reason: str | None = Field(default=None, max_length=500)


class TransactionResponse(BaseModel):
    transaction_id: UUID
    balance_after: int
    idempotent_replay: bool


class MonthlyGrantRunRequest(BaseModel):
    period: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    limit: int = Field(default=5000, ge=1, le=50_000)
    dry_run: bool = False


class MonthlyGrantRunResponse(BaseModel):
    period: str
    total: int
    granted: int
    skipped: int
    failed: int


def _account_response(account: CreditAccount) -> AccountResponse:
    return AccountResponse(
        user_id=account.user_id,
        email=account.email,
        plan_tier=account.plan_tier,
        credits_balance=account.credits_balance,
    )


def _transaction_response(result: CreditTransactionResult) -> TransactionResponse:
    return TransactionResponse(
        transaction_id=result.transaction_id,
        balance_after=result.balance_after,
        idempotent_replay=result.idempotent_replay,
    )


@router.post("/accounts", response_model=AccountResponse)
async def upsert_account(
    request: Request,
    payload: AccountUpsertRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> AccountResponse:
    assert_internal_access(request)
    account = await ledger.ensure_account(payload.user_id, email=payload.email, plan_tier=payload.plan_tier)
    return _account_response(account)


@router.put("/accounts/{user_id}/plan", response_model=AccountResponse)
async def change_plan(
    request: Request,
    user_id: str,
    payload: PlanChangeRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> AccountResponse:
    assert_internal_access(request)
    try:
        account = await ledger.set_plan_tier(user_id, payload.plan_tier)
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_ACCOUNT_NOT_FOUND"}) from exc
    return _account_response(account)


@router.post("/grant", response_model=TransactionResponse)
async def grant_credits(
    request: Request,
    payload: GrantRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> TransactionResponse:
    assert_internal_access(request)
    try:
        result = await ledger.credit(
            payload.user_id,
            amount=payload.amount,
            description=payload.description,
            tx_type=TransactionType(payload.tx_type),
            idempotency_key=payload.idempotency_key,
            metadata=payload.metadata,
        )
    except UserNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_ACCOUNT_NOT_FOUND"}) from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=409, detail={"code": "E_IDEMPOTENCY_CONFLICT"}) from exc
    return _transaction_response(result)


@router.post("/refund", response_model=TransactionResponse)
async def refund_transaction(
    request: Request,
    payload: RefundRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> TransactionResponse:
    assert_internal_access(request)
    try:
        result = await ledger.refund(payload.user_id, payload.transaction_id, payload.reason)
    except TransactionNotFoundError as exc:
        raise HTTPException(status_code=404, detail={"code": "E_TRANSACTION_NOT_FOUND"}) from exc
    except TransactionOwnershipMismatchError as exc:
        raise HTTPException(status_code=403, detail={"code": "E_TRANSACTION_OWNERSHIP_MISMATCH"}) from exc
    except TransactionNotRefundableError as exc:
        raise HTTPException(status_code=409, detail={"code": "E_TRANSACTION_NOT_REFUNDABLE"}) from exc
    return _transaction_response(result)


@router.post("/monthly-grant", response_model=MonthlyGrantRunResponse)
async def run_monthly_grant(
    request: Request,
    payload: MonthlyGrantRunRequest,
    ledger: CreditLedger = Depends(get_ledger),
) -> MonthlyGrantRunResponse:
    assert_internal_access(request)
    _, summary = await run_monthly_grant_for_all_users(
        ledger,
        period=payload.period,
        limit=payload.limit,
        dry_run=payload.dry_run,
    )
    return MonthlyGrantRunResponse(
        period=summary.period,
        total=summary.total,
        granted=summary.granted,
        skipped=summary.skipped,
        failed=summary.failed,
    )
