from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

import structlog

from studio_ledger.core.clock import utc_now
from studio_ledger.db.repo.credit_transactions_repo import CreditTransactionsRepo
from studio_ledger.db.repo.users_repo import UsersRepo
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.plans import credits_for_plan
from studio_ledger.economy.credits.types import PlanTier, TransactionType

logger = structlog.get_logger(__name__)

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
DEFAULT_BATCH_LIMIT = 5000

REASON_UNLIMITED_OR_ZERO = "unlimited_or_zero"
REASON_ALREADY_GRANTED = "already_granted"
REASON_DRY_RUN = "dry_run"


@dataclass(slots=True)
class MonthlyGrantResult:
    user_id: str
    plan_tier: PlanTier
    amount: int
    period: str
    granted: bool
    reason: str | None = None


@dataclass(slots=True)
class MonthlyGrantSummary:
    period: str
    total: int
    granted: int
    skipped: int
    failed: int


def resolve_period(period: str | None = None, *, now_utc: datetime | None = None) -> str:
    """Returns `period` when it is a valid YYYY-MM string, else the current UTC month."""
    if period and PERIOD_PATTERN.match(period):
        return period
    return (now_utc or utc_now()).strftime("%Y-%m")


def monthly_grant_idempotency_key(*, user_id: str, period: str) -> str:
    return f"monthly_grant:{user_id}:{period}"


async def ensure_monthly_grant_for_user(
    ledger: CreditLedger,
    user_id: str,
    *,
    period: str | None = None,
    dry_run: bool = False,
    now_utc: datetime | None = None,
) -> MonthlyGrantResult:
    resolved_period = resolve_period(period, now_utc=now_utc)
    account = await ledger.get_account(user_id)
    amount = credits_for_plan(account.plan_tier) or 0

    def _result(*, granted: bool, reason: str | None = None) -> MonthlyGrantResult:
        return MonthlyGrantResult(
            user_id=user_id,
            plan_tier=account.plan_tier,
            amount=amount,
            period=resolved_period,
            granted=granted,
            reason=reason,
        )

    if amount <= 0:
        return _result(granted=False, reason=REASON_UNLIMITED_OR_ZERO)

    idempotency_key = monthly_grant_idempotency_key(user_id=user_id, period=resolved_period)
    if dry_run:
        async with ledger.session_factory() as session:
            existing = await CreditTransactionsRepo.get_by_idempotency_key(session, idempotency_key)
        if existing is not None:
            return _result(granted=False, reason=REASON_ALREADY_GRANTED)
        return _result(granted=False, reason=REASON_DRY_RUN)

    transaction = await ledger.credit(
        user_id,
        amount=amount,
        description=f"Monthly credit grant {resolved_period}",
        tx_type=TransactionType.MONTHLY_RESET,
        idempotency_key=idempotency_key,
        metadata={"period": resolved_period, "plan_code": account.plan_tier.value},
        now_utc=now_utc,
    )
    if transaction.idempotent_replay:
        return _result(granted=False, reason=REASON_ALREADY_GRANTED)
    return _result(granted=True)


async def run_monthly_grant_for_all_users(
    ledger: CreditLedger,
    *,
    period: str | None = None,
    limit: int = DEFAULT_BATCH_LIMIT,
    dry_run: bool = False,
    now_utc: datetime | None = None,
) -> tuple[list[MonthlyGrantResult], MonthlyGrantSummary]:
    resolved_period = resolve_period(period, now_utc=now_utc)
    async with ledger.session_factory() as session:
        user_ids = await UsersRepo.list_ids(session, limit=limit)

    results: list[MonthlyGrantResult] = []
    failed = 0
    for user_id in user_ids:
        try:
            result = await ensure_monthly_grant_for_user(
                ledger,
                user_id,
                period=resolved_period,
                dry_run=dry_run,
                now_utc=now_utc,
            )
        except Exception as exc:
            failed += 1
            logger.warning(
                "monthly_grant_user_failed",
                user_id=user_id,
                period=resolved_period,
                error_type=type(exc).__name__,
            )
            continue
        results.append(result)

    granted = sum(1 for result in results if result.granted)
    summary = MonthlyGrantSummary(
        period=resolved_period,
        total=len(user_ids),
        granted=granted,
        skipped=len(results) - granted,
        failed=failed,
    )
    logger.info(
        "monthly_grant_run_completed",
        period=summary.period,
        total=summary.total,
        granted=summary.granted,
        skipped=summary.skipped,
        failed=summary.failed,
        dry_run=dry_run,
    )
    return results, summary
