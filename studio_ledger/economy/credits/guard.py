from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Literal, TypeVar
from uuid import UUID

import structlog

from studio_ledger.economy.credits.costs import cost_for_generation
from studio_ledger.economy.credits.errors import InsufficientCreditsError
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.types import GenerationType, PlanTier

logger = structlog.get_logger(__name__)

T = TypeVar("T")

AUTO_REFUND_REASON = "Auto-refund: generation failed"
INSUFFICIENT_CREDITS_MESSAGE = "Not enough credits to run this generation."


class GuardState(str, Enum):
    RESOLVING = "RESOLVING"
    PRICING = "PRICING"
    UNLIMITED_BYPASS = "UNLIMITED_BYPASS"
    INSUFFICIENT = "INSUFFICIENT"
    RESERVED = "RESERVED"
    EXECUTING = "EXECUTING"
    COMMITTED = "COMMITTED"
    REFUNDING = "REFUNDING"
    REFUNDED_FAILED = "REFUNDED_FAILED"


class GuardErrorCode(str, Enum):
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    PLAN_BLOCKED = "PLAN_BLOCKED"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class GuardOptions:
    generation_type: GenerationType
    count: int
    description: str | None = None
    auto_refund_on_failure: bool = True


@dataclass(slots=True)
class CreditReservation:
    transaction_id: UUID
    credits_used: int
    balance_after: int


@dataclass(slots=True)
class GuardContext:
    user_id: str
    plan: PlanTier
    reservation: CreditReservation | None = None


@dataclass(slots=True)
class GuardSuccess(Generic[T]):
    data: T
    reservation: CreditReservation | None = None
    ok: Literal[True] = True


@dataclass(slots=True)
class GuardFailure:
    code: GuardErrorCode
    message: str
    needed: int | None = None
    have: int | None = None
    purchase_hint_url: str | None = None
    state: GuardState = GuardState.INSUFFICIENT
    ok: Literal[False] = False


GuardResult = GuardSuccess[T] | GuardFailure
RefundFailureHandler = Callable[..., Awaitable[None]]


def _normalized_count(count: object) -> int:
    if isinstance(count, int) and not isinstance(count, bool) and count >= 1:
        return count
    return 1


class CreditGuard:
    """Prices a generation, reserves the credits, runs the work and refunds on failure."""

    def __init__(
        self,
        ledger: CreditLedger,
        *,
        purchase_hint_url: str = "/billing/credits",
        refund_failure_handler: RefundFailureHandler | None = None,
    ) -> None:
        self._ledger = ledger
        self._purchase_hint_url = purchase_hint_url
        self._refund_failure_handler = refund_failure_handler

    def _insufficient(self, *, needed: int, have: int) -> GuardFailure:
        return GuardFailure(
            code=GuardErrorCode.INSUFFICIENT_CREDITS,
            message=INSUFFICIENT_CREDITS_MESSAGE,
            needed=needed,
            have=have,
            purchase_hint_url=self._purchase_hint_url,
            state=GuardState.INSUFFICIENT,
        )

    async def _admit(
        self,
        user_id: str,
        options: GuardOptions,
    ) -> GuardFailure | GuardContext:
        state = GuardState.RESOLVING
        try:
            account = await self._ledger.get_account(user_id)

            state = GuardState.PRICING
            required = cost_for_generation(account.plan_tier, options.generation_type, options.count)
            if required == 0:
                logger.info(
                    "credit_guard_unlimited_bypass",
                    user_id=user_id,
                    plan_tier=account.plan_tier.value,
                    generation_type=GenerationType(options.generation_type).value,
                )
                return GuardContext(user_id=account.user_id, plan=account.plan_tier)

            if account.credits_balance < required:
                logger.info(
                    "credit_guard_insufficient",
                    user_id=user_id,
                    needed=required,
                    have=account.credits_balance,
                )
                return self._insufficient(needed=required, have=account.credits_balance)

            generation_type = GenerationType(options.generation_type)
            normalized_count = _normalized_count(options.count)
            transaction = await self._ledger.debit(
                account.user_id,
                amount=required,
                description=options.description
                or f"{generation_type.value} generation x{normalized_count}",
                metadata={"generation_type": generation_type.value, "count": normalized_count},
            )
        except InsufficientCreditsError as exc:
            logger.info("credit_guard_insufficient", user_id=user_id, needed=exc.needed, have=exc.have)
            return self._insufficient(needed=exc.needed, have=exc.have)
        except Exception as exc:
            logger.warning(
                "credit_guard_admission_failed",
                user_id=user_id,
                state=state.value,
                error_type=type(exc).__name__,
            )
            return GuardFailure(
                code=GuardErrorCode.UNKNOWN,
                message=str(exc) or "Unexpected error",
                state=state,
            )

        reservation = CreditReservation(
            transaction_id=transaction.transaction_id,
            credits_used=required,
            balance_after=transaction.balance_after,
        )
        logger.info(
            "credit_guard_reserved",
            user_id=user_id,
            transaction_id=str(reservation.transaction_id),
            credits_used=reservation.credits_used,
            balance_after=reservation.balance_after,
        )
        return GuardContext(user_id=account.user_id, plan=account.plan_tier, reservation=reservation)

    async def _refund_after_failure(self, context: GuardContext, error: BaseException) -> None:
        reservation = context.reservation
        if reservation is None:
            return

        logger.warning(
            "credit_guard_refunding",
            user_id=context.user_id,
            transaction_id=str(reservation.transaction_id),
            error_type=type(error).__name__,
        )
        try:
            await asyncio.shield(
                self._ledger.refund(
                    context.user_id,
                    reservation.transaction_id,
                    AUTO_REFUND_REASON,
                )
            )
        except Exception as refund_error:
            logger.error(
                "credit_guard_refund_failed",
                user_id=context.user_id,
                transaction_id=str(reservation.transaction_id),
                error_type=type(refund_error).__name__,
                exc_info=refund_error,
            )
            if self._refund_failure_handler is not None:
                try:
                    await self._refund_failure_handler(
                        user_id=context.user_id,
                        transaction_id=reservation.transaction_id,
                        reason=AUTO_REFUND_REASON,
                    )
                except Exception as handler_error:
                    logger.error(
                        "credit_guard_refund_handler_failed",
                        user_id=context.user_id,
                        transaction_id=str(reservation.transaction_id),
                        error_type=type(handler_error).__name__,
                    )
            return

        logger.info(
            "credit_guard_refunded",
            user_id=context.user_id,
            transaction_id=str(reservation.transaction_id),
            state=GuardState.REFUNDED_FAILED.value,
        )

    async def run_guarded(
        self,
        user_id: str,
        options: GuardOptions,
        work: Callable[[GuardContext], Awaitable[T]],
    ) -> GuardResult[T]:
        admission = await self._admit(user_id, options)
        if isinstance(admission, GuardFailure):
            return admission

        context = admission
        try:
            data = await work(context)
        except (Exception, asyncio.CancelledError) as exc:
            if options.auto_refund_on_failure:
                await self._refund_after_failure(context, exc)
            raise

        logger.info(
            "credit_guard_committed",
            user_id=user_id,
            transaction_id=str(context.reservation.transaction_id) if context.reservation else None,
        )
        return GuardSuccess(data=data, reservation=context.reservation)
