from __future__ import annotations

import math
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.clock import ensure_utc, utc_now
from studio_ledger.db.models.credit_transactions import CreditTransaction
from studio_ledger.db.models.usage_events import UsageEvent
from studio_ledger.db.models.users import CREDITS_MAX
from studio_ledger.db.repo.credit_transactions_repo import CreditTransactionsRepo
from studio_ledger.db.repo.usage_events_repo import UsageEventsRepo
from studio_ledger.db.repo.users_repo import UsersRepo
from studio_ledger.economy.credits.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidInputError,
    InvalidLimitError,
    TransactionNotFoundError,
    TransactionNotRefundableError,
    TransactionOwnershipMismatchError,
    UserNotFoundError,
)
from studio_ledger.economy.credits.plans import normalize_plan_tier
from studio_ledger.economy.credits.types import (
    CreditAccount,
    CreditTransactionResult,
    CreditTransactionView,
    PlanTier,
    TransactionDirection,
    TransactionType,
    UsageEventResult,
    UsageEventView,
)

logger = structlog.get_logger(__name__)

HISTORY_LIMIT_MIN = 1
HISTORY_LIMIT_MAX = 1000
DEFAULT_HISTORY_LIMIT = 50


def _require_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInputError("user_id is required")
    return user_id


def _require_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
    return amount


def _require_creditable_amount(amount: int) -> int:
    _require_amount(amount)
    if amount > CREDITS_MAX:
        raise InvalidAmountError(f"amount must not exceed {CREDITS_MAX}, got {amount}")
    return amount


def _require_transaction_id(transaction_id: UUID | str) -> UUID:
    if isinstance(transaction_id, UUID):
        return transaction_id
    try:
        return UUID(str(transaction_id))
    except ValueError as exc:
        raise TransactionNotFoundError(str(transaction_id)) from exc


def _to_view(transaction: CreditTransaction) -> CreditTransactionView:
    return CreditTransactionView(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        transaction_type=TransactionType(transaction.transaction_type),
        direction=TransactionDirection(transaction.direction),
        amount=transaction.amount,
        balance_after=transaction.balance_after,
        description=transaction.description,
        related_generation_id=transaction.related_generation_id,
        refund_of_transaction_id=transaction.refund_of_transaction_id,
        created_at=ensure_utc(transaction.created_at),
        metadata=dict(transaction.metadata_ or {}),
    )


def _replay(transaction: CreditTransaction) -> CreditTransactionResult:
    return CreditTransactionResult(
        transaction_id=transaction.id,
        balance_after=transaction.balance_after,
        idempotent_replay=True,
    )


def _build_transaction(
    *,
    user_id: str,
    tx_type: TransactionType,
    direction: TransactionDirection,
    amount: int,
    balance_after: int,
    description: str,
    related_generation_id: UUID | None,
    refund_of_transaction_id: UUID | None,
    idempotency_key: str | None,
    metadata: dict[str, object] | None,
    created_at: datetime,
) -> CreditTransaction:
    return CreditTransaction(
        user_id=user_id,
        transaction_type=tx_type.value,
        direction=direction.value,
        amount=amount,
        balance_after=balance_after,
        description=description,
        related_generation_id=related_generation_id,
        refund_of_transaction_id=refund_of_transaction_id,
        idempotency_key=idempotency_key,
        metadata_=dict(metadata or {}),
        created_date=created_at.date(),
        created_at=created_at,
    )


async def apply_credit(
    session: AsyncSession,
    *,
    user_id: str,
    amount: int,
    description: str,
    tx_type: TransactionType,
    related_generation_id: UUID | None = None,
    refund_of_transaction_id: UUID | None = None,
    idempotency_key: str | None = None,
    metadata: dict[str, object] | None = None,
    now_utc: datetime | None = None,
) -> CreditTransaction:
    """Increments the balance and appends the CREDIT row inside the caller's transaction."""
    _require_creditable_amount(amount)
    effective_now = now_utc or utc_now()
    balance_after = await UsersRepo.apply_credit(
        session,
        user_id=user_id,
        amount=amount,
        max_balance=CREDITS_MAX,
        now_utc=effective_now,
    )
    if balance_after is None:
        if await UsersRepo.get_balance(session, user_id) is None:
            raise UserNotFoundError(user_id)
        raise InvalidAmountError(f"credit of {amount} would push the balance past {CREDITS_MAX}")

    transaction = await CreditTransactionsRepo.create(
        session,
        transaction=_build_transaction(
            user_id=user_id,
            tx_type=tx_type,
            direction=TransactionDirection.CREDIT,
            amount=amount,
            balance_after=balance_after,
            description=description,
            related_generation_id=related_generation_id,
            refund_of_transaction_id=refund_of_transaction_id,
            idempotency_key=idempotency_key,
            metadata=metadata,
            created_at=effective_now,
        ),
    )
    return transaction


async def apply_debit(
    session: AsyncSession,
    *,
    user_id: str,
    amount: int,
    description: str,
    tx_type: TransactionType = TransactionType.USAGE,
    related_generation_id: UUID | None = None,
    metadata: dict[str, object] | None = None,
    now_utc: datetime | None = None,
) -> CreditTransaction:
    """Guarded decrement followed by the DEBIT row, inside the caller's transaction."""
    if amount > CREDITS_MAX:
        have = await UsersRepo.get_balance(session, user_id)
        if have is None:
            raise UserNotFoundError(user_id)
        raise InsufficientCreditsError(needed=amount, have=have)

    effective_now = now_utc or utc_now()
    balance_after = await UsersRepo.apply_debit(
        session,
        user_id=user_id,
        amount=amount,
        now_utc=effective_now,
    )
    if balance_after is None:
        have = await UsersRepo.get_balance(session, user_id)
        if have is None:
            raise UserNotFoundError(user_id)
        raise InsufficientCreditsError(needed=amount, have=have)

    transaction = await CreditTransactionsRepo.create(
        session,
        transaction=_build_transaction(
            user_id=user_id,
            tx_type=tx_type,
            direction=TransactionDirection.DEBIT,
            amount=amount,
            balance_after=balance_after,
            description=description,
            related_generation_id=related_generation_id,
            refund_of_transaction_id=None,
            idempotency_key=None,
            metadata=metadata,
            created_at=effective_now,
        ),
    )
    return transaction


async def apply_refund(
    session: AsyncSession,
    *,
    user_id: str,
    original_transaction_id: UUID,
    reason: str | None = None,
    now_utc: datetime | None = None,
) -> CreditTransactionResult:
    original = await CreditTransactionsRepo.get_by_id_for_update(session, original_transaction_id)
    if original is None:
        raise TransactionNotFoundError(str(original_transaction_id))
    if original.user_id != user_id:
        raise TransactionOwnershipMismatchError(str(original_transaction_id))
    if original.direction != TransactionDirection.DEBIT.value:
        raise TransactionNotRefundableError(str(original_transaction_id))

    existing = await CreditTransactionsRepo.get_refund_for(session, original.id)
    if existing is not None:
        return _replay(existing)

    refund = await apply_credit(
        session,
        user_id=user_id,
        amount=original.amount,
        description=reason or f"Refund of {original.description}",
        tx_type=TransactionType.REFUND,
        related_generation_id=original.related_generation_id,
        refund_of_transaction_id=original.id,
        metadata={"refund_of_transaction_id": str(original.id)},
        now_utc=now_utc,
    )
    return CreditTransactionResult(transaction_id=refund.id, balance_after=refund.balance_after)


class CreditLedger:
    """Per-user credit balances plus the append-only transaction log.

    Every mutating call runs in its own database transaction. The session-level
    helpers above are for callers that need to compose a ledger write with their
    own rows in one transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def get_account(self, user_id: str) -> CreditAccount:
        _require_user_id(user_id)
        async with self._session_factory() as session:
            user = await UsersRepo.get_by_id(session, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return CreditAccount(
            user_id=user.id,
            email=user.email,
            plan_tier=normalize_plan_tier(user.plan_tier),
            credits_balance=user.credits_balance,
        )

    async def ensure_account(
        self,
        user_id: str,
        *,
        email: str | None = None,
        plan_tier: PlanTier = PlanTier.FREE,
        now_utc: datetime | None = None,
    ) -> CreditAccount:
        _require_user_id(user_id)
        try:
            async with self._session_factory.begin() as session:
                if await UsersRepo.get_by_id(session, user_id) is None:
                    await UsersRepo.create(
                        session,
                        user_id=user_id,
                        email=email,
                        plan_tier=plan_tier.value,
                        now_utc=now_utc or utc_now(),
                    )
                    logger.info("credit_account_created", user_id=user_id, plan_tier=plan_tier.value)
        except IntegrityError:
            # Created concurrently by another request.
            pass
        return await self.get_account(user_id)

    async def set_plan_tier(
        self,
        user_id: str,
        plan_tier: PlanTier,
        *,
        now_utc: datetime | None = None,
    ) -> CreditAccount:
        _require_user_id(user_id)
        async with self._session_factory.begin() as session:
            updated = await UsersRepo.set_plan_tier(
                session,
                user_id=user_id,
                plan_tier=plan_tier.value,
                now_utc=now_utc or utc_now(),
            )
        if not updated:
            raise UserNotFoundError(user_id)
        logger.info("credit_account_plan_changed", user_id=user_id, plan_tier=plan_tier.value)
        return await self.get_account(user_id)

    async def get_balance(self, user_id: str) -> int:
        _require_user_id(user_id)
        async with self._session_factory() as session:
            balance = await UsersRepo.get_balance(session, user_id)
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    async def check_sufficient(self, user_id: str, amount: int) -> bool:
        _require_user_id(user_id)
        _require_amount(amount)
        return await self.get_balance(user_id) >= amount

    async def credit(
        self,
        user_id: str,
        *,
        amount: int,
        description: str,
        tx_type: TransactionType,
        related_generation_id: UUID | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, object] | None = None,
        now_utc: datetime | None = None,
    ) -> CreditTransactionResult:
        _require_user_id(user_id)
        _require_creditable_amount(amount)
        try:
            async with self._session_factory.begin() as session:
                if idempotency_key is not None:
                    existing = await CreditTransactionsRepo.get_by_idempotency_key(session, idempotency_key)
                    if existing is not None:
                        if existing.user_id != user_id:
                            raise InvalidInputError("idempotency_key already used by another user")
                        return _replay(existing)

                transaction = await apply_credit(
                    session,
                    user_id=user_id,
                    amount=amount,
                    description=description,
                    tx_type=tx_type,
                    related_generation_id=related_generation_id,
                    idempotency_key=idempotency_key,
                    metadata=metadata,
                    now_utc=now_utc,
                )
                result = CreditTransactionResult(
                    transaction_id=transaction.id,
                    balance_after=transaction.balance_after,
                )
        except IntegrityError:
            if idempotency_key is None:
                raise
            async with self._session_factory() as session:
                existing = await CreditTransactionsRepo.get_by_idempotency_key(session, idempotency_key)
            if existing is None:
                raise
            return _replay(existing)

        logger.info(
            "credit_credit_applied",
            user_id=user_id,
            amount=amount,
            tx_type=tx_type.value,
            transaction_id=str(result.transaction_id),
            balance_after=result.balance_after,
        )
        return result

    async def debit(
        self,
        user_id: str,
        *,
        amount: int,
        description: str,
        related_generation_id: UUID | None = None,
        metadata: dict[str, object] | None = None,
        now_utc: datetime | None = None,
    ) -> CreditTransactionResult:
        _require_user_id(user_id)
        _require_amount(amount)
        try:
            async with self._session_factory.begin() as session:
                transaction = await apply_debit(
                    session,
                    user_id=user_id,
                    amount=amount,
                    description=description,
                    related_generation_id=related_generation_id,
                    metadata=metadata,
                    now_utc=now_utc,
                )
                result = CreditTransactionResult(
                    transaction_id=transaction.id,
                    balance_after=transaction.balance_after,
                )
        except InsufficientCreditsError as exc:
            logger.info(
                "credit_debit_rejected",
                user_id=user_id,
                needed=exc.needed,
                have=exc.have,
            )
            raise

        logger.info(
            "credit_debit_applied",
            user_id=user_id,
            amount=amount,
            transaction_id=str(result.transaction_id),
            balance_after=result.balance_after,
        )
        return result

    async def refund(
        self,
        user_id: str,
        original_transaction_id: UUID | str,
        reason: str | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> CreditTransactionResult:
        _require_user_id(user_id)
        original_id = _require_transaction_id(original_transaction_id)
        try:
            async with self._session_factory.begin() as session:
                result = await apply_refund(
                    session,
                    user_id=user_id,
                    original_transaction_id=original_id,
                    reason=reason,
                    now_utc=now_utc,
                )
        except IntegrityError:
            # Lost the race on the unique refund_of_transaction_id column.
            async with self._session_factory() as session:
                existing = await CreditTransactionsRepo.get_refund_for(session, original_id)
            if existing is None:
                raise
            result = _replay(existing)

        logger.info(
            "credit_refund_applied",
            user_id=user_id,
            original_transaction_id=str(original_id),
            transaction_id=str(result.transaction_id),
            balance_after=result.balance_after,
            idempotent_replay=result.idempotent_replay,
        )
        return result

    async def get_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[CreditTransactionView]:
        _require_user_id(user_id)
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidLimitError(f"limit must be an integer, got {limit!r}")
        if not HISTORY_LIMIT_MIN <= limit <= HISTORY_LIMIT_MAX:
            raise InvalidLimitError(f"limit must be within {HISTORY_LIMIT_MIN}..{HISTORY_LIMIT_MAX}")
        async with self._session_factory() as session:
            transactions = await CreditTransactionsRepo.list_for_user(session, user_id=user_id, limit=limit)
        return [_to_view(transaction) for transaction in transactions]

    async def get_history_between(
        self,
        user_id: str,
        *,
        from_utc: datetime,
        to_utc: datetime,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[CreditTransactionView]:
        _require_user_id(user_id)
        async with self._session_factory() as session:
            transactions = await CreditTransactionsRepo.list_for_user_between(
                session,
                user_id=user_id,
                from_utc=from_utc,
                to_utc=to_utc,
                limit=max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, int(limit))),
            )
        return [_to_view(transaction) for transaction in transactions]

    async def get_usage_events_between(
        self,
        user_id: str,
        *,
        from_utc: datetime,
        to_utc: datetime,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[UsageEventView]:
        _require_user_id(user_id)
        async with self._session_factory() as session:
            events = await UsageEventsRepo.list_for_user_between(
                session,
                user_id=user_id,
                from_utc=from_utc,
                to_utc=to_utc,
                limit=max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, int(limit))),
            )
        return [
            UsageEventView(
                event_id=event.id,
                event_type=event.event_type,
                cost=float(event.cost),
                tokens=event.tokens,
                request_id=event.request_id,
                created_at=ensure_utc(event.created_at),
            )
            for event in events
        ]

    async def record_usage_event(
        self,
        user_id: str,
        *,
        event_type: str,
        cost: float,
        tokens: int | None = None,
        request_id: str | None = None,
        metadata: dict[str, object] | None = None,
        now_utc: datetime | None = None,
    ) -> UsageEventResult:
        """Debits ceil(cost) credits and stores the usage event in one transaction.

        A repeated request_id for the same user returns the stored event with
        was_duplicate=True and charges nothing.
        """
        _require_user_id(user_id)
        if not isinstance(event_type, str) or not event_type.strip():
            raise InvalidInputError("event_type is required")
        if isinstance(cost, bool) or not isinstance(cost, (int, float)) or not math.isfinite(cost) or cost <= 0:
            raise InvalidAmountError("cost must be a positive number")
        if tokens is not None and (isinstance(tokens, bool) or not isinstance(tokens, int) or tokens < 0):
            raise InvalidInputError("tokens must be a non-negative integer")

        credits = math.ceil(cost)
        try:
            async with self._session_factory.begin() as session:
                if request_id is not None:
                    existing = await UsageEventsRepo.get_by_request_id(
                        session,
                        user_id=user_id,
                        request_id=request_id,
                    )
                    if existing is not None:
                        balance = await UsersRepo.get_balance(session, user_id)
                        return UsageEventResult(
                            event_id=existing.id,
                            new_balance=int(balance or 0),
                            was_duplicate=True,
                        )

                effective_now = now_utc or utc_now()
                transaction = await apply_debit(
                    session,
                    user_id=user_id,
                    amount=credits,
                    description=f"Usage: {event_type}",
                    metadata={"event_type": event_type, "request_id": request_id},
                    now_utc=effective_now,
                )
                usage_event = await UsageEventsRepo.create(
                    session,
                    usage_event=UsageEvent(
                        user_id=user_id,
                        event_type=event_type,
                        cost=float(cost),
                        tokens=tokens,
                        request_id=request_id,
                        metadata_=dict(metadata or {}),
                        credit_transaction_id=transaction.id,
                        created_date=effective_now.date(),
                        created_at=effective_now,
                    ),
                )
                result = UsageEventResult(
                    event_id=usage_event.id,
                    new_balance=transaction.balance_after,
                    was_duplicate=False,
                    credits_charged=credits,
                )
        except IntegrityError:
            if request_id is None:
                raise
            async with self._session_factory() as session:
                existing = await UsageEventsRepo.get_by_request_id(
                    session,
                    user_id=user_id,
                    request_id=request_id,
                )
                balance = await UsersRepo.get_balance(session, user_id)
            if existing is None:
                raise
            return UsageEventResult(event_id=existing.id, new_balance=int(balance or 0), was_duplicate=True)

        logger.info(
            "credit_usage_event_recorded",
            user_id=user_id,
            event_type=event_type,
            event_id=result.event_id,
            credits_charged=credits,
            balance_after=result.new_balance,
        )
        return result
