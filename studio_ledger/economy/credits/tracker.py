from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.clock import utc_now
from studio_ledger.db.models.generations import Generation
from studio_ledger.db.repo.credit_transactions_repo import CreditTransactionsRepo
from studio_ledger.db.repo.generations_repo import GenerationsRepo
from studio_ledger.db.repo.usage_analytics_repo import UsageAnalyticsRepo
from studio_ledger.economy.credits.errors import (
    GenerationLoggingFailedError,
    GenerationValidationError,
    TransactionNotFoundError,
    TransactionOwnershipMismatchError,
)
from studio_ledger.economy.credits.types import GenerationType

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class GenerationLogInput:
    user_id: str
    generation_type: GenerationType | str
    count: int
    credits_used: int
    result_urls: list[str]
    credit_transaction_id: UUID | None = None
    prompt: str = ""
    settings: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class GenerationLogResult:
    generation_id: UUID


def _validate(payload: GenerationLogInput) -> GenerationType:
    if not isinstance(payload.user_id, str) or not payload.user_id.strip():
        raise GenerationValidationError("user_id", "Valid user_id is required")
    try:
        generation_type = GenerationType(payload.generation_type)
    except ValueError as exc:
        raise GenerationValidationError(
            "generation_type",
            f"Invalid generation type: {payload.generation_type}",
        ) from exc
    if isinstance(payload.count, bool) or not isinstance(payload.count, int) or payload.count < 1:
        raise GenerationValidationError("count", f"Count must be at least 1, got {payload.count}")
    if not payload.result_urls or not all(isinstance(url, str) and url for url in payload.result_urls):
        raise GenerationValidationError("result_urls", "result_urls is required and must not be empty")
    if isinstance(payload.credits_used, bool) or not isinstance(payload.credits_used, int) or payload.credits_used < 0:
        raise GenerationValidationError(
            "credits_used",
            f"credits_used must be non-negative, got {payload.credits_used}",
        )
    return generation_type


class GenerationTracker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _log(
        self,
        session: AsyncSession,
        payload: GenerationLogInput,
        *,
        generation_type: GenerationType,
        now_utc: datetime,
    ) -> UUID:
        if payload.credit_transaction_id is not None:
            transaction = await CreditTransactionsRepo.get_by_id(session, payload.credit_transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(str(payload.credit_transaction_id))
            if transaction.user_id != payload.user_id:
                raise TransactionOwnershipMismatchError(str(payload.credit_transaction_id))
            if transaction.related_generation_id is not None:
                raise GenerationLoggingFailedError("credit transaction is already linked to a generation")

        generation = await GenerationsRepo.create(
            session,
            generation=Generation(
                user_id=payload.user_id,
                generation_type=generation_type.value,
                count=payload.count,
                credits_used=payload.credits_used,
                credit_transaction_id=payload.credit_transaction_id,
                prompt=payload.prompt or "",
                settings=dict(payload.settings or {}),
                result_urls=list(payload.result_urls),
                created_at=now_utc,
            ),
        )
        if generation.id is None:
            raise GenerationLoggingFailedError("No generation id returned")

        if payload.credit_transaction_id is not None:
            linked = await CreditTransactionsRepo.link_generation(
                session,
                transaction_id=payload.credit_transaction_id,
                user_id=payload.user_id,
                generation_id=generation.id,
            )
            if not linked:
                raise GenerationLoggingFailedError("credit transaction is already linked to a generation")

        await UsageAnalyticsRepo.upsert_increment(
            session,
            user_id=payload.user_id,
            usage_date=now_utc.date(),
            generation_type=generation_type.value,
            count=payload.count,
            credits_used=payload.credits_used,
            now_utc=now_utc,
        )
        return generation.id

    async def log_success(
        self,
        payload: GenerationLogInput,
        *,
        now_utc: datetime | None = None,
    ) -> GenerationLogResult:
        generation_type = _validate(payload)
        effective_now = now_utc or utc_now()
        try:
            async with self._session_factory.begin() as session:
                generation_id = await self._log(
                    session,
                    payload,
                    generation_type=generation_type,
                    now_utc=effective_now,
                )
        except SQLAlchemyError as exc:
            logger.error(
                "generation_log_failed",
                user_id=payload.user_id,
                generation_type=generation_type.value,
                error_type=type(exc).__name__,
            )
            raise GenerationLoggingFailedError(f"Failed to log generation: {type(exc).__name__}") from exc

        logger.info(
            "generation_logged",
            user_id=payload.user_id,
            generation_id=str(generation_id),
            generation_type=generation_type.value,
            count=payload.count,
            credits_used=payload.credits_used,
        )
        return GenerationLogResult(generation_id=generation_id)
