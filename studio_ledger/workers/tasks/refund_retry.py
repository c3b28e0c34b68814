from __future__ import annotations

import asyncio
import random
from uuid import UUID

import structlog
from celery import Task
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.config import get_settings
from studio_ledger.economy.credits.errors import (
    TransactionNotFoundError,
    TransactionNotRefundableError,
    TransactionOwnershipMismatchError,
)
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.services.alerts import send_ops_alert
from studio_ledger.workers.asyncio_runner import run_async_job
from studio_ledger.workers.celery_app import QUEUE_HIGH, celery_app

logger = structlog.get_logger(__name__)
settings = get_settings()
TASK_MAX_RETRIES = max(0, int(settings.refund_retry_max_attempts))
TASK_RETRY_BACKOFF_SECONDS = max(1, int(settings.refund_retry_backoff_seconds))
TASK_RETRY_BACKOFF_MAX_SECONDS = max(1, int(settings.refund_retry_backoff_max_seconds))
RETRY_JITTER_RATIO = 0.25

EVENT_REFUND_RETRY_EXHAUSTED = "credit_refund_retry_exhausted"
PERMANENT_ERRORS = (
    TransactionNotFoundError,
    TransactionNotRefundableError,
    TransactionOwnershipMismatchError,
)


def _retry_backoff_seconds(*, next_retry_attempt: int) -> int:
    safe_retry_attempt = max(1, int(next_retry_attempt))
    base_delay = min(
        TASK_RETRY_BACKOFF_MAX_SECONDS,
        TASK_RETRY_BACKOFF_SECONDS * 2 ** (safe_retry_attempt - 1),
    )
    max_jitter = max(0, int(base_delay * RETRY_JITTER_RATIO))
    jitter = random.randint(0, max_jitter) if max_jitter > 0 else 0
    return min(TASK_RETRY_BACKOFF_MAX_SECONDS, base_delay + jitter)


async def retry_refund_async(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str,
    transaction_id: str,
    reason: str,
) -> dict[str, object]:
    result = await CreditLedger(session_factory).refund(user_id, UUID(transaction_id), reason)
    return {
        "refund_transaction_id": str(result.transaction_id),
        "balance_after": result.balance_after,
        "idempotent_replay": result.idempotent_replay,
    }


@celery_app.task(
    name="studio_ledger.workers.tasks.refund_retry.retry_refund",
    bind=True,
    max_retries=TASK_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def retry_refund(self: Task, user_id: str, transaction_id: str, reason: str) -> dict[str, object]:
    try:
        result = run_async_job(
            lambda session_factory: retry_refund_async(
                session_factory,
                user_id=user_id,
                transaction_id=transaction_id,
                reason=reason,
            )
        )
    except PERMANENT_ERRORS as exc:
        logger.error(
            "credit_refund_retry_rejected",
            user_id=user_id,
            transaction_id=transaction_id,
            error_type=type(exc).__name__,
        )
        return {"status": "rejected", "error_type": type(exc).__name__}
    except Exception as exc:
        current_retries = max(0, int(getattr(self.request, "retries", 0)))
        if current_retries >= TASK_MAX_RETRIES:
            logger.exception(
                EVENT_REFUND_RETRY_EXHAUSTED,
                user_id=user_id,
                transaction_id=transaction_id,
                retries=current_retries,
            )
            run_async_job(
                lambda _session_factory: send_ops_alert(
                    event=EVENT_REFUND_RETRY_EXHAUSTED,
                    payload={
                        "user_id": user_id,
                        "transaction_id": transaction_id,
                        "retries": current_retries,
                        "error_type": type(exc).__name__,
                    },
                )
            )
            raise

        next_retry_attempt = current_retries + 1
        retry_in_seconds = _retry_backoff_seconds(next_retry_attempt=next_retry_attempt)
        logger.warning(
            "credit_refund_retry_scheduled",
            user_id=user_id,
            transaction_id=transaction_id,
            retry_attempt=next_retry_attempt,
            retry_in_seconds=retry_in_seconds,
            max_retries=TASK_MAX_RETRIES,
        )
        raise self.retry(exc=exc, countdown=retry_in_seconds, max_retries=TASK_MAX_RETRIES)

    logger.info("credit_refund_retry_succeeded", user_id=user_id, transaction_id=transaction_id, **result)
    return {"status": "refunded", **result}


async def schedule_refund_retry(*, user_id: str, transaction_id: UUID, reason: str) -> None:
    """Refund failure handler for CreditGuard: hands the refund to the retry queue.

    The broker publish blocks, so it runs in a worker thread.
    """
    await asyncio.to_thread(
        retry_refund.apply_async,
        args=(user_id, str(transaction_id), reason),
        countdown=TASK_RETRY_BACKOFF_SECONDS,
        queue=QUEUE_HIGH,
    )
    logger.warning("credit_refund_retry_enqueued", user_id=user_id, transaction_id=str(transaction_id))
