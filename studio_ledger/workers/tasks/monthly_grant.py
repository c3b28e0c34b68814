from __future__ import annotations

from dataclasses import asdict

import structlog
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.config import get_settings
from studio_ledger.economy.credits.ledger import CreditLedger
from studio_ledger.economy.credits.monthly_grant import run_monthly_grant_for_all_users
from studio_ledger.services.alerts import send_ops_alert
from studio_ledger.workers.asyncio_runner import run_async_job
from studio_ledger.workers.celery_app import QUEUE_NORMAL, celery_app

logger = structlog.get_logger(__name__)


async def run_monthly_grant_async(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    period: str | None = None,
    limit: int | None = None,
    dry_run: bool = False,
) -> dict[str, int | str]:
    resolved_limit = limit if limit is not None else get_settings().monthly_grant_batch_limit
    _, summary = await run_monthly_grant_for_all_users(
        CreditLedger(session_factory),
        period=period,
        limit=resolved_limit,
        dry_run=dry_run,
    )
    if summary.failed > 0:
        await send_ops_alert(event="monthly_grant_failures_detected", payload=asdict(summary))
    return asdict(summary)


@celery_app.task(name="studio_ledger.workers.tasks.monthly_grant.run_monthly_grant")
def run_monthly_grant(
    period: str | None = None,
    limit: int | None = None,
    dry_run: bool = False,
) -> dict[str, int | str]:
    return run_async_job(
        lambda session_factory: run_monthly_grant_async(
            session_factory,
            period=period,
            limit=limit,
            dry_run=dry_run,
        )
    )


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "monthly-credit-grant-daily-0010-utc": {
            "task": "studio_ledger.workers.tasks.monthly_grant.run_monthly_grant",
            "schedule": crontab(hour=0, minute=10),
            "options": {"queue": QUEUE_NORMAL},
        },
    }
)
