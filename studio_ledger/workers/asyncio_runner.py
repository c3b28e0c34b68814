from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.core.config import get_settings
from studio_ledger.db.session import open_session_factory

T = TypeVar("T")

AsyncJob = Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]


async def _run_with_fresh_db_pool(job: AsyncJob[T]) -> T:
    # Each task run gets its own engine; pools must not outlive the event loop.
    async with open_session_factory(get_settings().database_url) as session_factory:
        return await job(session_factory)


def run_async_job(job: AsyncJob[T]) -> T:
    return asyncio.run(_run_with_fresh_db_pool(job))
