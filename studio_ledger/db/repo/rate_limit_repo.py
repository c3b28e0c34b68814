from __future__ import annotations

from datetime import datetime

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from studio_ledger.db.models.rate_limit_buckets import RateLimitBucket
from studio_ledger.db.session import dialect_name


class RateLimitRepo:
    @staticmethod
    async def bump(
        session: AsyncSession,
        *,
        user_id: str,
        scope: str,
        window_start: datetime,
        now_utc: datetime,
    ) -> int:
        """Counts one hit in the window and returns the window's total."""
        insert = postgresql.insert if dialect_name(session) == "postgresql" else sqlite.insert
        stmt = insert(RateLimitBucket).values(
            user_id=user_id,
            scope=scope,
            window_start=window_start,
            hits=1,
            updated_at=now_utc,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                RateLimitBucket.user_id,
                RateLimitBucket.scope,
                RateLimitBucket.window_start,
            ],
            set_={
                "hits": RateLimitBucket.hits + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(RateLimitBucket.hits)
        result = await session.execute(stmt)
        return int(result.scalar_one())
