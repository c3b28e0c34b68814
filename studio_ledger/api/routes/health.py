from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_ledger.api.deps import get_session_factory
from studio_ledger.core.config import get_settings
from studio_ledger.workers.celery_app import celery_app

router = APIRouter(tags=["health"])
logger = structlog.get_logger(__name__)


def _ok_check(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": "ok"}
    if extra:
        payload.update(extra)
    return payload


def _failed_check(check: str, exc: Exception | None = None, *, error: str | None = None) -> dict[str, str]:
    if exc is not None:
        logger.warning("health_check_failed", check=check, error_type=type(exc).__name__)
    return {"status": "failed", "error": error or f"{check}_unavailable"}


async def _check_database(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return _ok_check()
    except Exception as exc:
        return _failed_check("database", exc)


async def _check_redis() -> dict[str, Any]:
    redis_client: Redis | None = None
    try:
        redis_client = Redis.from_url(get_settings().redis_url)
        pong = await redis_client.ping()
        if pong is not True:
            return _failed_check("redis", error="unexpected_redis_ping_response")
        return _ok_check()
    except Exception as exc:
        return _failed_check("redis", exc)
    finally:
        if redis_client is not None:
            await redis_client.aclose()


def _check_celery_worker_sync() -> dict[str, Any]:
    try:
        inspector = celery_app.control.inspect(timeout=1.0)
        replies = inspector.ping() or {}
        if not replies:
            return _failed_check("celery", error="no_celery_workers_responded")
        return _ok_check({"workers": len(replies)})
    except Exception as exc:
        return _failed_check("celery", exc)


async def _check_celery_worker() -> dict[str, Any]:
    return await asyncio.to_thread(_check_celery_worker_sync)


async def _collect_checks(request: Request, *, include_celery: bool) -> dict[str, dict[str, Any]]:
    session_factory = get_session_factory(request)
    if not include_celery:
        database, redis = await asyncio.gather(_check_database(session_factory), _check_redis())
        return {"database": database, "redis": redis}

    database, redis, celery = await asyncio.gather(
        _check_database(session_factory),
        _check_redis(),
        _check_celery_worker(),
    )
    return {"database": database, "redis": redis, "celery": celery}


def _all_checks_ok(checks: dict[str, dict[str, Any]]) -> bool:
    return all(check.get("status") == "ok" for check in checks.values())


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    checks = await _collect_checks(request, include_celery=True)
    is_healthy = _all_checks_ok(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if is_healthy else "degraded", "checks": checks},
    )


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    # Worker outages degrade /health but do not take the API out of rotation.
    checks = await _collect_checks(request, include_celery=False)
    is_ready = _all_checks_ok(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if is_ready else "not_ready", "checks": checks},
    )


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}
