"""System health endpoint — checks connectivity to all backing services."""

import time

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, text
from sqlmodel import select

from app.api.deps import Session
from app.core.config import get_settings
from app.models.provisioning import ProvisioningRun

router = APIRouter(prefix="/system", tags=["system"])

settings = get_settings()
_start_time = time.time()


class ServiceHealth(BaseModel):
    status: str  # "ok" or "error"
    detail: str | None = None
    version: str | None = None
    latency_ms: int | None = None


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: int
    database: ServiceHealth
    redis: ServiceHealth
    runs_by_stage: dict[str, int]


@router.get("/health", response_model=HealthResponse)
async def system_health(session: Session) -> HealthResponse:
    """Check connectivity to the database and Redis."""
    db = await _check_database(session)
    rd = await _check_redis()

    overall = "ok" if all(s.status == "ok" for s in (db, rd)) else "degraded"
    return HealthResponse(
        status=overall,
        uptime_seconds=int(time.time() - _start_time),
        database=db,
        redis=rd,
        runs_by_stage=await _runs_by_stage(session) if db.status == "ok" else {},
    )


async def _check_database(session) -> ServiceHealth:
    try:
        t0 = time.monotonic()
        await session.execute(text("SELECT 1"))
        latency = int((time.monotonic() - t0) * 1000)
        return ServiceHealth(status="ok", latency_ms=latency)
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])


async def _check_redis() -> ServiceHealth:
    try:
        from redis.asyncio import from_url
        t0 = time.monotonic()
        redis = from_url(settings.redis_url, decode_responses=True, socket_connect_timeout=2)
        try:
            pong = await redis.ping()
            latency = int((time.monotonic() - t0) * 1000)
            info = await redis.info("server")
        finally:
            await redis.aclose()
        version = info.get("redis_version")
        return ServiceHealth(
            status="ok" if pong else "error",
            version=f"Redis {version}" if version else None,
            latency_ms=latency,
        )
    except Exception as exc:
        return ServiceHealth(status="error", detail=str(exc)[:200])


async def _runs_by_stage(session) -> dict[str, int]:
    result = await session.execute(
        select(ProvisioningRun.stage, func.count()).group_by(ProvisioningRun.stage)
    )
    return {str(stage): count for stage, count in result.all()}
