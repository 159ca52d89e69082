# app/routers/health.py
# Liveness/readiness probes and a component health report.
# The database gates readiness; Redis only backs the optional broadcast bus,
# so an unreachable Redis degrades the report without failing readiness.

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict

import redis.asyncio as aioredis
from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from app import config
from app.db import base as db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

CHECK_TIMEOUT_SECONDS = 3.0


class ComponentHealth(BaseModel):
    status: str  # "healthy", "degraded", "unhealthy"
    latency_ms: float = 0.0
    message: str = ""


class HealthStatus(BaseModel):
    status: str
    timestamp: float
    version: str = "1.0.0"
    checks: Dict[str, ComponentHealth] = {}


async def _probe_database() -> ComponentHealth:
    async with db.get_session() as session:
        value = (await session.execute(text("SELECT 1"))).scalar()
    if value != 1:
        return ComponentHealth(status="unhealthy", message="Unexpected probe result")

    pool = db.get_engine().pool
    in_use = pool.checkedout() if hasattr(pool, "checkedout") else 0
    size = pool.size() if hasattr(pool, "size") else 0
    if size and in_use >= size:
        return ComponentHealth(status="degraded", message=f"Pool exhausted: {in_use}/{size} connections in use")
    return ComponentHealth(status="healthy", message=f"Pool: {in_use}/{size} connections in use")


async def _probe_broadcast_bus() -> ComponentHealth:
    client = aioredis.from_url(config.REDIS_URL)
    try:
        await client.ping()
    finally:
        await client.aclose()
    return ComponentHealth(status="healthy", message="Redis reachable")


async def _timed(probe: Callable[[], Awaitable[ComponentHealth]], failure_status: str) -> ComponentHealth:
    """Run one probe with a deadline; failures map to ``failure_status``."""
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(probe(), timeout=CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        result = ComponentHealth(status=failure_status, message="Timed out")
    except Exception as e:
        logger.warning(f"Health probe {probe.__name__} failed: {e}")
        result = ComponentHealth(status=failure_status, message=f"{type(e).__name__}")
    result.latency_ms = round((time.perf_counter() - start) * 1000, 2)
    return result


@router.get("/health", response_model=HealthStatus)
async def health_check(response: Response) -> HealthStatus:
    """Report every component; 503 only when a required one is down."""
    database, bus = await asyncio.gather(
        _timed(_probe_database, "unhealthy"),
        _timed(_probe_broadcast_bus, "degraded"),
    )
    checks = {"database": database, "broadcast_bus": bus}

    statuses = {c.status for c in checks.values()}
    if "unhealthy" in statuses:
        overall = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"
    return HealthStatus(status=overall, timestamp=time.time(), checks=checks)


@router.get("/health/live")
async def liveness_probe() -> Dict[str, Any]:
    """Process is up; no dependencies are touched."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_probe(response: Response) -> Dict[str, Any]:
    database = await _timed(_probe_database, "unhealthy")
    if database.status == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": database.message}
    return {"status": "ready"}
