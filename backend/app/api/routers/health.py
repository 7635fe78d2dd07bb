"""Simple health and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from kombu.exceptions import KombuError
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.db.session import engine
from app.utils.redis_client import create_redis_client
from app.workers.broker import BrokerUnavailableError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "roster-importer-api"


@router.get("/live", summary="Liveness check")
async def live() -> dict[str, str]:
    """Indicates API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


def _check_database() -> dict[str, str]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return {"status": "unhealthy", "message": f"Database connection failed: {e}"}
    return {"status": "healthy", "message": "Database connection successful"}


def _check_redis() -> dict[str, str]:
    settings = get_settings()
    redis_client = create_redis_client(
        settings.redis_url,
        verify_ssl=settings.redis_verify_ssl,
        decode_responses=True,
        socket_connect_timeout=2,
    )
    try:
        redis_client.ping()
    except RedisError as e:
        logger.error(f"Redis health check failed: {e}", exc_info=True)
        return {"status": "unhealthy", "message": f"Redis connection failed: {e}"}
    finally:
        redis_client.close()
    return {"status": "healthy", "message": "Redis connection successful"}


def _check_broker(request: Request) -> dict[str, str]:
    broker = getattr(request.app.state, "broker", None)
    if broker is None:
        return {"status": "unhealthy", "message": "Broker connection not configured"}
    try:
        broker.acquire_channel()
    except (KombuError, OSError, BrokerUnavailableError) as e:
        logger.error(f"Broker health check failed: {e}", exc_info=True)
        broker.invalidate()
        return {"status": "unhealthy", "message": f"Broker connection failed: {e}"}
    return {"status": "healthy", "message": "Broker connection successful"}


@router.get("/ready", summary="Readiness check")
async def ready(request: Request) -> dict[str, Any]:
    """Check readiness of dependencies (database, Redis, broker).

    Used by load balancers to determine if traffic should be routed to this instance.
    """
    checks: dict[str, Any] = {
        "status": "ok",
        "service": SERVICE_NAME,
        "checks": {
            "database": _check_database(),
            "redis": _check_redis(),
            "broker": _check_broker(request),
        },
    }

    if any(check["status"] != "healthy" for check in checks["checks"].values()):
        checks["status"] = "unhealthy"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=checks,
        )

    return checks
