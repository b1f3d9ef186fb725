"""
Health Endpoints
================

Liveness plus a state-store round trip. The check is time-bounded so a slow
Redis never stalls the probe.
"""

from __future__ import annotations

import asyncio
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from utils.ml_logging import get_logger

from apps.callrelay.backend.api.v1.schemas.health import HealthResponse, ServiceCheck

logger = get_logger("v1.health")

router = APIRouter(tags=["Health"])

STORE_CHECK_TIMEOUT_SECONDS = 2.0


async def _check_state_store(request: Request) -> ServiceCheck:
    start = time.perf_counter()
    store = getattr(request.app.state, "store", None)
    if store is None:
        return ServiceCheck(
            component="state_store", status="unhealthy", check_time_ms=0.0, error="not initialized"
        )
    try:
        ok = await asyncio.wait_for(store.ping(), timeout=STORE_CHECK_TIMEOUT_SECONDS)
        error = None if ok else "ping failed"
    except asyncio.TimeoutError:
        ok, error = False, f"timed out after {STORE_CHECK_TIMEOUT_SECONDS}s"
    except Exception as exc:
        ok, error = False, str(exc)
    elapsed = round((time.perf_counter() - start) * 1000, 2)
    if not ok:
        logger.warning("State store health check failed: %s", error)
    return ServiceCheck(
        component="state_store",
        status="healthy" if ok else "unhealthy",
        check_time_ms=elapsed,
        error=error,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    checks = [await _check_state_store(request)]
    healthy = all(check.status == "healthy" for check in checks)

    registry = getattr(request.app.state, "registry", None)
    dispatcher = getattr(request.app.state, "dispatcher", None)
    details = {
        "activeSessions": len(registry) if registry is not None else 0,
        "dashboardSubscribers": dispatcher.subscriber_count() if dispatcher is not None else 0,
    }
    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        timestamp=time.time(),
        checks=checks,
        details=details,
    )
    return JSONResponse(content=response.model_dump(), status_code=200 if healthy else 503)
