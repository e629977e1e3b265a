"""Health check API endpoints for monitoring and load balancer integration."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..cache import redis_health_check
from ..simulation.orchestrator import SimulationOrchestrator
from .dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def basic_health_check() -> Dict[str, Any]:
    """Liveness: the process is up and serving requests."""
    return {
        "status": "healthy",
        "message": "Simulation engine is operational",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/health/ready")
async def readiness_probe(
    request: Request,
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
    """
    Ready when at least one upstream node answers.

    The metadata cache is reported but never fails readiness; lookups
    degrade to no metadata when Redis is down.
    """
    upstream_ok = await orchestrator.health_check()
    pool = orchestrator.pool.stats()

    checks: Dict[str, Any] = {
        "upstream": {"status": "healthy" if upstream_ok else "unhealthy"},
        "sandbox_pool": {
            "status": "healthy",
            "live": pool["totalInstances"],
            "availablePorts": pool["availablePorts"],
        },
    }

    redis_client = getattr(request.app.state, "redis_client", None)
    if redis_client is not None:
        redis_ok = await redis_health_check(redis_client)
        checks["cache"] = {"backend": "redis", "status": "healthy" if redis_ok else "degraded"}
    else:
        checks["cache"] = {"backend": "memory", "status": "healthy"}

    if not upstream_ok:
        logger.warning("Readiness check failed: upstream RPC unreachable")

    return JSONResponse(
        status_code=200 if upstream_ok else 503,
        content={
            "status": "ready" if upstream_ok else "unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
        },
    )
