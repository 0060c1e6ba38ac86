"""
Health and Monitoring Router.

Public, unauthenticated endpoints for health checks and monitoring of the
Direct Messaging API.

Endpoints Provided:
- `/healthcheck`: A lightweight check confirming the service is running.
- `/monitoring/ping`: A simple ping endpoint for connectivity testing.
- `/monitoring/detailed`: Verifies the database, and reports the connection
  registry and liveness monitor.

Architectural Design:
- Public Access: Suitable for automated probes (Kubernetes, uptime checkers).
- Graceful Degradation: The detailed check reports individual components, so a
  failing database yields a "degraded" status instead of an error response.
"""

from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import APIRouter, Depends

from core.database import get_database_info
from core.logging_config import get_logger
from services.chat_hub import ChatHub
from .dependencies import get_hub

logger = get_logger(__name__)

SERVICE_NAME = "Direct Messaging API"
VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])
monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    """Simple ping endpoint for connectivity testing"""
    logger.debug("Ping requested")
    return {
        "message": "pong",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@monitoring_router.get("/detailed")
async def detailed_health_check(hub: ChatHub = Depends(get_hub)) -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")

    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "service": SERVICE_NAME,
        "components": {},
    }

    try:
        db_info = await get_database_info(hub.engine, hub.settings.database_url)
        db_status = "healthy" if db_info["connection_healthy"] else "unhealthy"
        health_status["components"]["database"] = {"status": db_status, "info": db_info}
        if db_status != "healthy":
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "error": str(e),
        }
        health_status["status"] = "degraded"

    health_status["components"]["connections"] = {
        "status": "healthy",
        "stats": hub.registry.get_connection_stats(),
    }
    health_status["components"]["liveness"] = {
        "status": "healthy" if hub.liveness.running else "stopped",
        "interval_seconds": hub.liveness.interval,
    }

    return health_status
