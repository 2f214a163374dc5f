"""
Operational HTTP surface for the session coordinator.

The lifespan builds the single SessionManager for this process, starts it
(storage connection plus expiry sweeper) and closes it on shutdown. Routes
expose health and read-only session statistics; workflow routes live with
the bot front end and call the SessionManager directly.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import get_settings, validate_startup
from errors.handlers import register_exception_handlers
from health.service import HealthCheckService
from middleware.request_id import RequestIDMiddleware
from session.factory import create_session_manager
from session.manager import SessionManager
from telemetry.service import initialize_telemetry

logger = logging.getLogger(__name__)

SERVICE_NAME = "Asset Session Coordinator"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    validate_startup()
    initialize_telemetry(settings)

    manager = create_session_manager(settings)
    await manager.start()
    app.state.session_manager = manager
    app.state.health_check_service = HealthCheckService(manager, check_timeout=5.0)
    logger.info(
        "Starting session coordinator",
        extra={"extra_data": {
            "environment": settings.environment.value,
            "backend": manager.storage.backend_name,
        }}
    )

    yield

    logger.info("Shutting down session coordinator")
    await manager.close()


app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)

register_exception_handlers(app)
app.add_middleware(RequestIDMiddleware)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_health_check_service(request: Request) -> HealthCheckService:
    return request.app.state.health_check_service


@app.get("/health")
async def health_basic(request: Request):
    """Returns 200 while the process accepts requests."""
    result = await get_health_check_service(request).check_health()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"],
    }


@app.get("/health/live")
async def health_live(request: Request):
    result = await get_health_check_service(request).check_liveness()
    return {
        "status": result["status"],
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": result["timestamp"],
    }


@app.get("/health/ready")
async def health_ready(request: Request):
    """
    Readiness: verifies the session storage backend.

    Returns 503 with failure reasons when session storage is unreachable.
    """
    health_status = await get_health_check_service(request).check_readiness()
    response_data = {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        **health_status.to_dict(),
    }

    if health_status.status == "unhealthy":
        response_data["failure_reasons"] = [
            {"dependency": dep.name, "error": dep.error}
            for dep in health_status.dependencies
            if not dep.healthy
        ]
        return JSONResponse(status_code=503, content=response_data)

    return response_data


@app.get("/api/sessions/stats")
async def session_stats(request: Request):
    """Aggregate counts over every stored session."""
    stats = await get_session_manager(request).get_session_stats()
    return stats.to_dict()


@app.get("/api/sessions/storage-health")
async def session_storage_health(request: Request):
    result = await get_session_manager(request).check_storage_health()
    if not result["healthy"]:
        return JSONResponse(status_code=503, content=result)
    return result


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
