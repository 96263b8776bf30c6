# flock/main.py
"""
Flock Control Plane - Main Application
FastAPI application entry point
"""

import uvicorn
import logging
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from flock.api.v1 import admin
from flock.database.session import init_db, db_manager
from flock.config import settings
from flock.exceptions import (
    ConfigError,
    DeploymentError,
    ExhaustionError,
    FlockError,
    ValidationError,
)
from flock.schemas.base import ErrorResponse, HealthResponse

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

startup_time: Optional[datetime] = None

# First match wins; anything else is a 500
ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConfigError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ExhaustionError: status.HTTP_409_CONFLICT,
    DeploymentError: status.HTTP_502_BAD_GATEWAY,
}


def error_response(status_code: int, error: str, error_code: str, details: Optional[dict] = None) -> JSONResponse:
    body = ErrorResponse(error=error, error_code=error_code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; nothing to release on shutdown"""
    global startup_time

    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENV})")
    init_db()
    startup_time = datetime.utcnow()

    yield

    logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Flock Control Plane API

    Declares Nebula overlay networks over a fleet of SSH-reachable hosts
    and reconciles them:
    - Overlay addresses and underlay ports allocated per network and host
    - Two CA generations per network for rotation without downtime
    - Endpoint firewall policies compiled into per-host agent configs

    Admin endpoints require the X-Admin-Token header.
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# === Exception Handlers ===

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed declarations and parameters"""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": errors},
    )


@app.exception_handler(FlockError)
async def flock_exception_handler(request: Request, exc: FlockError):
    """Map the control plane error taxonomy onto HTTP status codes"""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )

    details = None
    if isinstance(exc, DeploymentError):
        details = {"failures": exc.failures}
        if exc.report is not None:
            details["report"] = exc.report.to_dict()

    logger.error(f"{request.method} {request.url.path} -> {exc.error_code}: {exc}")
    return error_response(status_code, str(exc), exc.error_code, details)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "INTERNAL_ERROR",
        {"message": str(exc)} if settings.DEBUG else None,
    )


# === Routers ===

app.include_router(
    admin.router,
    prefix=f"{settings.API_PREFIX}/admin",
    tags=["Admin"]
)


@app.get("/", summary="API info")
async def read_root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "admin_api": f"{settings.API_PREFIX}/admin",
        "docs": "/docs",
        "health": "/health"
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Application and database health"
)
async def health_check():
    connected = db_manager.check_connection()
    uptime = (datetime.utcnow() - startup_time).total_seconds() if startup_time else None

    return HealthResponse(
        status="healthy" if connected else "unhealthy",
        version=settings.APP_VERSION,
        uptime_seconds=uptime,
        database="connected" if connected else "disconnected"
    )


def run():
    """Console entry point (flock-control-plane)"""
    uvicorn.run(
        "flock.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
