"""
FastAPI application for the ONU polling service.
"""

import time
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn

from .api.onu import router as onu_router
from .core.config import settings
from .core.exceptions import (
    CacheUnavailableError,
    DecodeError,
    DeviceUnreachableError,
    NotFoundError,
    OltError,
    PermissionDeniedError,
    SnmpError,
)
from .core.snmp_client import SnmpClient
from .repositories.redis_repository import OnuRedisRepository
from .repositories.snmp_repository import OnuSnmpRepository
from .services.onu_service import OnuService

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Most specific classes first
ERROR_STATUS_CODES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DeviceUnreachableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (CacheUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (DecodeError, status.HTTP_502_BAD_GATEWAY),
    (SnmpError, status.HTTP_502_BAD_GATEWAY),
)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next):
        logger.info(f"Request: {request.method} {request.url}")

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            f"Response: {response.status_code} - "
            f"Process time: {process_time:.4f}s"
        )

        return response


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": True, "message": message, "status_code": status_code, **extra},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the SNMP session, repositories and service unless one was injected."""
    if getattr(app.state, "onu_service", None) is not None:
        yield
        return

    logger.info("Starting ONU polling service...")

    snmp_client = SnmpClient.from_settings(settings)
    await snmp_client.open()
    cache = OnuRedisRepository.from_url(settings.redis_url, settings.REDIS_SOCKET_TIMEOUT)

    try:
        device = OnuSnmpRepository(snmp_client, max_concurrency=settings.SNMP_MAX_CONCURRENCY)
        app.state.onu_service = OnuService(
            device,
            cache,
            fanout_limit=settings.POLL_FANOUT_LIMIT,
            request_timeout=settings.REQUEST_TIMEOUT,
        )

        if not await cache.ping():
            logger.warning(f"Redis at {settings.REDIS_HOST}:{settings.REDIS_PORT} is not answering")
        if not await snmp_client.test_connection():
            logger.warning(f"OLT at {settings.SNMP_HOST}:{settings.SNMP_PORT} is not answering")

        logger.info("ONU polling service started successfully")
        yield

    finally:
        logger.info("Shutting down ONU polling service...")
        app.state.onu_service = None
        await snmp_client.close()
        await cache.close()
        logger.info("ONU polling service shutdown complete")


def create_app(onu_service: Optional[OnuService] = None) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Cached ONU status for ZTE C320 OLTs polled over SNMP",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.onu_service = onu_service

    app.add_middleware(LoggingMiddleware)
    app.include_router(onu_router, prefix="/api/v1")

    @app.exception_handler(OltError)
    async def olt_exception_handler(request: Request, exc: OltError):
        """Map service errors to HTTP status codes."""
        for error_class, status_code in ERROR_STATUS_CODES:
            if isinstance(exc, error_class):
                break
        else:
            status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        logger.warning(f"{exc.__class__.__name__} on {request.url.path}: {exc}")
        return _error_response(status_code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")
        return _error_response(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error: {exc.errors()}")
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", details=jsonable_errors(exc)
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "onu-poller",
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "onu_poller.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
