"""
Main entry point of the FastAPI service.
Initializes the application, logging, and registers the routes.
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import LoggingConfig, ServiceConfig
from api import router
from api.analytics_routes import router as analytics_router
from core.concurrency import ClientDisconnected, ConcurrencyLimitExceeded
from core.database import close_database
from core.errors import AnalyticsError, InternalAggregationFailure
from core.structured_logging import (
    get_logger,
    set_request_context,
    setup_logging,
    trace_id_from_traceparent,
)
from services import AnalyticsResponseBuilder

logger = get_logger(__name__)


# ============================================================================
# LIFESPAN
# ============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(
        service=ServiceConfig.SERVICE_NAME,
        environment=ServiceConfig.ENVIRONMENT,
        log_level=LoggingConfig.LEVEL,
        log_file=LoggingConfig.FILE,
    )
    logger.info("Enforcement analytics service started", context={
        "version": ServiceConfig.APP_VERSION,
        "api_prefix": ServiceConfig.API_PREFIX or "/",
    })
    yield
    await close_database()
    logger.info("Enforcement analytics service stopped")


# ============================================================================
# FASTAPI APP
# ============================================================================
app = FastAPI(
    title="Enforcement Analytics Service",
    description="Aggregate analytics over historical traffic-stop records",
    version=ServiceConfig.APP_VERSION,
    lifespan=lifespan,
)


# ============================================================================
# TRACE MIDDLEWARE
# ============================================================================
@app.middleware("http")
async def trace_context(request: Request, call_next):
    trace_id = (
        request.headers.get("x-trace-id")
        or trace_id_from_traceparent(request.headers.get("traceparent"))
        or uuid.uuid4().hex
    )
    set_request_context(trace_id, request.url.path)
    response = await call_next(request)
    response.headers["x-trace-id"] = trace_id
    return response


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================
@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    if exc.status_code >= 500:
        logger.error("Analytics request failed", context={
            "path": request.url.path,
            "code": exc.code,
            "error": exc.message,
        })
    return JSONResponse(
        status_code=exc.status_code,
        content=AnalyticsResponseBuilder.build_error(exc),
    )


@app.exception_handler(ConcurrencyLimitExceeded)
async def capacity_error_handler(request: Request, exc: ConcurrencyLimitExceeded):
    return JSONResponse(
        status_code=503,
        content=AnalyticsResponseBuilder.build_failure(str(exc), "AT_CAPACITY"),
    )


@app.exception_handler(ClientDisconnected)
async def disconnect_handler(request: Request, exc: ClientDisconnected):
    # 499: client closed request
    return JSONResponse(
        status_code=499,
        content=AnalyticsResponseBuilder.build_failure(str(exc), "CLIENT_DISCONNECTED"),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=AnalyticsResponseBuilder.build_failure(
            "Invalid request parameters", "INVALID_FILTER"
        ),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", context={
        "path": request.url.path,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=AnalyticsResponseBuilder.build_error(InternalAggregationFailure()),
    )


# Register routes
app.include_router(router)
app.include_router(analytics_router, prefix=ServiceConfig.API_PREFIX)


# ============================================================================
# MAIN (local development)
# ============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=ServiceConfig.HOST,
        port=ServiceConfig.PORT,
        reload=True
    )
