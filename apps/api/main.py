"""
Receipt Categorizer API - FastAPI application entry point
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from apps.api.routers import categorize, receipts
from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.common.logging_setup import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

logger = structlog.get_logger()

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager"""
    logger.info("starting_receipt_categorizer_api",
                environment=settings.environment,
                version=API_VERSION)

    # Initialize database connection pool
    await sessionmanager.init(settings.database_url)

    yield

    # Cleanup
    logger.info("shutting_down_receipt_categorizer_api")
    await sessionmanager.close()


# Create FastAPI application
app = FastAPI(
    title="Receipt Categorizer API",
    description="Schedule C receipt categorization: rules engine with LLM fallback",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


def jsonable_errors(exc: RequestValidationError):
    """Validation errors with non-JSON context values stringified"""
    return [
        {**err, "ctx": {k: str(v) for k, v in err["ctx"].items()}} if "ctx" in err else err
        for err in exc.errors()
    ]


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with structured logging"""
    logger.warning("validation_error",
                   path=request.url.path,
                   errors=jsonable_errors(exc))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": jsonable_errors(exc),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.error("unhandled_exception",
                 path=request.url.path,
                 error=str(exc),
                 exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "ok": False,
            "detail": "Internal server error",
            "request_id": request.headers.get("x-request-id"),
        },
    )


# Include routers
app.include_router(categorize.router, tags=["Categorization"])
app.include_router(receipts.router, prefix="/api/v1/receipts", tags=["Receipts"])


# Health check endpoint
@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint for Docker and monitoring"""
    try:
        async with sessionmanager.session() as session:
            await session.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "environment": settings.environment,
            "version": API_VERSION,
            "services": {
                "database": "connected",
            }
        }
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "error": str(e),
            }
        )


# Metrics endpoint (Prometheus)
@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint"""
    if not settings.metrics_enabled:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Metrics disabled"}
        )

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# Root endpoint
@app.get("/", tags=["System"])
async def root():
    """API root endpoint"""
    return {
        "name": "Receipt Categorizer API",
        "version": API_VERSION,
        "environment": settings.environment,
        "docs": "/docs" if settings.environment != "production" else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "apps.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
