"""
Spendwise API - FastAPI application entry point
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from apps.api.middleware.auth_user import UserIdentityMiddleware
from apps.api.routers import categorization, expenses
from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.common.log_config import configure_logging
from packages.domain.categorization import LocalTrainingDispatcher, training_orchestrator

settings = get_settings()
configure_logging(settings.log_level)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager"""
    logger.info("starting_spendwise_api",
                environment=settings.environment,
                version=VERSION,
                training_backend=settings.training_backend)

    if settings.training_backend == "celery":
        from apps.api.tasks import CeleryTrainingDispatcher
        training_orchestrator.dispatcher = CeleryTrainingDispatcher()

    await sessionmanager.init(settings.database_url)

    yield

    logger.info("shutting_down_spendwise_api")
    if isinstance(training_orchestrator.dispatcher, LocalTrainingDispatcher):
        await training_orchestrator.dispatcher.drain()
    await sessionmanager.close()


# Create FastAPI application
app = FastAPI(
    title="Spendwise API",
    description="Expense tracking with per-user automatic categorization",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment != "production" else None,
    redoc_url="/redoc" if settings.environment != "production" else None,
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment != "production" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(UserIdentityMiddleware)


# Exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with structured logging"""
    logger.warning("validation_error",
                   path=request.url.path,
                   errors=exc.errors())
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors())},
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
            "detail": "Internal server error",
            "request_id": request.headers.get("x-request-id"),
        },
    )


# Include routers
app.include_router(expenses.router, prefix="/api/v1/expenses", tags=["Expenses"])
app.include_router(categorization.router, prefix="/api/v1/categorization", tags=["Categorization"])


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint for Docker and monitoring"""
    try:
        async with sessionmanager.session() as session:
            await session.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "environment": settings.environment,
            "version": VERSION,
            "services": {"database": "connected"},
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


@app.get("/", tags=["System"])
async def root():
    """API root endpoint"""
    return {
        "name": "Spendwise API",
        "version": VERSION,
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
