"""
Upscaler API - FastAPI application entry point.
"""
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .database import engine, Base
from .logging_config import api_logger
from .middleware import SecurityHeadersMiddleware, RequestLoggingMiddleware
from .limiter import limiter
from .responses import api_exception_handler
from .routes import (
    batches_router,
    upscale_router,
    credits_router,
    payments_router,
    health_router,
)
from .worker.batch_manager import get_batch_manager

settings = get_settings()

# Create tables (in production, use Alembic migrations instead)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    api_logger.info(
        "startup",
        environment=settings.environment,
        upscaler_configured=bool(settings.stability_api_key),
        payments_configured=bool(settings.stripe_secret_key),
    )

    manager = get_batch_manager()
    sweeper = asyncio.create_task(manager.sweep_forever(settings.batch_sweep_interval_seconds))

    yield  # App is running

    sweeper.cancel()
    # In-flight upscales are cancelled; their jobs are never charged
    await manager.shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Batch image upscaling with credit billing",
    version=settings.app_version,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url="/api/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(StarletteHTTPException, api_exception_handler)
app.add_exception_handler(Exception, api_exception_handler)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware (only in debug mode)
if settings.debug:
    app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "Accept",
        "Origin",
        "Stripe-Signature",
    ],
    max_age=3600,
)

# Routes
app.include_router(health_router)
app.include_router(batches_router)
app.include_router(upscale_router)
app.include_router(credits_router)
app.include_router(payments_router)


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": settings.app_name,
        "docs": "/api/docs" if settings.debug else "Disabled in production",
    }
