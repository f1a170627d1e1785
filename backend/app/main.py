"""
Tideflow Billing - FastAPI Application

Main entry point for the billing reconciliation API.
Provides the Stripe webhook endpoint, company billing endpoints and
admin reconciliation tools.
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    ConfigurationError,
    TideflowError,
    ValidationError,
    NotFoundError,
    WebhookVerificationError,
)
from app.infrastructure.payments.stripe_service import StripeServiceError

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Tideflow Billing starting in {settings.environment} mode...")

    if not settings.stripe_webhook_secret:
        raise ConfigurationError(
            "STRIPE_WEBHOOK_SECRET must be set to accept Stripe webhooks",
            missing_keys=["STRIPE_WEBHOOK_SECRET"],
        )

    from app.infrastructure.db.database import init_db, close_db
    await init_db()
    logger.info("Database connection pool initialized")

    sweep_task = None
    if settings.reconciliation_sweep_interval_seconds > 0:
        from app.infrastructure.services.reconciliation_sweeper import (
            get_reconciliation_sweeper,
            run_periodic_sweeps,
        )
        sweep_task = asyncio.create_task(
            run_periodic_sweeps(
                get_reconciliation_sweeper(),
                settings.reconciliation_sweep_interval_seconds,
                settings.reconciliation_sweep_limit,
            )
        )

    yield

    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task

    await close_db()
    logger.info("Database connection pool closed")
    logger.info("Tideflow Billing shutting down...")


app = FastAPI(
    title="Tideflow Billing",
    description="Billing reconciliation between Stripe and the Tideflow ledger",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(WebhookVerificationError)
async def webhook_verification_error_handler(request: Request, exc: WebhookVerificationError):
    """Handle webhook signature failures."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(StripeServiceError)
async def stripe_error_handler(request: Request, exc: StripeServiceError):
    """Handle upstream Stripe failures."""
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(TideflowError)
async def general_error_handler(request: Request, exc: TideflowError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "tideflow-billing"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Tideflow Billing API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import admin, billing, webhooks

app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(billing.router, prefix="/api", tags=["Billing"])
app.include_router(admin.router, prefix="/api")
