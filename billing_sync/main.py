"""
Billing Sync - FastAPI Application

Main entry point for the subscription reconciliation backend.
Receives Stripe webhooks and exposes subscription, diagnostic and
cancellation endpoints under /api/payment.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_sync.config.settings import settings
from billing_sync.infrastructure.exceptions import BillingSyncError

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
    logger.info(f"Billing Sync starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from billing_sync.infrastructure.db.database import init_db
            await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")

    yield

    # Shutdown
    from billing_sync.infrastructure.db.database import close_db
    await close_db()
    logger.info("Billing Sync shutting down...")


app = FastAPI(
    title="Billing Sync",
    description="Keeps local subscription records consistent with Stripe",
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

@app.exception_handler(BillingSyncError)
async def billing_sync_error_handler(request: Request, exc: BillingSyncError):
    """Map application errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "billing-sync"}


# ============================================================================
# Import and register routers
# ============================================================================

from billing_sync.api.routes import admin, subscriptions, webhooks  # noqa: E402

app.include_router(webhooks.router, prefix="/api/payment", tags=["Webhooks"])
app.include_router(subscriptions.router, prefix="/api/payment", tags=["Subscriptions"])
app.include_router(admin.router, prefix="/api/payment")
