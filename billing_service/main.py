"""
Subscription billing API: Razorpay checkout, webhooks, owner commands and
the operator reconciliation endpoints.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_service.core.config import get_settings
from billing_service.core.errors import BillingError

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True  # Override any existing configuration
)

logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run Alembic migrations on startup. Fails startup if they fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise


from billing_service.api.routes import admin, installments, subscription, webhooks
from billing_service.db.base import Base
from billing_service.db.session import engine
# Import all models to ensure they're registered with Base
from billing_service.models import (  # noqa: F401
    ProcessedWebhookEvent,
    ProviderOperation,
    Purchase,
    Subscription,
    User,
    WeeklyInstallmentTracker,
)

app = FastAPI(title=f"{settings.APP_NAME} Billing")


@app.on_event("startup")
async def startup_event():
    """Create tables, then run Alembic migrations on every server restart."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created")
    except Exception as e:
        logger.error("Error creating tables: %s", e)
        raise
    run_migrations()
    if not settings.provider_configured:
        logger.warning("[Razorpay] RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not set; provider calls will fail")
    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("[Razorpay webhook] RAZORPAY_WEBHOOK_SECRET not set; every webhook will be rejected")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(subscription.router, prefix="/api/subscription", tags=["Subscription"])
app.include_router(installments.router, prefix="/api/installments", tags=["Installments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.get("/health")
def health():
    return {"status": "ok"}
