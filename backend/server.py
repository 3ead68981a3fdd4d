from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import billing, webhooks, admin_billing
from services.billing_errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

from job_runner import run_pending_downgrade_reconciliation
from services.stripe_gateway import BillingProvider, StripeSettings

PENDING_DOWNGRADE_INTERVAL_MINUTES = int(os.environ.get("PENDING_DOWNGRADE_INTERVAL_MINUTES", "15"))

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting EngageSuite Billing API")
    await database.connect()

    # Stripe key mode is decided here, once, and travels with the provider
    settings = StripeSettings.from_env()
    app.state.billing_provider = BillingProvider(settings)
    if not settings.is_configured:
        logger.error("Stripe secret key is not set for %s mode. Plan changes and webhooks will fail.", settings.mode.value)
    else:
        logger.info("STRIPE_MODE = %s", settings.mode.value)
    for plan_name, prices in settings.price_table.items():
        logger.info(
            "Stripe price IDs plan=%s monthly=%s annually=%s",
            plan_name, prices.get("monthly") or "(missing)", prices.get("annually") or "(missing)",
        )

    # Converge scheduled downgrades whose boundary passed without a webhook
    scheduler.add_job(
        run_pending_downgrade_reconciliation,
        IntervalTrigger(minutes=PENDING_DOWNGRADE_INTERVAL_MINUTES),
        kwargs={"provider": app.state.billing_provider},
        id="pending_downgrade_reconciliation",
        name="Pending Downgrade Reconciliation",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Background job scheduler started")
    
    yield
    
    # Shutdown
    logger.info("Shutting down EngageSuite Billing API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="EngageSuite Billing API",
    description="Subscription plan changes and Stripe reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(admin_billing.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "request_id": request_id},
    )

# Billing errors raised outside a route body (e.g. the auth dependency)
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {"error_code": exc.error_code, "message": exc.message, "request_id": str(uuid.uuid4())}},
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
