"""
FishCAD Storefront Backend
Subscription entitlements, Stripe billing and STL import tracking
"""

import asyncio
import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from routers.billing_router import billing_router
from routers.subscription_router import subscription_router
from routers.import_router import import_router, files_router
from routers.import_ws_router import router as import_ws_router
from crud.entitlement import EntitlementRepository
from database import init_db
from dependencies import get_billing_provider
from jobs.import_job_manager import import_jobs
from jobs.scheduler import start_background_tasks
from services.entitlement_service import EntitlementService
from config.settings import settings, LOGS_DIR, IS_PRODUCTION

# ============================================================================
# LOGGING
# ============================================================================

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="FishCAD Storefront API")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Only set in production where HTTPS is guaranteed
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url, settings.domain],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# STARTUP CHECKS - ENV KEYS
# ============================================================================

BILLING_KEYS = {
    "STRIPE_SECRET_KEY": settings.stripe_secret_key,
    "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
    "STRIPE_PRICE_MONTHLY": settings.stripe_price_monthly,
    "STRIPE_PRICE_ANNUAL": settings.stripe_price_annual,
}


@app.on_event("startup")
async def validate_keys():
    """Validate billing keys are present (non-fatal)"""
    missing = [key for key, value in BILLING_KEYS.items() if not value]
    if missing:
        logger.warning(f"⚠️ Missing billing keys: {missing}")
    else:
        logger.info("🔐 All billing keys loaded successfully")


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Initialize the database and create all tables."""
    try:
        await init_db()
        logger.info("✅ Database initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

_background_tasks = []


def _entitlement_service() -> EntitlementService:
    return EntitlementService(EntitlementRepository(), get_billing_provider())


@app.on_event("startup")
async def start_scheduler():
    """Start the monthly reset and import retention loops."""
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    _background_tasks.extend(start_background_tasks(_entitlement_service, import_jobs))
    logger.info(f"Started {len(_background_tasks)} background task(s)")


@app.on_event("shutdown")
async def stop_scheduler():
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
    logger.info("Background tasks stopped")


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)
app.include_router(subscription_router)
app.include_router(import_router)
app.include_router(import_ws_router)
app.include_router(files_router)


@app.get("/api/health")
async def health():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
