"""
Campus Payment Settlement — FastAPI Application Entry Point

Aggregates the routers, configures middleware and the payment error handler,
and initializes logging and the database on startup.
"""
import logging
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from campus_pay.config import get_settings
from campus_pay.database import SessionLocal, init_db
from campus_pay.errors import PaymentError
from campus_pay.routes import gateway_router, settlement_router, payment_router, admin_router
from campus_pay.utils.logger import setup_logging

settings = get_settings()
logger = logging.getLogger("campus_pay.main")

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Payment settlement and secure credential API for campuses. "
        "Covers encrypted gateway credentials (Razorpay, PayU, Cashfree), "
        "automatic settlement batching, webhook verification, and a hash-chained audit trail."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Configure logging, create tables and log boot info."""
    setup_logging(settings)
    init_db()

    logger.info(
        f"{settings.APP_NAME} v{settings.APP_VERSION} started at {datetime.now().isoformat()} | "
        f"credential key: {'[OK] loaded' if settings.PAYMENT_CREDENTIAL_ENCRYPTION_KEY else '[!] missing'} | "
        f"database: {settings.DATABASE_URL} | environment: {settings.ENVIRONMENT}"
    )


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({duration}ms)")

    return response


# ─── Error Handling ──────────────────────────────────────────────────
@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    """Catalogue errors → JSON with the prefix-derived HTTP status."""
    if exc.should_log:
        logger.error(f"{request.method} {request.url.path} failed: {exc} {exc.details}")
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_response(include_details=settings.EXPOSE_ERROR_DETAILS),
    )


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(gateway_router)
app.include_router(settlement_router)
app.include_router(payment_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"])
def deep_health():
    """Detailed health check including dependency statuses."""
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.warning(f"Health check: database unavailable ({e})")
    finally:
        db.close()

    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "credential_key": "configured" if settings.PAYMENT_CREDENTIAL_ENCRYPTION_KEY else "missing",
        "uptime_seconds": round(time.time() - BOOT_TIME, 1),
        "version": settings.APP_VERSION,
    }
