"""
Typix Billing API - FastAPI Backend
Main application entry point: subscriptions, credits and payment webhooks.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    subscription,
    webhook,
)
from services.catalog import get_catalog
from services.errors import ErrorKind, ServiceError


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_PARAMETER: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Typix Billing API...")
    validate_security_settings()
    catalog = get_catalog()
    print(f"🧾 Product catalog version {catalog.version} loaded ({len(catalog.products)} tiers).")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.CREEM_API_KEY or not settings.CREEM_WEBHOOK_SECRET:
        print("⚠️ Creem is not configured; checkout and webhooks will fail until it is.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Typix Billing API",
    description="Subscriptions, credit ledger and payment webhook reconciliation for Typix",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    status_code = ERROR_STATUS_CODES[exc.kind]
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.kind.value, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.kind.value},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])
app.include_router(webhook.router, prefix="/webhook", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Typix Billing API",
        "version": "0.1.0",
        "status": "running"
    }
