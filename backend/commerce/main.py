"""LearnPath Commerce: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from commerce.api.v1.admin import router as admin_router
from commerce.api.v1.billing import router as billing_router
from commerce.api.v1.entitlements import router as entitlements_router
from commerce.api.v1.purchases import router as purchases_router
from commerce.api.v1.webhooks import router as webhooks_router
from commerce.config import settings
from commerce.database import engine
from commerce.errors import CommerceError

# Root logger for every commerce.* logger, including commerce.security
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


def _missing_gateway_settings() -> list[str]:
    missing = [f"STRIPE_PRICE_{key.upper()}" for key, value in settings.stripe_price_ids.items() if not value]
    if not settings.stripe_secret_key:
        missing.append("STRIPE_SECRET_KEY")
    if not settings.stripe_webhook_secret:
        missing.append("STRIPE_WEBHOOK_SECRET")
    return missing


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    missing = _missing_gateway_settings()
    if missing:
        logger.warning("Payment gateway not fully configured, missing: %s", ", ".join(missing))
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription billing, payments ledger and entitlements for the LearnPath platform.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError) -> JSONResponse:
    """Map the engine's typed errors onto HTTP status codes."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


app.include_router(billing_router)
app.include_router(entitlements_router)
app.include_router(purchases_router)
app.include_router(admin_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Liveness plus database reachability; 503 when the database is down."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unreachable"})
    return JSONResponse(
        content={
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "gateway_configured": not _missing_gateway_settings(),
        }
    )
