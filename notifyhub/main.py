from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from notifyhub.api import health, integrations, notifications, oauth, sync, token_refresh, webhooks
from notifyhub.api.deps import get_adapters, get_cipher
from notifyhub.config import get_settings
from notifyhub.db import AsyncSessionLocal, engine
from notifyhub.errors import register_error_handlers
from notifyhub.services.refresh_scheduler import TokenRefreshScheduler

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Notification Hub API")

# CORS setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

refresh_scheduler = TokenRefreshScheduler(AsyncSessionLocal, get_adapters(), get_cipher(), settings)

# ---------------------------------------------------------------------------
# Startup / shutdown hooks
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    logger.info("[Startup] Using Alembic for database migrations")
    if settings.refresh_loop_enabled:
        await refresh_scheduler.start()
        logger.info("[Startup] Token refresh loop started")


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    await refresh_scheduler.stop()
    await engine.dispose()


# Include API routers
app.include_router(health.router)
app.include_router(oauth.router)
app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(token_refresh.router)
app.include_router(integrations.router)
app.include_router(notifications.router)

# Root alias for load balancer health checks
app.add_api_route("/health", health.health_check, methods=["GET"], tags=["health"])
