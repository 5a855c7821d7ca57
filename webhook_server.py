"""
FastAPI server for the FinLock card control backend
Card API, provider webhooks and health checks; background sweep runs per worker
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging
import os
import time
from typing import Optional

from config import Config
from database import test_connection
from handlers.card_routes import router as card_router
from handlers.provider_webhook import router as provider_webhook_router
from handlers.transaction_routes import router as transaction_router
from jobs.authorization_sweep_job import AuthorizationSweepScheduler
from services.service_container import ServiceContainer, build_service_container

logger = logging.getLogger(__name__)


def create_app(
    container: Optional[ServiceContainer] = None,
    start_background: bool = True,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    """
    Build the ASGI app.

    Args:
        container: Pre-built services (tests inject fakes); built from Config at startup when omitted
        start_background: Run the reconciliation sweep and expiry listener in this worker
        webhook_secret: Overrides LITHIC_WEBHOOK_SECRET
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: Initialize worker-specific systems
        logger.info(f"🔧 Worker {os.getpid()} starting...")
        owns_container = app.state.container is None
        if owns_container:
            Config.log_environment_config()
            app.state.container = build_service_container()

        scheduler = None
        if start_background:
            scheduler = AuthorizationSweepScheduler(app.state.container)
            scheduler.start()
        app.state.started_at = time.time()
        logger.info(f"✅ Worker {os.getpid()} initialized successfully")

        yield  # App is now running and handling requests

        logger.info(f"🔄 Worker {os.getpid()} shutting down...")
        if scheduler is not None:
            await scheduler.stop()
        if owns_container:
            await app.state.container.close()

    app = FastAPI(
        title=Config.SERVICE_NAME,
        description="Time-bounded card authorization with guaranteed re-lock",
        version=Config.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.container = container
    app.state.webhook_secret = webhook_secret
    app.state.started_at = time.time()

    # Mobile clients call /api/card/...; routes are mounted without the prefix
    @app.middleware("http")
    async def strip_api_prefix(request: Request, call_next):
        if request.scope["path"].startswith("/api/"):
            request.scope["path"] = request.scope["path"][4:]
        elif request.scope["path"] == "/api":
            request.scope["path"] = "/"
        return await call_next(request)

    app.include_router(card_router)
    app.include_router(provider_webhook_router)
    app.include_router(transaction_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness plus database / timer store reachability"""
        services = request.app.state.container
        if services is None:
            return JSONResponse(
                content={"status": "starting", "service": Config.SERVICE_NAME, "ready": False},
                status_code=503,
            )

        database_ok = await asyncio.to_thread(test_connection, services.engine) if services.engine is not None else True
        timer_store_ok = True
        timer_store_health = getattr(services.timer_store, "health_check", None)
        if timer_store_health is not None:
            timer_store_ok = await timer_store_health()

        return JSONResponse(
            content={
                # Timer store outages degrade latency only; the sweep keeps cards safe
                "status": "healthy" if database_ok else "unhealthy",
                "service": Config.SERVICE_NAME,
                "ready": database_ok,
                "database": "ok" if database_ok else "unreachable",
                "timerStore": "ok" if timer_store_ok else "degraded",
                "environment": Config.CURRENT_ENVIRONMENT,
                "uptime_seconds": round(time.time() - request.app.state.started_at, 2),
            },
            status_code=200 if database_ok else 503,
        )

    return app
