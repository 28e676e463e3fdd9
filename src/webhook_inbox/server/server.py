import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from webhook_inbox.common.config import InboxConfig
from webhook_inbox.common.log import configure_logging
from webhook_inbox.common.metrics import metrics, start_metrics_server
from webhook_inbox.server.api import router as api_router
from webhook_inbox.server.routes import router as webhook_router
from webhook_inbox.server.service import WebhookService
from webhook_inbox.server.websocket import BroadcastHub, websocket_endpoint
from webhook_inbox.storage import StorageAdapter, StorageAdapterFactory


def create_app(config: InboxConfig, storage: Optional[StorageAdapter] = None) -> FastAPI:
    """Build the inbox application. ``storage`` replaces the configured backends when given."""
    hub = BroadcastHub(heartbeat_interval=config.websocket.heartbeat_interval)
    service = WebhookService(config, hub, factory=StorageAdapterFactory(), storage=storage)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(config.log_level)

        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

        await service.initialize()
        hub.start()
        metrics.up.labels(component="inbox").set(1)

        if config.admin_token:
            logger.info("Dashboard API protected by admin token")
        else:
            logger.warning("No admin token configured, dashboard API is open")
        if config.webhook_secret:
            logger.info("Webhook signature verification enabled")

        logger.info(f"Webhook Inbox started on {config.host}:{config.port}")
        try:
            yield
        finally:
            metrics.up.labels(component="inbox").set(0)
            await hub.stop()
            await service.close()
            logger.info("Webhook Inbox shutting down")

    app = FastAPI(
        title="Webhook Inbox",
        description="Receives notification webhooks, stores them and streams them to the dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.hub = hub
    app.state.service = service
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request parameters", "fields": fields},
        )

    app.include_router(webhook_router, prefix="/webhook")
    app.include_router(api_router, prefix="/api")
    app.add_api_websocket_route(config.websocket.path, websocket_endpoint)

    @app.get("/health")
    async def health_check():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
        }

    return app


def run_server(config: InboxConfig):
    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info",
        ws_ping_interval=config.websocket.heartbeat_interval,
        ws_ping_timeout=config.websocket.heartbeat_interval,
    )
