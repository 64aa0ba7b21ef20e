"""
OAuth Connection Service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import config
from connectors.encryption import get_cipher
from connectors.health import HealthMonitor
from connectors.provider_config import ensure_provider_configs
from connectors.registry import ConnectorRegistry
from connectors.routes import router as connectors_router
from database.session import init_db

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="OAuth Connection Service",
        version="1.0.0",
        description="Encrypted OAuth connection storage with background token refresh.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(connectors_router, prefix="/api/v1/connectors")

    @app.on_event("startup")
    async def on_startup():
        # Fail fast on a missing / malformed TOKEN_ENCRYPTION_KEY.
        get_cipher()

        await init_db()

        registry = ConnectorRegistry()
        registry.discover()
        created = await ensure_provider_configs(registry=registry)
        if created:
            logger.info("Seeded %d provider configs", created)

        monitor = HealthMonitor(registry=registry)
        app.state.health_monitor = monitor
        if config.health_check_enabled:
            await monitor.start()

        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        monitor = getattr(app.state, "health_monitor", None)
        if monitor is not None:
            await monitor.stop()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
