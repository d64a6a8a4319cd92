"""Trigger service: FastAPI app queueing pipeline runs."""

import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from shipyard import __version__
from shipyard.api.deploy import init_run_manager, router as deploy_router
from shipyard.api.health import router as health_router
from shipyard.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from shipyard.api.webhooks import router as webhooks_router
from shipyard.core.config import Settings
from shipyard.core.pipeline_config import PipelineConfig, load_pipeline_config
from shipyard.deploy.manager import RunManager
from shipyard.pipeline import Pipeline
from shipyard.utils.logging import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Shipyard trigger service", version=__version__, app=app.state.pipeline_config.app)
    await app.state.run_manager.start()

    yield

    logger.info("Shutting down Shipyard trigger service")
    await app.state.run_manager.stop()


def create_app(
    settings: Optional[Settings] = None,
    config: Optional[PipelineConfig] = None,
    pipeline: Optional[Pipeline] = None,
) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    if config is None:
        config = pipeline.config if pipeline is not None else load_pipeline_config(settings.pipeline_file)
    if pipeline is None:
        pipeline = Pipeline(settings, config)

    app = FastAPI(
        title="Shipyard",
        version=__version__,
        description="Build and deploy trigger service",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.pipeline_config = config
    app.state.run_manager = init_run_manager(RunManager(pipeline))

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(deploy_router, tags=["runs"])
    app.include_router(webhooks_router, tags=["webhooks"])

    if settings.metrics_enabled:
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    return app


def run(settings: Optional[Settings] = None):
    """Run the trigger service."""
    settings = settings or Settings()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, initiating graceful shutdown")
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    config = uvicorn.Config(
        "shipyard.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        workers=1,  # runs are serialized in-process
        log_config=None,
        access_log=False,
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
