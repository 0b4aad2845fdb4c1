"""FastAPI application factory for the alert pipeline."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from vulnalert import __version__
from vulnalert.api.routers import alerts, health
from vulnalert.config import VulnAlertConfig, load_config
from vulnalert.pipeline import AlertPipeline

logger = logging.getLogger(__name__)


def create_app(
    config: VulnAlertConfig | None = None,
    pipeline: AlertPipeline | None = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    The pipeline is built from *config* (or the discovered config file)
    unless one is passed in, and injected into each router via its
    ``init_router()`` function.
    """
    if pipeline is None:
        pipeline = AlertPipeline(config or load_config())

    app = FastAPI(
        title="vulnalert",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )
    app.state.pipeline = pipeline

    alerts.init_router(
        pipeline.trigger, pipeline.engine, pipeline.rule_store, pipeline.audit_logger,
    )
    health.init_router(pipeline.rule_store, pipeline.audit_logger)

    app.include_router(alerts.router)
    app.include_router(health.router)

    logger.info("API ready (database=%s)", pipeline.config.database)
    return app
