"""FastAPI application exposing the engine's test-support surface."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from dualmode.config import get_config
from dualmode.logging_setup import configure_logging
from dualmode.routes import api_router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging(run_id=get_config().run_id)
    app = FastAPI(title="dualmode test-support")

    @app.get("/health", summary="Liveness and configured modes")
    def health() -> dict:
        config = get_config()
        return {
            "status": "ok",
            "run_id": config.run_id,
            "mode_override": config.mode_override.value if config.mode_override else None,
            "production_configured": bool(config.live.store_url and config.live.api_base_url),
        }

    app.include_router(api_router)
    logger.info("app_created routes=%s", len(app.routes))
    return app


__all__ = ["create_app"]
