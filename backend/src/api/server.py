"""FastAPI application factory for the Honest Broker API."""
from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

from logging_config import configure_logging

# Patchable import for testing
from honest_broker.settings import build_registry
from honest_broker.backup import CrosswalkBackupManager
from honest_broker.registry import BrokerRegistry

configure_logging()
logger = logging.getLogger(__name__)


def parse_cors_origins() -> List[str]:
    """Parse CORS_ORIGINS (comma separated) with the console dev servers as fallback."""
    raw = os.getenv("CORS_ORIGINS")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return ["http://localhost:5173", "http://localhost:5174"]


def create_app(
    registry: Optional[BrokerRegistry] = None,
    backup_manager: Optional[CrosswalkBackupManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Honest Broker API",
        description="De-identification lookups, broker administration and crosswalk audit",
        version="0.1.0",
    )

    if registry is None:
        try:
            registry = build_registry()
        except Exception:
            logger.exception("Honest broker registry bootstrap failed")
            raise
    app.state.registry = registry
    app.state.backup_manager = backup_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    from api.routes import brokers_router, crosswalk_router

    app.include_router(brokers_router)
    app.include_router(crosswalk_router)

    @app.get("/api/health")
    def health_check():
        return {"status": "healthy", "brokers": len(app.state.registry.config.brokers)}

    return app


def main():
    """Run the API server."""
    import uvicorn
    app = create_app()
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
