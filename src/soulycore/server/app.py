"""FastAPI application for the SoulyCore service."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..services.assistant import AssistantCore, create_assistant_core
from .config import SoulyCoreConfig
from .routes import router

# Global core instance (set during lifespan)
_core: Optional[AssistantCore] = None

logger = logging.getLogger("soulycore.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _core

    config: SoulyCoreConfig = app.state.config

    errors = config.validate()
    if errors:
        raise ValueError(f"Configuration errors: {errors}")

    logger.info("Starting soulycore service (instance: %s)", config.instance_id)
    _core = create_assistant_core(config)

    yield

    logger.info("Shutting down soulycore service")
    await _core.close()
    _core = None


def create_app(config: Optional[SoulyCoreConfig] = None) -> FastAPI:
    """Create FastAPI application.

    Args:
        config: Service configuration. If None, loads from environment.
    """
    if config is None:
        config = SoulyCoreConfig.from_env()

    app = FastAPI(
        title="SoulyCore",
        description="Tiered memory and autonomous agent core for a conversational assistant",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config

    # Bound to 127.0.0.1 by default; CORS only admits local origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.get("/")
    async def root():
        return {"service": "soulycore", "version": "0.1.0", "docs": "/docs"}

    return app


def run_server(
    config: Optional[SoulyCoreConfig] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    log_level: str = "info",
):
    """Run the HTTP server.

    Args:
        config: Service configuration. If None, loads from environment.
        host: Override host from config.
        port: Override port from config.
        log_level: Logging level.
    """
    if config is None:
        config = SoulyCoreConfig.from_env()

    if not config.db.in_memory:
        Path(config.db.path).mkdir(parents=True, exist_ok=True)

    app = create_app(config)

    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=log_level,
    )
