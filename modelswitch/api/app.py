"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import routes
from ..core.errors import (
    CacheFullError,
    ConflictError,
    InUseError,
    ModelLoadError,
    ModelSwitchingError,
    NotFoundError,
    RegistrationError,
)
from ..core.instance import ModelLoader, load_torch_instance
from ..runtime import ModelSwitchingRuntime
from ..utils.config import Config

logger = logging.getLogger(__name__)

ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (InUseError, 409),
    (RegistrationError, 400),
    (CacheFullError, 507),
    (ModelLoadError, 502),
]


def _status_for(error: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(
    config: Config | None = None,
    loader: ModelLoader = load_torch_instance,
    runtime: ModelSwitchingRuntime | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Application configuration. Read from the environment if not provided.
        loader: Builds instances from version configs.
        runtime: Pre-built runtime; takes precedence over config and loader.

    Returns:
        Configured FastAPI application.
    """
    runtime = runtime or ModelSwitchingRuntime.from_config(config or Config.from_env(), loader=loader)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        logger.info("Starting model switching server...")
        runtime.start()
        yield
        runtime.shutdown()

    app = FastAPI(
        title="Model Switching",
        description="Zero-downtime model version switching with health-based rollback",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ModelSwitchingError)
    async def switching_error_handler(request: Request, exc: ModelSwitchingError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "error": "ValueError"})

    app.include_router(routes.router)

    @app.get("/")
    async def root() -> dict:
        """Root endpoint."""
        return {
            "name": "Model Switching",
            "version": "0.1.0",
            "docs": "/docs",
            "config": runtime.config.to_dict(),
        }

    return app
