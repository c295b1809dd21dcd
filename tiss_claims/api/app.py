"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tiss_claims import __version__
from tiss_claims.api.routes import router
from tiss_claims.errors import TissError
from tiss_claims.services import TissServices

logger = structlog.get_logger()


def create_app(services: TissServices, close_on_shutdown: bool = False) -> FastAPI:
    """
    Build the HTTP application around a service container.

    Args:
        services: Wired engine components
        close_on_shutdown: Dispose the engine and flush events when the app stops

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("api_started", version=__version__)
        yield
        if close_on_shutdown:
            services.close()
        logger.info("api_stopped")

    app = FastAPI(
        title="TISS Claims Engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(TissError)
    async def tiss_error_handler(request: Request, exc: TissError) -> JSONResponse:
        log = logger.warning if exc.http_status >= 500 else logger.info
        log(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=exc.code,
            message=exc.message,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    app.include_router(router)
    return app


def create_app_from_config(config_path: Optional[str] = None) -> FastAPI:
    """Entry point for ``uvicorn --factory``."""
    from tiss_claims.config import load_config

    services = TissServices.from_config(load_config(config_path), worker_id="api")
    return create_app(services, close_on_shutdown=True)
