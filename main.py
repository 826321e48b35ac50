"""Main entrypoint and application factory for the Statement Import API.

This module initializes the FastAPI application, configures logging, builds the pipeline context (database,
blob store, vision agent and worker pool) for the lifetime of the app, and exposes the Scalar API reference
endpoint for interactive OpenAPI documentation. It also includes the main entrypoint for running the app with
Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from scalar_fastapi import get_scalar_api_reference

from app.api.routes import router
from app.core.context import PipelineContext, build_context
from app.core.settings import Settings, get_settings
from app.core.utils import LOGGER_ROOT, ensure_dir, get_logger


# --- Logging Setup ---
def setup_logging(settings: Settings) -> None:
    """Configure logging to file and console, and ensure the log directory exists."""
    log_path = Path(settings.log_file)
    ensure_dir(log_path.parent)
    logger = get_logger(LOGGER_ROOT)
    logger.setLevel(logging.INFO)
    # Add file handler for persistent logs (not colorized)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(file_handler)
    logger.propagate = False


def create_app(context: PipelineContext | None = None) -> FastAPI:
    """Build the FastAPI app; without an explicit context one is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the pipeline context on startup and release it on shutdown."""
        owned = context is None
        if owned:
            settings = get_settings()
            setup_logging(settings)
            app.state.context = build_context(settings)
        else:
            app.state.context = context
        yield
        if owned:
            app.state.context.close()

    app = FastAPI(
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        title="Statement Import API",
        description="""
    The Statement Import API turns Colombian bank statements (PDF, CSV or photos) into reviewable accounts and
    transactions.

    **Endpoints:**
    - `POST /imports`: Upload a statement and start an import job. Returns the job.
    - `GET /imports/{job_id}`: Check the status, progress and result of an import job.
    - `POST /imports/{job_id}/confirm`: Create the reviewed accounts and transactions.
    - `POST /imports/{job_id}/cancel`: Cancel an import job.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
        version="1.0.0",
    )
    if context is not None:
        app.state.context = context
    app.include_router(router)

    @app.get("/scalar", include_in_schema=False)
    async def scalar_docs() -> HTMLResponse:
        """Return Scalar API reference."""
        return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
