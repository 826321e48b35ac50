"""FastAPI dependencies for DI (pipeline context, settings).

The pipeline context is built once in the application lifespan and stored on ``app.state``; endpoints receive
it through ``get_context`` so tests can swap in their own.
"""

from fastapi import Request

from app.core.context import PipelineContext
from app.core.settings import Settings


def get_context(request: Request) -> PipelineContext:
    """Provide the application's PipelineContext for dependency injection."""
    return request.app.state.context


def get_settings(request: Request) -> Settings:
    """Provide the settings the pipeline context was built with."""
    return get_context(request).settings
