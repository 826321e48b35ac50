"""Pipeline context: the explicitly constructed clients every stage works with.

``build_context`` creates the database engine, job repository, blob store, vision agent and worker pool once at
startup; ``PipelineContext.close`` releases them at shutdown.
"""

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from groq import Groq
from sqlalchemy.engine import Engine

from app.agents.base import BaseAgent
from app.agents.vision_agent import VisionAgent
from app.core.db import ImportJobRepository, create_db_engine, init_db
from app.core.settings import Settings
from app.core.utils import get_logger
from app.services.file_service import FileService, build_file_service

if TYPE_CHECKING:
    from app.workers.job_runner import WorkerPool

logger = get_logger("statement-import.context")


class SecretStore:
    """In-memory holder for document passwords, keyed by job id. Nothing here is ever persisted."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._secrets: dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, job_id: str, secret: str) -> None:
        """Remember a secret for a job."""
        with self._lock:
            self._secrets[job_id] = secret

    def get(self, job_id: str) -> str | None:
        """Return the secret for a job, if any."""
        with self._lock:
            return self._secrets.get(job_id)

    def discard(self, job_id: str) -> None:
        """Forget a job's secret."""
        with self._lock:
            self._secrets.pop(job_id, None)

    def clear(self) -> None:
        """Forget every secret."""
        with self._lock:
            self._secrets.clear()


@dataclass
class PipelineContext:
    """Handles shared by the import service, the worker and the API."""

    settings: Settings
    engine: Engine
    repository: ImportJobRepository
    file_service: FileService
    vision_agent: BaseAgent
    secrets: SecretStore = field(default_factory=SecretStore)
    pool: "WorkerPool | None" = None

    def close(self) -> None:
        """Stop the worker pool and release the database engine."""
        if self.pool is not None:
            self.pool.shutdown()
        self.secrets.clear()
        self.engine.dispose()
        logger.info("Pipeline context closed")


def build_llm_client(settings: Settings) -> Groq | None:
    """Create the Groq client used for vision, or None when no API key is configured."""
    if not settings.groq_api_key:
        return None
    return Groq(api_key=settings.groq_api_key, timeout=settings.vision_timeout_seconds, max_retries=0)


def build_context(
    settings: Settings,
    *,
    file_service: FileService | None = None,
    vision_agent: BaseAgent | None = None,
    start_workers: bool = True,
) -> PipelineContext:
    """Construct every pipeline client from settings; explicit arguments replace the defaults."""
    from app.workers.job_runner import WorkerPool  # noqa: PLC0415

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    context = PipelineContext(
        settings=settings,
        engine=engine,
        repository=ImportJobRepository(engine),
        file_service=file_service or build_file_service(settings),
        vision_agent=vision_agent or VisionAgent(build_llm_client(settings), settings),
    )
    if start_workers:
        context.pool = WorkerPool(context, settings.worker_concurrency)
    logger.info(f"Pipeline context ready (database={engine.url.render_as_string(hide_password=True)})")
    return context
