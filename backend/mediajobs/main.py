"""
mediajobs backend service: job queue, pipeline and event stream.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .commands import JobCommands
from .config import AppSettings, load_settings
from .execution.executor_registry import ExecutorRegistry
from .execution.scheduler import StageScheduler
from .jobs.events import EventBus
from .jobs.models import JobStatus
from .jobs.orchestrator import PipelineOrchestrator
from .jobs.queue import JobQueue
from .jobs.registry import JobRegistry
from .persistence.manager import PersistenceManager
from .routes import jobs as job_routes

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    queue: JobQueue = app.state.job_queue
    orchestrator: PipelineOrchestrator = app.state.orchestrator

    # Load persisted state
    if app.state.persistence is not None:
        restored = queue.load()
        pending = [job for job in restored if job.status == JobStatus.PENDING]
        for job in pending:
            orchestrator.submit(job.id)
        logger.info(f"[STARTUP] Restored {len(restored)} job(s), resubmitted {len(pending)} pending")

    yield

    await orchestrator.shutdown()


def create_app(
    settings: Optional[AppSettings] = None,
    executors: Optional[ExecutorRegistry] = None,
    opener: Optional[Callable[[Path], None]] = None,
) -> FastAPI:
    """
    Build the FastAPI application and its collaborators.

    Args:
        settings: Resolved settings (default: load_settings())
        executors: Stage executors (default: yt-dlp / ffmpeg / whisper.cpp / packer)
        opener: Directory opener for POST /jobs/{id}/open

    Everything shared lives on app.state: settings, persistence, event_bus,
    job_queue, orchestrator, job_commands.
    """
    if settings is None:
        settings = load_settings()

    app = FastAPI(title="mediajobs Backend", version="0.1.0", lifespan=_lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    persistence = PersistenceManager(db_path=str(settings.db_path)) if settings.db_path else None

    if executors is None:
        executors = ExecutorRegistry.with_defaults(
            ytdlp_path=settings.ytdlp_path,
            ffmpeg_path=settings.ffmpeg_path,
            whisper_path=settings.whisper_path,
            whisper_model=settings.whisper_model,
            stage_timeout=settings.stage_timeout,
        )

    app.state.settings = settings
    app.state.persistence = persistence
    app.state.event_bus = EventBus()
    app.state.job_queue = JobQueue(
        event_bus=app.state.event_bus,
        registry=JobRegistry(persistence_manager=persistence),
    )
    app.state.orchestrator = PipelineOrchestrator(
        app.state.job_queue,
        executors,
        StageScheduler(max_concurrent=settings.max_concurrent_stages),
    )
    app.state.job_commands = JobCommands(
        app.state.job_queue,
        app.state.orchestrator,
        downloads_dir=settings.downloads_dir,
        opener=opener,
    )

    app.include_router(job_routes.router)

    @app.get("/")
    async def root():
        return {"service": "mediajobs-backend", "status": "running"}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "executors": executors.availability(),
            "persistence": persistence is not None,
        }

    return app
