"""
FastAPI application factory for VodPipe
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..cleanup import cleanup_orphaned
from ..config import VodPipeConfig, get_config
from ..errors import VodPipeError
from ..events import EventPublisher
from ..jobs import PROCESS_VIDEO, REGENERATE_QUALITY, JobQueue
from ..pipeline import TranscodeWorker
from ..storage import ObjectStore, S3ObjectStore, StorageLayout
from ..store import InMemoryVideoStore, VideoStore
from ..transcoding import TranscodeEngine
from ..uploads import UploadSessionManager
from .routes import health, videos
from .websocket import broadcast_event, websocket_events_handler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the routes and the lifespan need, wired once per app."""
    config: VodPipeConfig
    store: VideoStore
    object_store: ObjectStore
    events: EventPublisher
    queue: JobQueue
    uploads: UploadSessionManager
    worker: TranscodeWorker
    start_time: float = field(default_factory=time.time)


def build_services(
    config: VodPipeConfig,
    store: Optional[VideoStore] = None,
    object_store: Optional[ObjectStore] = None,
    engine: Optional[TranscodeEngine] = None,
    events: Optional[EventPublisher] = None,
) -> Services:
    """Wire the pipeline components; any of them can be supplied instead."""
    store = store or InMemoryVideoStore()
    object_store = object_store or S3ObjectStore(config.storage)
    engine = engine or TranscodeEngine(config.transcoding)
    events = events or EventPublisher(config.notifications)
    layout = StorageLayout(config.storage)

    queue = JobQueue.from_config(config.jobs)
    uploads = UploadSessionManager(config.storage, store, object_store, queue, events, layout)
    worker = TranscodeWorker(config.transcoding, store, object_store, engine, events, layout)
    queue.register_handler(PROCESS_VIDEO, worker.process, retry_hook=uploads.prepare_retry)
    queue.register_handler(REGENERATE_QUALITY, worker.regenerate_quality)
    events.register_sink(broadcast_event)

    return Services(
        config=config,
        store=store,
        object_store=object_store,
        events=events,
        queue=queue,
        uploads=uploads,
        worker=worker,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    services: Services = app.state.services
    services.start_time = time.time()

    temp_dir = Path(services.config.transcoding.temp_directory)
    temp_dir.mkdir(parents=True, exist_ok=True)
    # Nothing is queued yet, so every scratch dir left behind is orphaned
    cleanup_orphaned(temp_dir)

    await services.queue.start()
    logger.info(f"VodPipe v{__version__} started")

    yield

    logger.info("Shutting down VodPipe...")
    await services.queue.stop()
    await services.events.drain()
    logger.info("VodPipe shutdown complete")


async def vodpipe_error_handler(request: Request, exc: VodPipeError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


def create_app(config: Optional[VodPipeConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application."""
    config = config or (services.config if services else get_config())
    services = services or build_services(config)

    app = FastAPI(
        title="VodPipe",
        description="Video ingest and HLS transcoding pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.allowed_origins or ["*"],
        allow_credentials=bool(config.security.allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(VodPipeError, vodpipe_error_handler)

    app.include_router(health.router)
    app.include_router(videos.router)

    @app.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket):
        await websocket_events_handler(websocket)

    return app
