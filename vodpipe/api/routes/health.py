"""
Health and stats API routes for VodPipe
"""

import time

from fastapi import APIRouter, Depends

from ... import __version__
from ...models import HealthResponse, StatsResponse
from ..dependencies import get_services

router = APIRouter()


@router.get("/api/health", response_model=HealthResponse)
async def health_check(services=Depends(get_services)):
    """Health check endpoint."""
    queue = services.queue

    return HealthResponse(
        status="healthy",
        version=__version__,
        uptime_seconds=time.time() - services.start_time,
        active_jobs=queue.get_active_count(),
        queued_jobs=queue.get_queue_length(),
    )


@router.get("/api/stats", response_model=StatsResponse)
async def get_stats(services=Depends(get_services)):
    """Job queue statistics."""
    queue = services.queue
    stats = queue.stats

    return StatsResponse(
        total_jobs_processed=stats.total_jobs_processed,
        successful_jobs=stats.successful_jobs,
        failed_jobs=stats.failed_jobs,
        retried_jobs=stats.retried_jobs,
        current_queue_length=queue.get_queue_length(),
        active_jobs=queue.get_active_count(),
        uptime_seconds=stats.uptime_seconds,
    )
