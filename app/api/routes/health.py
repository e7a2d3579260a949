import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_job_queue
from app.queue.producer import JobQueue
from app.services.health_service import HealthService

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_health_service() -> HealthService:
    try:
        queue = await get_job_queue()
    except Exception as e:
        logger.warning(f"Queue unavailable for health check: {e}")
        queue = None
    return HealthService(queue)


@router.get("/health")
async def health_check(service: HealthService = Depends(get_health_service)):
    return await service.full_health()


@router.get("/queue/failed")
async def failed_jobs(
    limit: int = Query(default=50, ge=1, le=500),
    queue: JobQueue = Depends(get_job_queue),
):
    """
    Dead-lettered jobs for manual inspection.

    Each entry carries the last error and the attempts spent.
    """
    jobs = await queue.failed_jobs(limit)
    return {
        "status": "ok",
        "count": len(jobs),
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }


@router.post("/queue/failed/{job_id}/requeue")
async def requeue_failed_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    """Give a failed job a fresh set of attempts."""
    job = await queue.requeue_failed(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No failed job {job_id}")
    return {"status": "ok", "job_id": job_id}
