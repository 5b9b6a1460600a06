"""
Admin API Routes

Provides endpoints for the admin dashboard to:
- Queue quiz generation and regeneration for a course
- Queue outline and article content generation
- Inspect job status and queue contents
- Purge, remove, retry and promote jobs
- Read and update per-queue retry configuration
- View recent logs
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from coursegen.config import config
from coursegen.database import CourseService, ResultService
from coursegen.errors import NotFoundError, ValidationError
from coursegen.generation.orchestrator import GenerationOrchestrator
from coursegen.jobs.models import QueueName, parse_queue_name
from coursegen.jobs.queue import JobQueue, get_queue
from coursegen.jobs.status import StatusReporter
from coursegen.utils.logging import LogLevel, api_logger as logger, get_log_buffer

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ===== Dependencies =====

async def queue_dependency() -> JobQueue:
    return await get_queue()


def course_service() -> CourseService:
    return CourseService()


def results_service() -> Optional[ResultService]:
    return ResultService() if config.supabase_configured else None


def orchestrator_dependency(
    queue: JobQueue = Depends(queue_dependency),
    courses: CourseService = Depends(course_service),
) -> GenerationOrchestrator:
    return GenerationOrchestrator(queue, courses)


def status_dependency(
    queue: JobQueue = Depends(queue_dependency),
    results: Optional[ResultService] = Depends(results_service),
) -> StatusReporter:
    return StatusReporter(queue, results)


# ===== Request Models =====

class BulkQuizRequest(BaseModel):
    """Request to queue quizzes for every unit of a course."""
    regenerate_only: bool = False


class RegenerateRequest(BaseModel):
    """Request to regenerate one unit of a course."""
    type: str
    article_id: Optional[str] = None
    section_id: Optional[str] = None


class JobActionRequest(BaseModel):
    action: str  # retry | promote


# ===== Generation =====

@router.post("/courses/{course_id}/generate-all-quizzes")
async def generate_all_quizzes(
    course_id: str,
    request: Optional[BulkQuizRequest] = None,
    orchestrator: GenerationOrchestrator = Depends(orchestrator_dependency),
):
    """
    Queue article quizzes, section quizzes and the final exam.

    regenerate_only=false queues only missing quizzes; true queues only
    existing ones. Units with a job already in flight are skipped.
    """
    regenerate_only = request.regenerate_only if request else False
    result = await orchestrator.enqueue_bulk_generation(course_id, regenerate_only)
    logger.info("Bulk quiz generation requested", course_id=course_id,
                regenerate_only=regenerate_only, jobs_queued=result.jobs_queued)
    return result.to_dict()


@router.post("/courses/{course_id}/regenerate")
async def regenerate_unit(
    course_id: str,
    request: RegenerateRequest,
    orchestrator: GenerationOrchestrator = Depends(orchestrator_dependency),
):
    """Queue regeneration of one unit (outline, article content or a quiz)."""
    return await orchestrator.regenerate_unit(
        course_id,
        request.type,
        article_id=request.article_id,
        section_id=request.section_id,
    )


@router.post("/courses/{course_id}/outline")
async def generate_outline(
    course_id: str,
    orchestrator: GenerationOrchestrator = Depends(orchestrator_dependency),
):
    return await orchestrator.request_outline(course_id)


@router.post("/articles/{article_id}/generate")
async def generate_article(
    article_id: str,
    inline: bool = Query(False, description="Generate in-process instead of queueing"),
    orchestrator: GenerationOrchestrator = Depends(orchestrator_dependency),
):
    """Return existing content, or queue (or run inline) content generation."""
    result = await orchestrator.request_article_content(article_id, inline=inline)
    return result.to_dict()


# ===== Jobs =====

@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, reporter: StatusReporter = Depends(status_dependency)):
    return await reporter.get_status(job_id)


@router.get("/queues/jobs")
async def list_queue_jobs(
    queue: Optional[str] = Query(None, description="Queue name (default: all queues)"),
    status: str = Query("all", description="waiting, active, delayed, completed, failed or all"),
    limit: int = Query(50, ge=1, le=500),
    job_queue: JobQueue = Depends(queue_dependency),
):
    """List jobs by state with per-state counts."""
    queue_names = [parse_queue_name(queue)] if queue else list(QueueName)

    jobs = []
    counts: Dict[str, Dict[str, int]] = {}
    for queue_name in queue_names:
        jobs.extend(job.to_dict() for job in await job_queue.list_by_state(queue_name, status, limit))
        counts[queue_name.value] = await job_queue.counts(queue_name)

    jobs.sort(key=lambda j: j["timestamp"], reverse=True)
    return {
        "success": True,
        "status": status,
        "jobs": jobs[:limit],
        "counts": counts,
    }


@router.delete("/queues/{queue}")
async def purge_queue(
    queue: str,
    status: str = Query("all", description="State to purge, or all"),
    job_queue: JobQueue = Depends(queue_dependency),
):
    removed = await job_queue.purge_by_state(queue, status)
    return {
        "success": True,
        "queue": queue,
        "status": status,
        "removed": removed,
        "message": f"Removed {removed} job(s) from {queue}",
    }


async def _job_in_queue(job_queue: JobQueue, queue: str, job_id: str):
    queue_name = parse_queue_name(queue)
    job = await job_queue.get_job(job_id)
    if job is None or job.queue_name != queue_name:
        raise NotFoundError("job", job_id)
    return job


@router.delete("/queues/{queue}/jobs/{job_id}")
async def remove_job(queue: str, job_id: str, job_queue: JobQueue = Depends(queue_dependency)):
    await _job_in_queue(job_queue, queue, job_id)
    await job_queue.remove_job(job_id)
    return {"success": True, "message": f"Job {job_id} removed"}


@router.post("/queues/{queue}/jobs/{job_id}")
async def job_action(
    queue: str,
    job_id: str,
    request: JobActionRequest,
    job_queue: JobQueue = Depends(queue_dependency),
):
    """Retry a failed job or promote a delayed one."""
    await _job_in_queue(job_queue, queue, job_id)

    if request.action == "retry":
        await job_queue.retry_job(job_id)
        message = f"Job {job_id} queued for retry"
    elif request.action == "promote":
        await job_queue.promote_job(job_id)
        message = f"Job {job_id} promoted"
    else:
        raise ValidationError("action", f"Invalid action: {request.action}")

    logger.info("Job action applied", queue=queue, job_id=job_id, action=request.action)
    return {"success": True, "message": message}


# ===== Queue Configuration =====

@router.get("/queues/config")
async def get_queue_configs(job_queue: JobQueue = Depends(queue_dependency)):
    configs = await job_queue.configs.list_all()
    return {"success": True, "configs": [cfg.to_dict() for cfg in configs]}


@router.put("/queues/config/{queue}")
async def update_queue_config(
    queue: str,
    fields: Optional[Dict[str, Any]] = Body(None),
    job_queue: JobQueue = Depends(queue_dependency),
):
    """
    Update any of attempts, backoff_delay_ms, rate_limit_retry_seconds and
    max_backoff_minutes. Applies to jobs enqueued afterwards.
    """
    cfg = await job_queue.configs.update(queue, fields)
    return {"success": True, "config": cfg.to_dict()}


# ===== Quiz Settings =====

@router.get("/quiz-settings")
async def get_quiz_settings(job_queue: JobQueue = Depends(queue_dependency)):
    settings = await job_queue.quiz_settings.get()
    return {"success": True, "settings": settings.to_dict()}


@router.put("/quiz-settings")
async def update_quiz_settings(
    fields: Optional[Dict[str, Any]] = Body(None),
    job_queue: JobQueue = Depends(queue_dependency),
):
    """
    Update min/max question counts for article quizzes, section quizzes and
    the final exam. Each range must satisfy 1 <= min <= max <= 500.
    """
    settings = await job_queue.quiz_settings.update(fields or {})
    return {"success": True, "settings": settings.to_dict()}


# ===== Logs =====

@router.get("/logs")
async def get_logs(
    limit: int = Query(100, ge=1, le=500),
    level: Optional[str] = Query(None, description="Filter by level (debug, info, warning, error, critical)"),
    source: Optional[str] = Query(None, description="Filter by source"),
    job_id: Optional[str] = Query(None, description="Entries logged while handling this job"),
    queue: Optional[str] = Query(None, description="Entries tagged with this queue"),
):
    """Recent log entries from the in-memory buffer, newest first."""
    levels = None
    if level:
        try:
            levels = [LogLevel(level.lower())]
        except ValueError:
            raise ValidationError("level", f"Invalid log level: {level}")

    log_buffer = get_log_buffer()
    return {
        "logs": log_buffer.query(limit=limit, levels=levels, source=source, job_id=job_id, queue=queue),
        "stats": log_buffer.get_stats(),
    }


@router.get("/logs/errors")
async def get_error_logs(limit: int = Query(50, ge=1, le=200)):
    """Get recent error and critical log entries."""
    return {"errors": get_log_buffer().get_errors(limit=limit)}


# ===== Health =====

@router.get("/health")
async def admin_health(job_queue: JobQueue = Depends(queue_dependency)):
    """Queue counts plus which external services are configured."""
    counts = {q.value: await job_queue.counts(q) for q in QueueName}
    return {
        "status": "healthy",
        "queues": counts,
        "services": {
            "supabase": config.supabase_configured,
            "generation": config.generation_configured,
            "email": config.email_configured,
        },
    }
