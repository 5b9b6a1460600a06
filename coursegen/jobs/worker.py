"""
Background stage worker for generation jobs.
Polls the job queues, runs the handler for each leased job and reports
the outcome back to the queue.
"""

import asyncio
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from coursegen.config import config
from coursegen.email.sender import queue_admin_notification
from coursegen.errors import (
    GenerationError,
    LeaseLostError,
    NotFoundError,
    PermanentError,
    TransientError,
)
from coursegen.generation.stages import STAGE_HANDLERS, StageContext, mark_unit_failed
from coursegen.jobs.models import GenerationJob, QueueName, parse_queue_name
from coursegen.jobs.queue import JobQueue
from coursegen.utils.logging import worker_logger as logger


class StageWorker:
    """
    Background worker that processes generation jobs.

    Every poll_interval seconds it leases up to `concurrency` jobs
    (round-robin across its queues) and runs them concurrently. Provider
    calls happen outside the queue's lock, so any number of worker
    processes can share one queue database.
    """

    def __init__(
        self,
        queue: JobQueue,
        courses,
        provider,
        results=None,
        orchestrator=None,
        queue_names: Optional[List[str]] = None,
        poll_interval_seconds: Optional[int] = None,
        concurrency: Optional[int] = None,
        stalled_job_minutes: Optional[int] = None,
        cleanup_interval_minutes: Optional[int] = None,
        handlers: Optional[Dict[str, Any]] = None
    ):
        self.queue = queue
        self.courses = courses
        self.provider = provider
        self.results = results
        self.orchestrator = orchestrator
        # Unique, in configured order
        self.queue_names = list(dict.fromkeys(
            parse_queue_name(q) for q in (queue_names or config.worker_queue_names)
        ))
        self.poll_interval = poll_interval_seconds or config.WORKER_POLL_INTERVAL
        self.concurrency = concurrency or config.WORKER_CONCURRENCY
        self.stalled_job_minutes = stalled_job_minutes or config.STALLED_JOB_MINUTES
        self.cleanup_interval_minutes = cleanup_interval_minutes or config.CLEANUP_INTERVAL_MINUTES
        self.handlers = handlers if handlers is not None else STAGE_HANDLERS

        self.scheduler = AsyncIOScheduler()
        self._is_processing = False  # Prevent overlapping poll cycles
        self._current_job_ids: List[str] = []

    # =========================================================================
    # Polling
    # =========================================================================

    async def _lease_batch(self) -> List[GenerationJob]:
        """Lease up to `concurrency` jobs, one queue at a time in turn"""
        batch: List[GenerationJob] = []
        exhausted = set()
        while len(batch) < self.concurrency and len(exhausted) < len(self.queue_names):
            leased = False
            for queue_name in self.queue_names:
                if queue_name in exhausted or len(batch) >= self.concurrency:
                    continue
                job = await self.queue.lease(queue_name)
                if job is None:
                    exhausted.add(queue_name)
                else:
                    batch.append(job)
                    leased = True
            if not leased:
                break
        return batch

    async def process_jobs(self) -> int:
        """
        Main job processing loop.
        Called by scheduler every poll_interval seconds. Returns jobs run.
        """
        if self._is_processing:
            return 0

        self._is_processing = True
        try:
            batch = await self._lease_batch()
            if not batch:
                return 0

            self._current_job_ids = [job.job_id for job in batch]
            await asyncio.gather(*(self.run_job(job) for job in batch))
            return len(batch)

        except Exception as e:
            logger.error("Worker poll cycle failed", error=str(e))
            return 0
        finally:
            self._is_processing = False
            self._current_job_ids = []

    # =========================================================================
    # Running one job
    # =========================================================================

    async def run_job(self, job: GenerationJob) -> str:
        """
        Run the handler for a leased job and record the outcome.

        Returns the resulting state: completed, delayed, failed or lease_lost.
        """
        handler = self.handlers.get(job.job_type)
        if handler is None:
            return await self._record_failure(
                job, PermanentError(f"Unknown job type: {job.job_type}"), final=True
            )

        async def report_progress(progress: int):
            await self.queue.update_progress(job.job_id, job.lease_token, progress)

        ctx = StageContext(
            courses=self.courses,
            provider=self.provider,
            report_progress=report_progress,
            quiz_settings=self.queue.quiz_settings,
        )

        job_log = logger.bind(job_id=job.job_id, queue=job.queue_name.value)
        job_log.info(
            "Processing job",
            job_type=job.job_type,
            attempt=job.attempt_count + 1,
            max_attempts=job.max_attempts,
        )

        try:
            result = await handler(ctx, job)
        except LeaseLostError:
            job_log.warning("Lease lost during execution, abandoning job")
            return "lease_lost"
        except NotFoundError as e:
            # The target was deleted; retrying cannot help
            return await self._record_failure(job, e, final=True)
        except GenerationError as e:
            return await self._record_failure(job, e)
        except Exception as e:
            job_log.error("Unexpected handler error", error_type=type(e).__name__, error=str(e))
            return await self._record_failure(job, TransientError(str(e) or type(e).__name__))

        try:
            await self.queue.complete(job.job_id, job.lease_token, result)
        except LeaseLostError:
            job_log.warning("Lease lost before completion, result discarded")
            return "lease_lost"

        await self._after_success(job, result)
        return "completed"

    async def _record_failure(self, job: GenerationJob, error: Exception, final: bool = False) -> str:
        try:
            outcome = await self.queue.fail(job.job_id, job.lease_token, error, final=final)
        except LeaseLostError:
            return "lease_lost"

        if outcome.is_terminal:
            await self._after_terminal_failure(job, outcome.reason)
        return outcome.state.value

    # =========================================================================
    # Side effects (never fail the job)
    # =========================================================================

    async def _save_terminal_record(self, job: GenerationJob, status: str,
                                    result: Optional[Dict[str, Any]] = None,
                                    error: Optional[str] = None):
        if self.results is None:
            return
        try:
            await self.results.save_result(
                job_id=job.job_id,
                queue_name=job.queue_name.value,
                job_type=job.job_type,
                status=status,
                result=result,
                error=error,
                course_id=job.payload.get("course_id"),
                section_id=job.payload.get("section_id"),
                article_id=job.payload.get("article_id"),
            )
        except Exception as e:
            logger.error("Failed to save terminal record", job_id=job.job_id, error=str(e))

    async def _after_success(self, job: GenerationJob, result: Optional[Dict[str, Any]]):
        await self._save_terminal_record(job, "completed", result=result)

        if self.orchestrator is not None:
            try:
                await self.orchestrator.on_job_completed(job, result)
            except Exception as e:
                logger.error("Completion callback failed", job_id=job.job_id, error=str(e))

        if not (result or {}).get("skipped"):
            await queue_admin_notification(self.queue, job, "completed")

    async def _after_terminal_failure(self, job: GenerationJob, reason: Optional[str]):
        if job.queue_name not in (QueueName.EMAIL, QueueName.SITEMAP):
            try:
                await mark_unit_failed(self.courses, job, reason or "Generation failed")
            except Exception as e:
                logger.error("Failed to mark unit as errored", job_id=job.job_id, error=str(e))

        await self._save_terminal_record(job, "failed", error=reason)
        await queue_admin_notification(self.queue, job, "failed", error=reason)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def run_maintenance(self) -> Dict[str, int]:
        """Recover stalled jobs and apply retention to every queue"""
        summary = {"stalled": 0, "trimmed": 0}
        try:
            summary["stalled"] = await self.queue.recover_stalled(self.stalled_job_minutes * 60 * 1000)
            for queue_name in QueueName:
                summary["trimmed"] += await self.queue.trim_finished(queue_name)
        except Exception as e:
            logger.error("Queue maintenance failed", error=str(e))
        return summary

    def start(self):
        """Start the background worker"""
        self.scheduler.add_job(
            self.process_jobs,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="stage_worker",
            name="Process generation jobs",
            replace_existing=True,
            max_instances=1  # Prevent overlapping runs
        )
        self.scheduler.add_job(
            self.run_maintenance,
            trigger=IntervalTrigger(minutes=self.cleanup_interval_minutes),
            id="queue_maintenance",
            name="Recover stalled jobs and trim finished jobs",
            replace_existing=True,
            max_instances=1
        )

        self.scheduler.start()
        logger.info(
            "Stage worker started",
            queues=[q.value for q in self.queue_names],
            poll_interval=self.poll_interval,
            concurrency=self.concurrency,
        )

    def shutdown(self):
        """Shutdown the worker"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Stage worker stopped")

    @property
    def is_processing(self) -> bool:
        """Check if worker is currently processing jobs"""
        return self._is_processing

    @property
    def current_jobs(self) -> List[str]:
        return list(self._current_job_ids)


# Global worker instance
_worker_instance: StageWorker | None = None


def build_worker(queue: JobQueue, **kwargs) -> StageWorker:
    """Wire a worker to the production Supabase and Anthropic services"""
    from coursegen.database import CourseService, ResultService
    from coursegen.generation.orchestrator import GenerationOrchestrator
    from coursegen.generation.provider import get_provider

    courses = CourseService()
    provider = get_provider()
    return StageWorker(
        queue=queue,
        courses=courses,
        provider=provider,
        results=ResultService(),
        orchestrator=GenerationOrchestrator(queue, courses, provider=provider),
        **kwargs
    )


async def start_stage_worker(queue: JobQueue, **kwargs) -> StageWorker:
    """
    Start the in-process stage worker.
    Call this during FastAPI startup when no separate worker process runs.
    """
    global _worker_instance

    if _worker_instance is None:
        _worker_instance = build_worker(queue, **kwargs)
        _worker_instance.start()
    return _worker_instance


def stop_stage_worker():
    """
    Stop the in-process stage worker.
    Call this during FastAPI shutdown.
    """
    global _worker_instance

    if _worker_instance is not None:
        _worker_instance.shutdown()
        _worker_instance = None


def get_worker() -> StageWorker | None:
    """Get the current worker instance (for status checks)"""
    return _worker_instance
