"""
Generation job queue manager.
Provides the high-level interface for creating, leasing and finishing
generation jobs across the named queues.

State machine per job:

    waiting -> active -> completed
                      -> delayed -> active (retry)
                      -> failed   (attempts exhausted)

Only the lease/state-transition critical section is serialized; handlers
run outside the lock.
"""

import asyncio
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from coursegen.errors import (
    GenerationError,
    LeaseLostError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from coursegen.jobs.backoff import compute_retry_delay_ms, should_short_circuit
from coursegen.jobs.database import GenerationJobDatabase
from coursegen.jobs.models import (
    QUEUE_RETENTION,
    FailOutcome,
    GenerationJob,
    JobOptions,
    JobState,
    QueueName,
    TERMINAL_STATES,
    parse_job_state,
    parse_queue_name,
)
from coursegen.jobs.queue_config import ConfigStore
from coursegen.jobs.quiz_settings import QuizSettingsStore
from coursegen.utils.logging import job_logger as logger


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """
    High-level interface for the generation job queue.

    Usage:
        queue = JobQueue("generation_jobs.db")
        await queue.initialize()

        # Queue a job
        job_id = await queue.enqueue("quiz", "article_quiz", {"article_id": "a1"})

        # Worker side
        job = await queue.lease("quiz")
        await queue.complete(job.job_id, job.lease_token, {"quiz_id": "q1"})
    """

    def __init__(
        self,
        db_path: str = "generation_jobs.db",
        clock: Optional[Callable[[], int]] = None
    ):
        self.db = GenerationJobDatabase(db_path)
        self.configs = ConfigStore(self.db)
        self.quiz_settings = QuizSettingsStore(self.db)
        self._clock = clock or _now_ms
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Initialize the database connection"""
        if not self._initialized:
            await self.db.connect()
            self._initialized = True

    def now(self) -> int:
        return self._clock()

    # =========================================================================
    # Enqueue / Lease / Complete / Fail
    # =========================================================================

    async def enqueue(
        self,
        queue_name: Union[str, QueueName],
        job_type: str,
        payload: Dict[str, Any],
        opts: Optional[JobOptions] = None
    ) -> str:
        """
        Queue a new job.

        Args:
            queue_name: One of the known queue names
            job_type: Handler discriminator within the queue
            payload: Data sufficient to re-derive the job's context
            opts: Delay, priority, retry overrides and correlation key

        Returns:
            job_id: Unique identifier for tracking the job. When opts carries
            a dedupe_key already held by a live job, that job's id.

        Raises:
            InvalidQueueError: queue_name is not a known queue
            ValidationError: options are out of range
        """
        job_id, _ = await self.enqueue_unique(queue_name, job_type, payload, opts)
        return job_id

    async def enqueue_unique(
        self,
        queue_name: Union[str, QueueName],
        job_type: str,
        payload: Dict[str, Any],
        opts: Optional[JobOptions] = None
    ) -> Tuple[str, bool]:
        """
        Queue a job unless a live job already holds its dedupe_key.

        The check and the insert are one statement, so overlapping callers
        (or worker processes sharing the file) never both create a job for
        the same key.

        Returns:
            (job_id, created): created is False when an existing live job
            was found, and job_id is then that job's id
        """
        queue = parse_queue_name(queue_name)
        opts = opts or JobOptions()

        if opts.delay_ms < 0:
            raise ValidationError("delay_ms", "delay_ms must not be negative")
        if opts.max_attempts is not None and opts.max_attempts < 1:
            raise ValidationError("max_attempts", "max_attempts must be at least 1")
        if opts.backoff_base_ms is not None and opts.backoff_base_ms < 1:
            raise ValidationError("backoff_base_ms", "backoff_base_ms must be a positive integer")

        if not self._initialized:
            await self.initialize()

        cfg = await self.configs.get(queue)
        now = self.now()
        job_type = job_type.value if hasattr(job_type, "value") else job_type

        job = GenerationJob(
            job_id=f"{job_type}_{uuid.uuid4().hex[:12]}",
            queue_name=queue,
            job_type=job_type,
            payload=payload,
            state=JobState.DELAYED if opts.delay_ms > 0 else JobState.WAITING,
            attempt_count=0,
            max_attempts=opts.max_attempts or cfg.attempts,
            backoff_base_ms=opts.backoff_base_ms or cfg.backoff_delay_ms,
            priority=opts.priority,
            dedupe_key=opts.dedupe_key,
            available_at=now + opts.delay_ms,
            created_at=now,
        )

        async with self._lock:
            while not await self.db.insert_job(job):
                existing = await self.db.find_live_by_dedupe_key(queue.value, opts.dedupe_key)
                # None: the holder finished between the two statements, try again
                if existing:
                    logger.debug(
                        "Job already in flight",
                        job_id=existing.job_id,
                        queue=queue.value,
                        dedupe_key=opts.dedupe_key,
                    )
                    return existing.job_id, False

        logger.info(
            "Job enqueued",
            job_id=job.job_id,
            queue=queue.value,
            job_type=job_type,
            delay_ms=opts.delay_ms,
            max_attempts=job.max_attempts,
        )
        return job.job_id, True

    async def lease(self, queue_name: Union[str, QueueName]) -> Optional[GenerationJob]:
        """
        Atomically move the best eligible job to active under a fresh lease.

        Eligible means waiting, or delayed with its retry time passed.
        Higher priority first, then oldest eligible timestamp.
        Returns None when nothing is eligible.
        """
        queue = parse_queue_name(queue_name)
        if not self._initialized:
            await self.initialize()

        async with self._lock:
            now = self.now()
            job = None
            while job is None:
                candidates = await self.db.get_lease_candidates(queue.value, now)
                if not candidates:
                    return None
                for candidate in candidates:
                    token = uuid.uuid4().hex
                    # Lost races (another process claimed it) fall through to the next
                    if await self.db.claim(candidate.job_id, token, now):
                        job = await self.db.get_job(candidate.job_id)
                        break

        logger.info(
            "Job leased",
            job_id=job.job_id,
            queue=queue.value,
            job_type=job.job_type,
            attempt=job.attempt_count + 1,
        )
        return job

    async def complete(
        self,
        job_id: str,
        lease_token: str,
        result: Optional[Dict[str, Any]] = None
    ):
        """
        Mark a leased job completed and store its result.

        Raises:
            LeaseLostError: the job was purged, recovered or re-leased
        """
        async with self._lock:
            ok = await self.db.mark_completed(job_id, lease_token, result, self.now())
        if not ok:
            logger.warning("Complete rejected, lease lost", job_id=job_id)
            raise LeaseLostError(job_id)

        logger.info("Job completed", job_id=job_id)

    async def fail(
        self,
        job_id: str,
        lease_token: str,
        error: Union[GenerationError, str],
        final: bool = False
    ) -> FailOutcome:
        """
        Record a failed attempt.

        Reschedules into delayed while attempts remain; otherwise the job
        becomes failed with the reason recorded. `final` (or a short-circuit
        PermanentError) fails it immediately.

        Raises:
            LeaseLostError: the job was purged, recovered or re-leased
        """
        reason = str(error) or error.__class__.__name__
        generation_error = error if isinstance(error, GenerationError) else None

        async with self._lock:
            job = await self.db.get_job(job_id)
            if not job or job.state != JobState.ACTIVE or job.lease_token != lease_token:
                logger.warning("Fail rejected, lease lost", job_id=job_id)
                raise LeaseLostError(job_id)

            attempt_count = job.attempt_count + 1
            now = self.now()

            if final or should_short_circuit(generation_error) or attempt_count >= job.max_attempts:
                ok = await self.db.mark_failed(job_id, lease_token, attempt_count, reason, now)
                if not ok:
                    raise LeaseLostError(job_id)
                outcome = FailOutcome(
                    job_id=job_id,
                    state=JobState.FAILED,
                    attempt_count=attempt_count,
                    max_attempts=job.max_attempts,
                    reason=reason,
                )
            else:
                cfg = await self.configs.get(job.queue_name)
                delay_ms = compute_retry_delay_ms(
                    generation_error,
                    job.backoff_base_ms,
                    attempt_count,
                    cfg.rate_limit_retry_seconds,
                    cfg.max_backoff_minutes,
                )
                ok = await self.db.reschedule(
                    job_id, lease_token, attempt_count, now + delay_ms, delay_ms, reason
                )
                if not ok:
                    raise LeaseLostError(job_id)
                outcome = FailOutcome(
                    job_id=job_id,
                    state=JobState.DELAYED,
                    attempt_count=attempt_count,
                    max_attempts=job.max_attempts,
                    delay_ms=delay_ms,
                    reason=reason,
                )

        if outcome.is_terminal:
            logger.error(
                "Job failed",
                job_id=job_id,
                queue=job.queue_name.value,
                attempt=attempt_count,
                max_attempts=job.max_attempts,
                reason=reason,
            )
        else:
            extra = {}
            if isinstance(generation_error, RateLimitedError) and generation_error.retry_after:
                extra["retry_after"] = generation_error.retry_after
            logger.warning(
                "Job retry scheduled",
                job_id=job_id,
                queue=job.queue_name.value,
                attempt=attempt_count,
                max_attempts=job.max_attempts,
                delay_ms=outcome.delay_ms,
                reason=reason,
                **extra,
            )
        return outcome

    async def update_progress(self, job_id: str, lease_token: str, progress: int):
        """Record 0-100 progress for a leased job"""
        progress = max(0, min(100, int(progress)))
        ok = await self.db.update_progress(job_id, lease_token, progress)
        if not ok:
            raise LeaseLostError(job_id)

    async def verify_lease(self, job_id: str, lease_token: str) -> bool:
        """True iff the job is still active under this lease"""
        return await self.db.lease_is_current(job_id, lease_token)

    # =========================================================================
    # Introspection
    # =========================================================================

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        if not self._initialized:
            await self.initialize()
        return await self.db.get_job(job_id)

    async def get_state(self, job_id: str) -> Optional[JobState]:
        """Current state, or None if the job is not in the queue"""
        job = await self.get_job(job_id)
        return job.state if job else None

    async def find_live(self, queue_name: Union[str, QueueName], dedupe_key: str) -> Optional[GenerationJob]:
        """A waiting/active/delayed job carrying this correlation key"""
        queue = parse_queue_name(queue_name)
        if not self._initialized:
            await self.initialize()
        return await self.db.find_live_by_dedupe_key(queue.value, dedupe_key)

    async def list_by_state(
        self,
        queue_name: Union[str, QueueName],
        state: Union[str, JobState] = "all",
        limit: Optional[int] = None
    ) -> List[GenerationJob]:
        """Jobs in a state ("all" for every state), newest first"""
        queue = parse_queue_name(queue_name)
        states = list(JobState) if state == "all" else [parse_job_state(state)]
        if not self._initialized:
            await self.initialize()
        return await self.db.list_jobs(queue.value, states, limit)

    async def counts(self, queue_name: Union[str, QueueName]) -> Dict[str, int]:
        queue = parse_queue_name(queue_name)
        if not self._initialized:
            await self.initialize()
        return await self.db.count_by_state(queue.value)

    # =========================================================================
    # Administration
    # =========================================================================

    async def purge_by_state(
        self,
        queue_name: Union[str, QueueName],
        state: Union[str, JobState] = "all"
    ) -> int:
        """
        Delete every job of a queue in a state ("all" for every state).

        Purging active jobs is allowed; their workers lose the lease and
        abandon their writes.
        """
        queue = parse_queue_name(queue_name)
        states = list(JobState) if state == "all" else [parse_job_state(state)]
        if not self._initialized:
            await self.initialize()

        async with self._lock:
            count = await self.db.delete_by_states(queue.value, states)

        logger.info(
            "Queue purged",
            queue=queue.value,
            state=state.value if isinstance(state, JobState) else state,
            count=count,
        )
        return count

    async def remove_job(self, job_id: str):
        """Delete a single job in any state"""
        if not self._initialized:
            await self.initialize()
        async with self._lock:
            removed = await self.db.delete_job(job_id)
        if not removed:
            raise NotFoundError("job", job_id)
        logger.info("Job removed", job_id=job_id)

    async def retry_job(self, job_id: str):
        """Return a failed job with attempts left to waiting"""
        if not self._initialized:
            await self.initialize()
        async with self._lock:
            job = await self.db.get_job(job_id)
            if not job:
                raise NotFoundError("job", job_id)
            if job.state != JobState.FAILED:
                raise ValidationError("action", f"Job {job_id} is not failed")
            if job.attempt_count >= job.max_attempts:
                raise ValidationError("action", "Job has exhausted all retry attempts")
            await self.db.requeue(job_id, JobState.FAILED, self.now())

        logger.info("Job retried", job_id=job_id, queue=job.queue_name.value)

    async def promote_job(self, job_id: str):
        """Make a delayed job eligible immediately"""
        if not self._initialized:
            await self.initialize()
        async with self._lock:
            job = await self.db.get_job(job_id)
            if not job:
                raise NotFoundError("job", job_id)
            if job.state != JobState.DELAYED:
                raise ValidationError("action", "Job is not delayed")
            await self.db.requeue(job_id, JobState.DELAYED, self.now())

        logger.info("Job promoted", job_id=job_id, queue=job.queue_name.value)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def recover_stalled(self, stalled_after_ms: int) -> int:
        """
        Handle active jobs whose worker disappeared.

        A stall counts as an attempt: the job goes back to waiting while
        attempts remain, otherwise it fails with reason "stalled".
        Returns the number of jobs recovered or failed.
        """
        if not self._initialized:
            await self.initialize()

        recovered = 0
        async with self._lock:
            now = self.now()
            for job in await self.db.get_stalled_jobs(now - stalled_after_ms):
                attempt_count = job.attempt_count + 1
                if attempt_count >= job.max_attempts:
                    ok = await self.db.mark_failed(job.job_id, job.lease_token, attempt_count, "stalled", now)
                    new_state = JobState.FAILED
                else:
                    ok = await self.db.requeue(
                        job.job_id, JobState.ACTIVE, now,
                        attempt_count=attempt_count, error_message="stalled"
                    )
                    new_state = JobState.WAITING
                if ok:
                    recovered += 1
                    logger.warning(
                        "Stalled job recovered",
                        job_id=job.job_id,
                        queue=job.queue_name.value,
                        attempt=attempt_count,
                        state=new_state.value,
                    )
        return recovered

    async def trim_finished(self, queue_name: Union[str, QueueName]) -> int:
        """Apply the queue's retention policy to completed and failed jobs"""
        queue = parse_queue_name(queue_name)
        policy = QUEUE_RETENTION[queue]
        if not self._initialized:
            await self.initialize()

        limits = {
            JobState.COMPLETED: (policy.completed_age_seconds, policy.completed_count),
            JobState.FAILED: (policy.failed_age_seconds, policy.failed_count),
        }

        removed = 0
        async with self._lock:
            now = self.now()
            for state in TERMINAL_STATES:
                age_seconds, keep = limits[state]
                removed += await self.db.delete_finished_before(
                    queue.value, state, now - age_seconds * 1000
                )
                if keep is not None:
                    removed += await self.db.delete_finished_beyond(queue.value, state, keep)

        if removed:
            logger.info("Finished jobs trimmed", queue=queue.value, count=removed)
        return removed

    async def close(self):
        """Close the database connection"""
        if self._initialized:
            await self.db.close()
            self._initialized = False


# Global queue instance (initialized on first use)
_queue_instance: Optional[JobQueue] = None


async def get_queue(db_path: Optional[str] = None) -> JobQueue:
    """
    Get or create the global queue instance.

    This ensures we reuse the same database connection across the app.
    """
    global _queue_instance

    if _queue_instance is None:
        if db_path is None:
            from coursegen.config import config
            db_path = config.job_db_path
        _queue_instance = JobQueue(db_path)
        await _queue_instance.initialize()

    return _queue_instance


def set_queue(queue: Optional[JobQueue]):
    """Install a queue instance as the global one (app startup, tests)"""
    global _queue_instance
    _queue_instance = queue


async def close_queue():
    """Close the global queue instance"""
    global _queue_instance

    if _queue_instance is not None:
        await _queue_instance.close()
        _queue_instance = None
