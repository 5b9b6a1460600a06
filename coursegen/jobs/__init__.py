"""
Generation job queue system.

Components:
- GenerationJobDatabase: SQLite-backed job and queue-config storage
- JobQueue: High-level queue interface (enqueue, lease, complete, fail)
- ConfigStore: Per-queue retry policy
- QuizSettingsStore: Question-count ranges for generated quizzes
- StatusReporter: Job status lookups with terminal-record fallback
- StageWorker (coursegen.jobs.worker): Background worker that runs jobs

Usage:
    # In API endpoint - queue a job
    from coursegen.jobs import get_queue
    queue = await get_queue()
    job_id = await queue.enqueue("quiz", "article_quiz", {"article_id": article_id})

    # In FastAPI startup - start an in-process worker
    from coursegen.jobs.worker import start_stage_worker, stop_stage_worker
    await start_stage_worker(queue)
"""

from coursegen.jobs.database import GenerationJobDatabase
from coursegen.jobs.models import GenerationJob, JobOptions, JobState, JobType, QueueName
from coursegen.jobs.queue import JobQueue, get_queue, set_queue, close_queue
from coursegen.jobs.queue_config import ConfigStore, QueueConfig, DEFAULT_QUEUE_CONFIGS
from coursegen.jobs.quiz_settings import QuizSettings, QuizSettingsStore
from coursegen.jobs.status import StatusReporter

__all__ = [
    # Database
    "GenerationJobDatabase",

    # Models
    "GenerationJob",
    "JobOptions",
    "JobState",
    "JobType",
    "QueueName",

    # Queue
    "JobQueue",
    "get_queue",
    "set_queue",
    "close_queue",

    # Config
    "ConfigStore",
    "QueueConfig",
    "DEFAULT_QUEUE_CONFIGS",
    "QuizSettings",
    "QuizSettingsStore",

    # Status
    "StatusReporter",
]
