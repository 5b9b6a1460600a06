"""
Job queue data model.

Queue names, job types, lifecycle states and the GenerationJob record
shared by the queue engine, the workers and the status reporter.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from coursegen.errors import InvalidQueueError, ValidationError


class QueueName(str, Enum):
    """The fixed set of named queues, one per generation domain."""
    COURSE_STRUCTURE = "course-structure"
    QUIZ = "quiz"
    EMAIL = "email"
    SITEMAP = "sitemap"


class JobState(str, Enum):
    """Lifecycle states of a queued job"""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATES = (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobType(str, Enum):
    """Discriminates the handler within a queue."""
    OUTLINE = "outline"
    ARTICLE_CONTENT = "article_content"
    ARTICLE_QUIZ = "article_quiz"
    SECTION_QUIZ = "section_quiz"
    FINAL_EXAM = "final_exam"
    SEND_EMAIL = "send_email"
    REBUILD_SITEMAP = "rebuild_sitemap"


# Which queue each job type is routed to
JOB_TYPE_QUEUES: Dict[JobType, QueueName] = {
    JobType.OUTLINE: QueueName.COURSE_STRUCTURE,
    JobType.ARTICLE_CONTENT: QueueName.COURSE_STRUCTURE,
    JobType.ARTICLE_QUIZ: QueueName.QUIZ,
    JobType.SECTION_QUIZ: QueueName.QUIZ,
    JobType.FINAL_EXAM: QueueName.QUIZ,
    JobType.SEND_EMAIL: QueueName.EMAIL,
    JobType.REBUILD_SITEMAP: QueueName.SITEMAP,
}


def parse_queue_name(name: str) -> QueueName:
    """Resolve a queue name string, raising InvalidQueueError if unknown."""
    if isinstance(name, QueueName):
        return name
    try:
        return QueueName(name)
    except ValueError:
        raise InvalidQueueError(str(name))


def parse_job_state(state: str) -> JobState:
    """Resolve a job state string, raising ValidationError if unknown."""
    if isinstance(state, JobState):
        return state
    try:
        return JobState(state)
    except ValueError:
        raise ValidationError("status", f"Invalid job status: {state}")


@dataclass
class JobOptions:
    """Per-enqueue options. None means "use the queue's configured default"."""
    delay_ms: int = 0
    priority: int = 0
    max_attempts: Optional[int] = None
    backoff_base_ms: Optional[int] = None
    dedupe_key: Optional[str] = None


@dataclass(frozen=True)
class RetentionPolicy:
    """How long finished jobs are kept before automatic trimming."""
    completed_age_seconds: int
    completed_count: Optional[int]
    failed_age_seconds: int
    failed_count: Optional[int]


HOUR = 3600
DAY = 24 * HOUR

QUEUE_RETENTION: Dict[QueueName, RetentionPolicy] = {
    QueueName.COURSE_STRUCTURE: RetentionPolicy(7 * DAY, 50, 14 * DAY, 100),
    QueueName.QUIZ: RetentionPolicy(7 * DAY, 50, 14 * DAY, 100),
    QueueName.EMAIL: RetentionPolicy(24 * HOUR, 100, 48 * HOUR, None),
    QueueName.SITEMAP: RetentionPolicy(7 * DAY, 20, 7 * DAY, 50),
}


@dataclass
class GenerationJob:
    """A unit of queued work. Timestamps are epoch milliseconds."""
    job_id: str
    queue_name: QueueName
    job_type: str
    payload: Dict[str, Any]
    state: JobState
    attempt_count: int
    max_attempts: int
    backoff_base_ms: int
    priority: int = 0
    dedupe_key: Optional[str] = None
    available_at: int = 0
    lease_token: Optional[str] = None
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: int = 0
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    last_delay_ms: Optional[int] = None

    COLUMNS = (
        "job_id", "queue_name", "job_type", "payload", "state",
        "attempt_count", "max_attempts", "backoff_base_ms", "priority",
        "dedupe_key", "available_at", "lease_token", "progress", "result",
        "error_message", "created_at", "started_at", "finished_at",
        "last_delay_ms",
    )

    @classmethod
    def from_row(cls, row) -> "GenerationJob":
        """Build a job from a generation_jobs row selected in COLUMNS order."""
        values = dict(zip(cls.COLUMNS, row))
        return cls(
            job_id=values["job_id"],
            queue_name=QueueName(values["queue_name"]),
            job_type=values["job_type"],
            payload=json.loads(values["payload"]) if values["payload"] else {},
            state=JobState(values["state"]),
            attempt_count=values["attempt_count"],
            max_attempts=values["max_attempts"],
            backoff_base_ms=values["backoff_base_ms"],
            priority=values["priority"],
            dedupe_key=values["dedupe_key"],
            available_at=values["available_at"],
            lease_token=values["lease_token"],
            progress=values["progress"] or 0,
            result=json.loads(values["result"]) if values["result"] else None,
            error_message=values["error_message"],
            created_at=values["created_at"],
            started_at=values["started_at"],
            finished_at=values["finished_at"],
            last_delay_ms=values["last_delay_ms"],
        )

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "queue": self.queue_name.value,
            "name": self.job_type,
            "data": self.payload,
            "status": self.state.value,
            "attempts_made": self.attempt_count,
            "max_attempts": self.max_attempts,
            "backoff_base_ms": self.backoff_base_ms,
            "priority": self.priority,
            "dedupe_key": self.dedupe_key,
            "timestamp": self.created_at,
            "available_at": self.available_at,
            "processed_on": self.started_at,
            "finished_on": self.finished_at,
            "delay": self.last_delay_ms,
            "progress": self.progress,
            "returnvalue": self.result,
            "failed_reason": self.error_message,
        }


@dataclass
class FailOutcome:
    """What Fail() decided for a job."""
    job_id: str
    state: JobState
    attempt_count: int
    max_attempts: int
    delay_ms: Optional[int] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state == JobState.FAILED
