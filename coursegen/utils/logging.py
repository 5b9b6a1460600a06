"""
Logging for coursegen.

Every entry goes to stdlib logging and to an in-memory ring buffer that the
admin API reads, so recent queue transitions and failures can be inspected
per job or per queue without external log aggregation.

Usage:
    logger = get_logger("stage_worker")
    logger.info("Job leased", job_id=job.job_id, queue="quiz")

    job_log = logger.bind(job_id=job.job_id, queue="quiz")
    job_log.warning("Lease lost")
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def stdlib_level(self) -> int:
        return logging.getLevelName(self.value.upper())


PROBLEM_LEVELS = (LogLevel.ERROR, LogLevel.CRITICAL)


@dataclass
class LogEntry:
    level: LogLevel
    message: str
    source: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def job_id(self) -> Optional[str]:
        return self.metadata.get("job_id")

    @property
    def queue(self) -> Optional[str]:
        return self.metadata.get("queue")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "metadata": self.metadata,
        }


class LogBuffer:
    """Bounded, thread-safe buffer of the most recent log entries."""

    def __init__(self, max_size: int = 1000):
        self._entries: deque = deque(maxlen=max_size)
        self._lock = Lock()
        # Totals survive eviction from the ring
        self._totals: Counter = Counter()

    def add(self, entry: LogEntry):
        with self._lock:
            self._entries.append(entry)
            self._totals[entry.level.value] += 1

    def query(
        self,
        limit: int = 100,
        levels: Optional[Iterable[LogLevel]] = None,
        source: Optional[str] = None,
        job_id: Optional[str] = None,
        queue: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest-first entries matching every given filter."""
        wanted = set(levels) if levels else None
        with self._lock:
            snapshot = list(self._entries)

        matches = []
        for entry in reversed(snapshot):
            if wanted and entry.level not in wanted:
                continue
            if source and entry.source != source:
                continue
            if job_id and entry.job_id != job_id:
                continue
            if queue and entry.queue != queue:
                continue
            matches.append(entry.to_dict())
            if len(matches) >= limit:
                break
        return matches

    def get_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.query(limit=limit, levels=PROBLEM_LEVELS)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            buffered = list(self._entries)
            totals = dict(self._totals)

        return {
            "buffered": len(buffered),
            "by_level": dict(Counter(e.level.value for e in buffered)),
            "by_source": dict(Counter(e.source for e in buffered)),
            "by_queue": dict(Counter(e.queue for e in buffered if e.queue)),
            "totals": totals,
        }

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._totals.clear()


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    return _log_buffer


def _format_metadata(metadata: Dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in metadata.items())


class AppLogger:
    """
    Keyword-argument logger writing to stdlib logging and the shared buffer.

    bind() returns a logger that adds fixed context (job_id, queue) to every
    entry, so a job's whole run can be pulled back out of the buffer.
    """

    def __init__(self, source: str, context: Optional[Dict[str, Any]] = None):
        self.source = source
        self.context = dict(context or {})
        self._logger = logging.getLogger(f"coursegen.{source}")

    def bind(self, **context) -> "AppLogger":
        return AppLogger(self.source, {**self.context, **context})

    def log(self, level: LogLevel, message: str, **metadata):
        merged = {**self.context, **metadata}
        _log_buffer.add(LogEntry(level, message, self.source, merged))
        if merged:
            self._logger.log(level.stdlib_level, "%s | %s", message, _format_metadata(merged))
        else:
            self._logger.log(level.stdlib_level, message)

    def debug(self, message: str, **metadata):
        self.log(LogLevel.DEBUG, message, **metadata)

    def info(self, message: str, **metadata):
        self.log(LogLevel.INFO, message, **metadata)

    def warning(self, message: str, **metadata):
        self.log(LogLevel.WARNING, message, **metadata)

    def error(self, message: str, **metadata):
        self.log(LogLevel.ERROR, message, **metadata)

    def critical(self, message: str, **metadata):
        self.log(LogLevel.CRITICAL, message, **metadata)


def get_logger(source: str) -> AppLogger:
    return AppLogger(source)


def configure_logging(level: str = "INFO"):
    """Root handler for process entrypoints (web, worker)"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


job_logger = get_logger("job_queue")
worker_logger = get_logger("stage_worker")
orchestrator_logger = get_logger("orchestrator")
config_logger = get_logger("queue_config")
email_logger = get_logger("email")
api_logger = get_logger("api")
