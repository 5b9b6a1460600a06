"""
Runtime-editable retry/backoff configuration, one row per queue.

Rows are created lazily with per-queue defaults on first read. Creation uses
INSERT OR IGNORE so simultaneous first reads (in this process or another
worker sharing the database file) still leave exactly one row.
"""

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from coursegen.errors import ValidationError
from coursegen.jobs.database import GenerationJobDatabase, QUEUE_CONFIG_FIELDS
from coursegen.jobs.models import QueueName, parse_queue_name
from coursegen.utils.logging import config_logger as logger


# Defaults per queue: attempts, backoff_delay_ms, rate_limit_retry_seconds, max_backoff_minutes
DEFAULT_QUEUE_CONFIGS: Dict[QueueName, Dict[str, int]] = {
    QueueName.COURSE_STRUCTURE: {
        "attempts": 5,
        "backoff_delay_ms": 10000,
        "rate_limit_retry_seconds": 60,
        "max_backoff_minutes": 5,
    },
    QueueName.QUIZ: {
        "attempts": 5,
        "backoff_delay_ms": 10000,
        "rate_limit_retry_seconds": 60,
        "max_backoff_minutes": 5,
    },
    QueueName.EMAIL: {
        "attempts": 3,
        "backoff_delay_ms": 2000,
        "rate_limit_retry_seconds": 60,
        "max_backoff_minutes": 5,
    },
    QueueName.SITEMAP: {
        "attempts": 2,
        "backoff_delay_ms": 5000,
        "rate_limit_retry_seconds": 60,
        "max_backoff_minutes": 5,
    },
}


@dataclass
class QueueConfig:
    """Retry parameters for one queue."""
    queue_name: QueueName
    attempts: int
    backoff_delay_ms: int
    rate_limit_retry_seconds: int
    max_backoff_minutes: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def max_backoff_ms(self) -> int:
        return self.max_backoff_minutes * 60 * 1000

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QueueConfig":
        return cls(
            queue_name=QueueName(row["queue_name"]),
            attempts=row["attempts"],
            backoff_delay_ms=row["backoff_delay_ms"],
            rate_limit_retry_seconds=row["rate_limit_retry_seconds"],
            max_backoff_minutes=row["max_backoff_minutes"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["queue_name"] = self.queue_name.value
        return data


def validate_config_fields(fields: Dict[str, Any]) -> Dict[str, int]:
    """
    Check an update payload before anything is written.

    Every field must be a known field name holding a positive integer.
    Raises ValidationError naming the first offending field.
    """
    if not fields:
        raise ValidationError(None, "No configuration fields provided")

    validated: Dict[str, int] = {}
    for name, value in fields.items():
        if name not in QUEUE_CONFIG_FIELDS:
            raise ValidationError(name, f"Unknown configuration field: {name}")
        # bool is an int subclass; "true" is not a retry count
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(name, f"{name} must be a positive integer")
        if value <= 0:
            raise ValidationError(name, f"{name} must be a positive integer")
        validated[name] = value
    return validated


class ConfigStore:
    """
    Read and update per-queue retry configuration.

    Usage:
        store = ConfigStore(db)
        cfg = await store.get("quiz")
        cfg = await store.update("quiz", {"attempts": 3})
    """

    def __init__(self, db: GenerationJobDatabase):
        self.db = db
        self._lock = asyncio.Lock()

    async def get(self, queue_name) -> QueueConfig:
        """Return the stored config, creating the default row if absent."""
        queue = parse_queue_name(queue_name)

        row = await self.db.get_queue_config(queue.value)
        if row:
            return QueueConfig.from_row(row)

        async with self._lock:
            now_iso = datetime.now(timezone.utc).isoformat()
            created = await self.db.insert_queue_config_if_absent(
                queue.value, DEFAULT_QUEUE_CONFIGS[queue], now_iso
            )
            if created:
                logger.info("Created default queue config", queue=queue.value,
                            **DEFAULT_QUEUE_CONFIGS[queue])
            row = await self.db.get_queue_config(queue.value)

        return QueueConfig.from_row(row)

    async def update(self, queue_name, fields: Dict[str, Any]) -> QueueConfig:
        """Validate then apply a partial update. Returns the resulting config."""
        queue = parse_queue_name(queue_name)
        validated = validate_config_fields(fields)

        # Guarantees the row exists so the UPDATE below always lands
        await self.get(queue)

        async with self._lock:
            now_iso = datetime.now(timezone.utc).isoformat()
            await self.db.update_queue_config(queue.value, validated, now_iso)
            row = await self.db.get_queue_config(queue.value)

        logger.info("Queue config updated", queue=queue.value, **validated)
        return QueueConfig.from_row(row)

    async def list_all(self) -> List[QueueConfig]:
        """Configs for every queue, creating defaults as needed."""
        return [await self.get(queue) for queue in QueueName]
