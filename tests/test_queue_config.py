"""Per-queue retry configuration: lazy defaults, validation and updates."""

import asyncio

import pytest

from coursegen.errors import InvalidQueueError, ValidationError
from coursegen.jobs.models import QueueName
from coursegen.jobs.queue_config import DEFAULT_QUEUE_CONFIGS, validate_config_fields

pytestmark = pytest.mark.anyio


async def test_first_read_creates_defaults(queue):
    assert await queue.db.count_queue_config_rows("quiz") == 0

    cfg = await queue.configs.get("quiz")
    assert cfg.attempts == 5
    assert cfg.backoff_delay_ms == 10000
    assert cfg.rate_limit_retry_seconds == 60
    assert cfg.max_backoff_minutes == 5
    assert cfg.max_backoff_ms == 300000
    assert await queue.db.count_queue_config_rows("quiz") == 1


async def test_concurrent_first_reads_create_one_row(queue):
    configs = await asyncio.gather(*(queue.configs.get("email") for _ in range(10)))
    assert {cfg.attempts for cfg in configs} == {DEFAULT_QUEUE_CONFIGS[QueueName.EMAIL]["attempts"]}
    assert await queue.db.count_queue_config_rows("email") == 1


async def test_list_all_covers_every_queue(queue):
    configs = await queue.configs.list_all()
    assert [cfg.queue_name for cfg in configs] == list(QueueName)
    assert configs[-1].to_dict()["queue_name"] == "sitemap"


async def test_partial_update_keeps_other_fields(queue):
    cfg = await queue.configs.update("course-structure", {"attempts": 3})
    assert cfg.attempts == 3
    assert cfg.backoff_delay_ms == 10000

    cfg = await queue.configs.update("course-structure", {"backoff_delay_ms": 2000, "max_backoff_minutes": 2})
    assert (cfg.attempts, cfg.backoff_delay_ms, cfg.max_backoff_minutes) == (3, 2000, 2)
    assert await queue.db.count_queue_config_rows("course-structure") == 1


async def test_update_applies_to_new_jobs_only(queue):
    before = await queue.enqueue("quiz", "article_quiz", {})
    await queue.configs.update("quiz", {"attempts": 2})
    after = await queue.enqueue("quiz", "article_quiz", {})

    assert (await queue.get_job(before)).max_attempts == 5
    assert (await queue.get_job(after)).max_attempts == 2


@pytest.mark.parametrize("fields, field", [
    ({"attempts": 0}, "attempts"),
    ({"backoff_delay_ms": -5}, "backoff_delay_ms"),
    ({"attempts": "3"}, "attempts"),
    ({"attempts": True}, "attempts"),
    ({"attempts": 2.5}, "attempts"),
    ({"timeout": 10}, "timeout"),
])
async def test_invalid_update_is_rejected_without_writing(queue, fields, field):
    await queue.configs.get("quiz")
    with pytest.raises(ValidationError) as exc_info:
        await queue.configs.update("quiz", fields)
    assert exc_info.value.field == field
    assert (await queue.configs.get("quiz")).attempts == 5


async def test_empty_update_is_rejected(queue):
    with pytest.raises(ValidationError):
        await queue.configs.update("quiz", {})


async def test_unknown_queue_is_rejected(queue):
    with pytest.raises(InvalidQueueError):
        await queue.configs.get("course-generation")


def test_validate_config_fields_returns_validated_values():
    assert validate_config_fields({"rate_limit_retry_seconds": 30}) == {"rate_limit_retry_seconds": 30}
