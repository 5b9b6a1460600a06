"""Job queue lifecycle: enqueue, lease, retry scheduling and administration."""

import asyncio

import pytest

from coursegen.errors import (
    InvalidQueueError,
    LeaseLostError,
    NotFoundError,
    PermanentError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from coursegen.jobs.models import JobOptions, JobState, QueueName

pytestmark = pytest.mark.anyio


async def test_enqueue_lease_complete(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {"article_id": "a1"})
    assert job_id.startswith("article_quiz_")
    assert await queue.get_state(job_id) == JobState.WAITING

    job = await queue.lease("quiz")
    assert job.job_id == job_id
    assert job.state == JobState.ACTIVE
    assert job.lease_token
    assert job.payload == {"article_id": "a1"}

    await queue.complete(job.job_id, job.lease_token, {"quiz_id": "q1"})
    done = await queue.get_job(job_id)
    assert done.state == JobState.COMPLETED
    assert done.result == {"quiz_id": "q1"}
    assert await queue.lease("quiz") is None


async def test_enqueue_rejects_unknown_queue(queue):
    with pytest.raises(InvalidQueueError):
        await queue.enqueue("course-generation", "outline", {})


async def test_enqueue_stamps_queue_config(queue):
    job_id = await queue.enqueue(QueueName.EMAIL, "send_email", {"to": "a@example.com"})
    job = await queue.get_job(job_id)
    assert job.max_attempts == 3
    assert job.backoff_base_ms == 2000


async def test_backoff_doubles_until_attempts_exhausted(queue, clock):
    job_id = await queue.enqueue(
        "course-structure", "outline", {"course_id": "c1"},
        JobOptions(max_attempts=4, backoff_base_ms=2000),
    )

    for expected_delay in (2000, 4000, 8000):
        job = await queue.lease("course-structure")
        assert job.job_id == job_id
        outcome = await queue.fail(job.job_id, job.lease_token, TransientError("timeout"))
        assert outcome.state == JobState.DELAYED
        assert outcome.delay_ms == expected_delay

        # Not eligible until the delay has elapsed
        clock.advance(expected_delay - 1)
        assert await queue.lease("course-structure") is None
        clock.advance(1)

    job = await queue.lease("course-structure")
    outcome = await queue.fail(job.job_id, job.lease_token, TransientError("timeout"))
    assert outcome.state == JobState.FAILED
    assert outcome.attempt_count == 4

    failed = await queue.get_job(job_id)
    assert failed.state == JobState.FAILED
    assert failed.error_message == "timeout"


async def test_backoff_is_capped(queue, clock):
    await queue.configs.update("quiz", {"max_backoff_minutes": 1})
    await queue.enqueue("quiz", "final_exam", {}, JobOptions(max_attempts=10, backoff_base_ms=40000))

    delays = []
    for _ in range(3):
        job = await queue.lease("quiz")
        outcome = await queue.fail(job.job_id, job.lease_token, TransientError("boom"))
        delays.append(outcome.delay_ms)
        clock.advance(outcome.delay_ms)

    assert delays == [40000, 60000, 60000]


async def test_rate_limit_uses_flat_cooldown(queue, clock):
    await queue.enqueue("quiz", "section_quiz", {}, JobOptions(max_attempts=5, backoff_base_ms=10000))

    for attempt in (1, 2, 3):
        job = await queue.lease("quiz")
        outcome = await queue.fail(job.job_id, job.lease_token, RateLimitedError(retry_after=5))
        assert outcome.state == JobState.DELAYED
        assert outcome.delay_ms == 60000
        assert outcome.attempt_count == attempt
        clock.advance(60000)


async def test_single_attempt_fails_without_retry(queue):
    await queue.configs.update("sitemap", {"attempts": 1})
    job_id = await queue.enqueue("sitemap", "rebuild_sitemap", {})

    job = await queue.lease("sitemap")
    outcome = await queue.fail(job.job_id, job.lease_token, TransientError("disk full"))
    assert outcome.is_terminal
    assert await queue.get_state(job_id) == JobState.FAILED


async def test_short_circuit_permanent_error_fails_immediately(queue):
    job_id = await queue.enqueue("email", "send_email", {})
    job = await queue.lease("email")
    outcome = await queue.fail(job.job_id, job.lease_token, PermanentError("no recipient", short_circuit=True))
    assert outcome.state == JobState.FAILED
    assert outcome.attempt_count == 1
    assert await queue.get_state(job_id) == JobState.FAILED


async def test_plain_permanent_error_uses_retry_budget(queue):
    await queue.enqueue("quiz", "article_quiz", {})
    job = await queue.lease("quiz")
    outcome = await queue.fail(job.job_id, job.lease_token, PermanentError("bad JSON"))
    assert outcome.state == JobState.DELAYED


async def test_lease_is_exclusive(queue):
    await queue.enqueue("quiz", "article_quiz", {"article_id": "a1"})
    leased = await asyncio.gather(*(queue.lease("quiz") for _ in range(5)))
    assert len([job for job in leased if job is not None]) == 1


async def test_lease_refetches_when_other_workers_win_every_candidate(queue, monkeypatch):
    job_ids = [await queue.enqueue("quiz", "article_quiz", {"n": n}) for n in range(7)]
    real_claim = queue.db.claim
    stolen = []

    async def claim(job_id, lease_token, now_ms):
        # Another process claims each of the first five candidates first
        if len(stolen) < 5:
            stolen.append(job_id)
            await real_claim(job_id, "other-worker", now_ms)
        return await real_claim(job_id, lease_token, now_ms)

    monkeypatch.setattr(queue.db, "claim", claim)
    job = await queue.lease("quiz")
    assert stolen == job_ids[:5]
    assert job.job_id == job_ids[5]


async def test_lease_prefers_priority_then_age(queue, clock):
    first = await queue.enqueue("quiz", "article_quiz", {"n": 1})
    clock.advance(10)
    second = await queue.enqueue("quiz", "article_quiz", {"n": 2})
    urgent = await queue.enqueue("quiz", "article_quiz", {"n": 3}, JobOptions(priority=5))

    order = []
    for _ in range(3):
        job = await queue.lease("quiz")
        order.append(job.job_id)
    assert order == [urgent, first, second]


async def test_delayed_job_becomes_eligible(queue, clock):
    job_id = await queue.enqueue("sitemap", "rebuild_sitemap", {}, JobOptions(delay_ms=30000))
    assert await queue.get_state(job_id) == JobState.DELAYED
    assert await queue.lease("sitemap") is None

    clock.advance(30000)
    job = await queue.lease("sitemap")
    assert job.job_id == job_id


async def test_lease_does_not_cross_queues(queue):
    await queue.enqueue("quiz", "article_quiz", {})
    assert await queue.lease("email") is None


async def test_purge_revokes_active_lease(queue):
    await queue.enqueue("quiz", "article_quiz", {})
    job = await queue.lease("quiz")
    assert await queue.verify_lease(job.job_id, job.lease_token)

    removed = await queue.purge_by_state("quiz", "active")
    assert removed == 1
    assert not await queue.verify_lease(job.job_id, job.lease_token)

    with pytest.raises(LeaseLostError):
        await queue.update_progress(job.job_id, job.lease_token, 50)
    with pytest.raises(LeaseLostError):
        await queue.complete(job.job_id, job.lease_token, {})
    with pytest.raises(LeaseLostError):
        await queue.fail(job.job_id, job.lease_token, TransientError("late"))


async def test_purge_by_state(queue):
    await queue.enqueue("quiz", "article_quiz", {})
    await queue.enqueue("quiz", "article_quiz", {})
    await queue.enqueue("quiz", "article_quiz", {}, JobOptions(delay_ms=1000))
    await queue.enqueue("email", "send_email", {})

    assert await queue.purge_by_state("quiz", "waiting") == 2
    counts = await queue.counts("quiz")
    assert counts["waiting"] == 0
    assert counts["delayed"] == 1

    assert await queue.purge_by_state("quiz") == 1
    assert (await queue.counts("email"))["waiting"] == 1


async def test_purge_rejects_unknown_state(queue):
    with pytest.raises(ValidationError) as exc_info:
        await queue.purge_by_state("quiz", "paused")
    assert exc_info.value.field == "status"


async def test_stalled_job_recovered_and_old_lease_rejected(queue, clock):
    job_id = await queue.enqueue("course-structure", "article_content", {"article_id": "a1"})
    job = await queue.lease("course-structure")

    clock.advance(16 * 60 * 1000)
    assert await queue.recover_stalled(15 * 60 * 1000) == 1

    recovered = await queue.get_job(job_id)
    assert recovered.state == JobState.WAITING
    assert recovered.attempt_count == 1
    assert recovered.error_message == "stalled"

    releasing = await queue.lease("course-structure")
    assert releasing.lease_token != job.lease_token
    with pytest.raises(LeaseLostError):
        await queue.complete(job.job_id, job.lease_token, {})
    await queue.complete(releasing.job_id, releasing.lease_token, {"ok": True})


async def test_stalled_job_fails_when_attempts_exhausted(queue, clock):
    job_id = await queue.enqueue("quiz", "article_quiz", {}, JobOptions(max_attempts=1))
    await queue.lease("quiz")
    clock.advance(60000)

    assert await queue.recover_stalled(1000) == 1
    failed = await queue.get_job(job_id)
    assert failed.state == JobState.FAILED
    assert failed.error_message == "stalled"


async def test_progress_is_clamped(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {})
    job = await queue.lease("quiz")
    await queue.update_progress(job.job_id, job.lease_token, 150)
    assert (await queue.get_job(job_id)).progress == 100


async def test_retry_failed_job(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {})
    job = await queue.lease("quiz")
    await queue.fail(job.job_id, job.lease_token, TransientError("x"), final=True)

    await queue.retry_job(job_id)
    assert await queue.get_state(job_id) == JobState.WAITING
    assert (await queue.lease("quiz")).job_id == job_id


async def test_retry_rejects_exhausted_job(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {}, JobOptions(max_attempts=1))
    job = await queue.lease("quiz")
    await queue.fail(job.job_id, job.lease_token, TransientError("x"))

    with pytest.raises(ValidationError) as exc_info:
        await queue.retry_job(job_id)
    assert exc_info.value.message == "Job has exhausted all retry attempts"


async def test_retry_rejects_job_that_is_not_failed(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {})
    with pytest.raises(ValidationError):
        await queue.retry_job(job_id)
    with pytest.raises(NotFoundError):
        await queue.retry_job("missing")


async def test_promote_delayed_job(queue):
    job_id = await queue.enqueue("sitemap", "rebuild_sitemap", {}, JobOptions(delay_ms=30000))
    await queue.promote_job(job_id)
    assert (await queue.lease("sitemap")).job_id == job_id


async def test_promote_rejects_waiting_job(queue):
    job_id = await queue.enqueue("sitemap", "rebuild_sitemap", {})
    with pytest.raises(ValidationError) as exc_info:
        await queue.promote_job(job_id)
    assert exc_info.value.message == "Job is not delayed"


async def test_remove_job(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {})
    await queue.remove_job(job_id)
    assert await queue.get_job(job_id) is None
    with pytest.raises(NotFoundError):
        await queue.remove_job(job_id)


async def test_find_live_by_dedupe_key(queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {}, JobOptions(dedupe_key="article_quiz:a1"))
    live = await queue.find_live("quiz", "article_quiz:a1")
    assert live.job_id == job_id

    job = await queue.lease("quiz")
    await queue.complete(job.job_id, job.lease_token, {})
    assert await queue.find_live("quiz", "article_quiz:a1") is None


async def test_enqueue_with_live_dedupe_key_returns_existing_job(queue):
    opts = JobOptions(dedupe_key="article_quiz:a1")
    (first, first_created), (second, second_created) = await asyncio.gather(
        queue.enqueue_unique("quiz", "article_quiz", {}, opts),
        queue.enqueue_unique("quiz", "article_quiz", {}, opts),
    )
    assert first == second
    assert sorted([first_created, second_created]) == [False, True]
    assert (await queue.counts("quiz"))["waiting"] == 1

    # Same key on another queue is independent
    other = await queue.enqueue("email", "send_email", {}, opts)
    assert other != first

    job = await queue.lease("quiz")
    await queue.complete(job.job_id, job.lease_token, {})
    third, created = await queue.enqueue_unique("quiz", "article_quiz", {}, opts)
    assert created
    assert third != first


async def test_trim_finished_applies_retention(queue, clock):
    for _ in range(55):
        await queue.enqueue("quiz", "article_quiz", {})
    for _ in range(55):
        job = await queue.lease("quiz")
        await queue.complete(job.job_id, job.lease_token, {})
        clock.advance(1)

    assert await queue.trim_finished("quiz") == 5
    assert (await queue.counts("quiz"))["completed"] == 50

    clock.advance(8 * 24 * 3600 * 1000)
    assert await queue.trim_finished("quiz") == 50
    assert (await queue.counts("quiz"))["completed"] == 0


async def test_list_by_state_newest_first(queue, clock):
    first = await queue.enqueue("quiz", "article_quiz", {})
    clock.advance(5)
    second = await queue.enqueue("quiz", "section_quiz", {})

    jobs = await queue.list_by_state("quiz")
    assert [j.job_id for j in jobs] == [second, first]
    assert await queue.list_by_state("quiz", "failed") == []
