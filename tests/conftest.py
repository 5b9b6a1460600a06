"""Shared fixtures: an in-memory job queue on a fake clock plus fake services."""

import pytest

from coursegen.jobs.queue import JobQueue
from tests.fakes import FakeClock, FakeCourseStore, FakeProvider, FakeResults


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def queue(clock):
    job_queue = JobQueue(":memory:", clock=clock)
    await job_queue.initialize()
    yield job_queue
    await job_queue.close()


@pytest.fixture
def courses():
    return FakeCourseStore()


@pytest.fixture
def results():
    return FakeResults()


@pytest.fixture
def provider():
    return FakeProvider()
