"""Notification rendering, Resend error mapping and admin notifications."""

import pytest
import resend

from coursegen.config import config
from coursegen.email.sender import _map_resend_error, queue_admin_notification, send_email
from coursegen.email.templates import process_template_variables, render_generation_email
from coursegen.errors import PermanentError, RateLimitedError, TransientError
from coursegen.jobs.models import GenerationJob, JobState, QueueName

pytestmark = pytest.mark.anyio


class FakeApiError(Exception):
    def __init__(self, code):
        super().__init__(f"api error {code}")
        self.code = code


def make_job(queue_name=QueueName.QUIZ, job_type="article_quiz", **payload) -> GenerationJob:
    return GenerationJob(
        job_id=f"{job_type}_1",
        queue_name=queue_name,
        job_type=job_type,
        payload=payload,
        state=JobState.COMPLETED,
        attempt_count=1,
        max_attempts=5,
        backoff_base_ms=10000,
    )


@pytest.fixture(autouse=True)
def site_url(monkeypatch):
    monkeypatch.setattr(config, "APP_BASE_URL", "https://learn.example.com/")


def test_template_variables():
    rendered = process_template_variables(
        "Hi {{ name }}, visit {{site_url}} ({{missing}})", {"name": "Ada"}
    )
    assert rendered == "Hi Ada, visit https://learn.example.com ({{missing}})"


def test_caller_data_overrides_globals():
    assert process_template_variables("{{site_url}}", {"site_url": "x"}) == "x"


def test_render_failed_generation_email():
    rendered = render_generation_email(
        job_type="section_quiz",
        status="failed",
        course_title="Python Basics",
        target_title="Data Types",
        course_id="c1",
        error="bad JSON",
    )
    assert rendered["subject"] == "Section quiz failed: Data Types"
    assert "https://learn.example.com/admin/courses/c1" in rendered["html"]
    assert "Error: bad JSON" in rendered["text"]


@pytest.mark.parametrize("code, expected", [
    (429, RateLimitedError),
    (503, TransientError),
    ("422", PermanentError),
    (None, TransientError),
])
def test_map_resend_error(code, expected):
    assert type(_map_resend_error(FakeApiError(code))) is expected


async def test_send_email_without_api_key_short_circuits(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", None)
    with pytest.raises(PermanentError) as exc_info:
        await send_email({"to": "a@example.com", "subject": "Hi"})
    assert exc_info.value.short_circuit


async def test_send_email_requires_recipient(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")
    with pytest.raises(PermanentError):
        await send_email({"subject": "Hi"})


async def test_send_email_applies_template_data(monkeypatch):
    monkeypatch.setattr(config, "RESEND_API_KEY", "re_test")
    sent = []

    def fake_send(params):
        sent.append(params)
        return {"id": "email_123"}

    monkeypatch.setattr(resend.Emails, "send", fake_send)
    result = await send_email({
        "to": "a@example.com",
        "subject": "Welcome {{name}}",
        "text": "See {{site_url}}",
        "template_data": {"name": "Ada"},
    })

    assert result == {"success": True, "resend_id": "email_123"}
    assert sent[0]["to"] == ["a@example.com"]
    assert sent[0]["subject"] == "Welcome Ada"
    assert sent[0]["text"] == "See https://learn.example.com"
    assert "html" not in sent[0]


async def test_admin_notification_skipped_without_address(monkeypatch, queue):
    monkeypatch.setattr(config, "ADMIN_NOTIFICATION_EMAIL", None)
    assert await queue_admin_notification(queue, make_job(), "completed") is None


async def test_admin_notification_skipped_for_email_jobs(monkeypatch, queue):
    monkeypatch.setattr(config, "ADMIN_NOTIFICATION_EMAIL", "admin@example.com")
    job = make_job(QueueName.EMAIL, "send_email")
    assert await queue_admin_notification(queue, job, "failed", error="bounced") is None


async def test_admin_notification_queued(monkeypatch, queue):
    monkeypatch.setattr(config, "ADMIN_NOTIFICATION_EMAIL", "admin@example.com")
    job = make_job(course_id="c1", context={"course_title": "Python Basics", "article_title": "Variables"})

    email_job_id = await queue_admin_notification(queue, job, "completed")
    email_job = await queue.get_job(email_job_id)
    assert email_job.queue_name == QueueName.EMAIL
    assert email_job.payload["subject"] == "Article quiz generated: Variables"
    assert email_job.payload["source_job_id"] == job.job_id
