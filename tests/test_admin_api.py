"""Admin API endpoints over an in-memory queue and fake course store."""

import pytest
from httpx import ASGITransport, AsyncClient

from coursegen.api.main import app
from coursegen.errors import TransientError
from coursegen.generation.orchestrator import GenerationOrchestrator
from coursegen.jobs.models import JobOptions
from coursegen.routes.admin import (
    course_service,
    orchestrator_dependency,
    queue_dependency,
    results_service,
)

pytestmark = pytest.mark.anyio


@pytest.fixture
async def client(queue, courses, results, provider):
    app.dependency_overrides[queue_dependency] = lambda: queue
    app.dependency_overrides[course_service] = lambda: courses
    app.dependency_overrides[results_service] = lambda: results
    app.dependency_overrides[orchestrator_dependency] = lambda: GenerationOrchestrator(
        queue, courses, provider=provider, auto_generate_quizzes=True
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_generate_all_quizzes(client, courses):
    course = courses.add_course(sections=1, articles_per_section=1)

    response = await client.post(f"/api/admin/courses/{course.course_id}/generate-all-quizzes")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["jobs_queued"] == 3
    assert body["message"] == "Queued 3 quizzes for generation"

    response = await client.post(
        f"/api/admin/courses/{course.course_id}/generate-all-quizzes",
        json={"regenerate_only": True},
    )
    assert response.json()["message"] == "No existing quizzes to regenerate"


async def test_generate_for_unknown_course_is_404(client):
    response = await client.post("/api/admin/courses/missing/generate-all-quizzes")
    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Course not found: missing"}


async def test_regenerate_requires_target(client, courses):
    course = courses.add_course(sections=1, articles_per_section=1)

    response = await client.post(
        f"/api/admin/courses/{course.course_id}/regenerate", json={"type": "article_quiz"}
    )
    assert response.status_code == 400
    assert response.json()["field"] == "article_id"


async def test_article_generation_queues_then_reports_in_flight(client, courses):
    course = courses.add_course(sections=1, articles_per_section=1, with_content=False)
    article = courses.articles_of(courses.sections_of(course.course_id)[0].section_id)[0]

    first = (await client.post(f"/api/admin/articles/{article.article_id}/generate")).json()
    second = (await client.post(f"/api/admin/articles/{article.article_id}/generate")).json()
    assert first["status"] == "queued"
    assert second["status"] == "in_flight"

    status = (await client.get(f"/api/admin/jobs/{first['job_id']}")).json()
    assert status["status"] == "delayed"
    assert second["job_id"] == first["job_id"]


async def test_unknown_job_status(client):
    response = await client.get("/api/admin/jobs/nope")
    assert response.status_code == 200
    assert response.json()["status"] == "not_found"


async def test_list_jobs_by_state(client, queue, clock):
    first = await queue.enqueue("quiz", "article_quiz", {})
    clock.advance(5)
    second = await queue.enqueue("email", "send_email", {})

    body = (await client.get("/api/admin/queues/jobs")).json()
    assert [job["id"] for job in body["jobs"]] == [second, first]
    assert body["counts"]["quiz"]["waiting"] == 1

    body = (await client.get("/api/admin/queues/jobs", params={"queue": "email"})).json()
    assert [job["id"] for job in body["jobs"]] == [second]


async def test_list_jobs_rejects_unknown_queue(client):
    response = await client.get("/api/admin/queues/jobs", params={"queue": "videos"})
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid queue name: videos", "field": "queue"}


async def test_purge_queue(client, queue):
    await queue.enqueue("quiz", "article_quiz", {})
    await queue.enqueue("quiz", "article_quiz", {}, JobOptions(delay_ms=1000))

    body = (await client.delete("/api/admin/queues/quiz", params={"status": "waiting"})).json()
    assert body["removed"] == 1
    assert (await queue.counts("quiz"))["delayed"] == 1

    response = await client.delete("/api/admin/queues/quiz", params={"status": "paused"})
    assert response.status_code == 400


async def test_retry_and_promote(client, queue):
    failed_id = await queue.enqueue("quiz", "article_quiz", {})
    job = await queue.lease("quiz")
    await queue.fail(job.job_id, job.lease_token, TransientError("x"), final=True)

    response = await client.post(f"/api/admin/queues/quiz/jobs/{failed_id}", json={"action": "retry"})
    assert response.status_code == 200
    assert (await queue.get_job(failed_id)).state.value == "waiting"

    response = await client.post(f"/api/admin/queues/quiz/jobs/{failed_id}", json={"action": "promote"})
    assert response.status_code == 400
    assert response.json()["error"] == "Job is not delayed"

    response = await client.post(f"/api/admin/queues/quiz/jobs/{failed_id}", json={"action": "pause"})
    assert response.status_code == 400


async def test_job_actions_check_queue(client, queue):
    job_id = await queue.enqueue("quiz", "article_quiz", {})

    response = await client.delete(f"/api/admin/queues/email/jobs/{job_id}")
    assert response.status_code == 404

    response = await client.delete(f"/api/admin/queues/quiz/jobs/{job_id}")
    assert response.status_code == 200
    assert await queue.get_job(job_id) is None


async def test_queue_config_roundtrip(client, queue):
    body = (await client.get("/api/admin/queues/config")).json()
    assert {cfg["queue_name"] for cfg in body["configs"]} == {"course-structure", "quiz", "email", "sitemap"}

    response = await client.put("/api/admin/queues/config/quiz", json={"attempts": 3})
    assert response.status_code == 200
    assert response.json()["config"]["attempts"] == 3

    job_id = await queue.enqueue("quiz", "article_quiz", {})
    assert (await queue.get_job(job_id)).max_attempts == 3


@pytest.mark.parametrize("fields, field", [
    ({"attempts": 0}, "attempts"),
    ({"attempts": "3"}, "attempts"),
    ({"retries": 3}, "retries"),
])
async def test_queue_config_rejects_invalid_fields(client, fields, field):
    response = await client.put("/api/admin/queues/config/quiz", json=fields)
    assert response.status_code == 400
    assert response.json()["field"] == field


async def test_queue_config_rejects_empty_body(client):
    response = await client.put("/api/admin/queues/config/quiz", json={})
    assert response.status_code == 400
    assert response.json()["field"] is None


async def test_quiz_settings_get_and_update(client):
    body = (await client.get("/api/admin/quiz-settings")).json()
    assert body["settings"]["section_quiz_min_questions"] == 5
    assert body["settings"]["section_quiz_max_questions"] == 8

    response = await client.put("/api/admin/quiz-settings", json={
        "final_exam_min_questions": 20, "final_exam_max_questions": 40,
    })
    assert response.status_code == 200
    settings = response.json()["settings"]
    assert (settings["final_exam_min_questions"], settings["final_exam_max_questions"]) == (20, 40)
    assert settings["article_quiz_max_questions"] == 5


async def test_quiz_settings_reject_inverted_range(client):
    response = await client.put("/api/admin/quiz-settings", json={
        "article_quiz_min_questions": 6, "article_quiz_max_questions": 4,
    })
    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "Article Quiz: Minimum cannot be greater than maximum",
        "field": "article_quiz_min_questions",
    }


async def test_logs_reject_unknown_level(client):
    response = await client.get("/api/admin/logs", params={"level": "loud"})
    assert response.status_code == 400
