"""Stage handlers against the in-memory course store and a canned provider."""

import random
import re

import pytest

from coursegen.database.models import GenerationStatus, QuizType
from coursegen.errors import LeaseLostError, NotFoundError, PermanentError
from coursegen.generation.provider import GenerationKind
from coursegen.generation.stages import (
    StageContext,
    handle_article_content,
    handle_article_quiz,
    handle_final_exam,
    handle_outline,
    handle_rebuild_sitemap,
    handle_section_quiz,
    mark_unit_failed,
)
from coursegen.jobs.models import GenerationJob, JobState, QueueName

pytestmark = pytest.mark.anyio


def make_job(job_type: str, **payload) -> GenerationJob:
    queue_name = QueueName.COURSE_STRUCTURE if job_type in ("outline", "article_content") else QueueName.QUIZ
    return GenerationJob(
        job_id=f"{job_type}_test",
        queue_name=queue_name,
        job_type=job_type,
        payload=payload,
        state=JobState.ACTIVE,
        attempt_count=0,
        max_attempts=5,
        backoff_base_ms=10000,
        lease_token="token",
    )


@pytest.fixture
def ctx(courses, provider, tmp_path):
    return StageContext(
        courses=courses,
        provider=provider,
        sitemap_dir=str(tmp_path),
        base_url="https://learn.example.com/",
        rng=random.Random(7),
    )


def first_article(courses, course):
    section = courses.sections_of(course.course_id)[0]
    return section, courses.articles_of(section.section_id)[0]


async def test_outline_creates_sections_and_articles(ctx, courses):
    course = courses.add_course(title="Python Basics")

    result = await handle_outline(ctx, make_job("outline", course_id=course.course_id))
    assert result == {"course_id": course.course_id, "sections_created": 2, "articles_created": 3}

    sections = courses.sections_of(course.course_id)
    assert [s.title for s in sections] == ["Getting Started", "Data Types"]
    articles = courses.articles_of(sections[0].section_id)
    assert [a.slug for a in articles] == ["python-basics-installing-python", "python-basics-your-first-script"]
    assert courses.courses[course.course_id].generation_status == GenerationStatus.GENERATED
    assert courses.courses[course.course_id].outline["title"] == "Python Basics"


async def test_outline_keeps_existing_tree(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=1)

    result = await handle_outline(ctx, make_job("outline", course_id=course.course_id))
    assert result["sections_created"] == 0
    assert len(courses.sections_of(course.course_id)) == 1
    assert courses.courses[course.course_id].description == "Learn Python from scratch"


async def test_outline_rejects_unparseable_response(ctx, courses, provider):
    course = courses.add_course()
    provider.responses[GenerationKind.COURSE_OUTLINE] = "Sorry, I can't help with that."

    with pytest.raises(PermanentError):
        await handle_outline(ctx, make_job("outline", course_id=course.course_id))
    assert courses.sections_of(course.course_id) == []


async def test_missing_payload_id_short_circuits(ctx):
    with pytest.raises(PermanentError) as exc_info:
        await handle_outline(ctx, make_job("outline"))
    assert exc_info.value.short_circuit


async def test_unknown_course_is_not_found(ctx):
    with pytest.raises(NotFoundError):
        await handle_outline(ctx, make_job("outline", course_id="missing"))


async def test_article_content_generated_and_unwrapped(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=1, with_content=False)
    _, article = first_article(courses, course)

    result = await handle_article_content(ctx, make_job("article_content", article_id=article.article_id))
    saved = courses.articles[article.article_id]
    assert saved.content == "# Installing Python\n\nDownload the installer."
    assert saved.has_content
    assert result["chars"] == len(saved.content)


async def test_article_content_skips_existing(ctx, courses, provider):
    course = courses.add_course(sections=1, articles_per_section=1)
    _, article = first_article(courses, course)

    result = await handle_article_content(ctx, make_job("article_content", article_id=article.article_id))
    assert result["skipped"] is True
    assert provider.calls == []


async def test_lost_lease_abandons_article_write(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=1, with_content=False)
    _, article = first_article(courses, course)

    async def report_progress(progress):
        if progress >= 60:
            raise LeaseLostError("article_content_test")

    ctx.report_progress = report_progress
    with pytest.raises(LeaseLostError):
        await handle_article_content(ctx, make_job("article_content", article_id=article.article_id))
    assert not courses.articles[article.article_id].has_content


async def test_article_quiz_saves_normalized_questions(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=1)
    _, article = first_article(courses, course)

    result = await handle_article_quiz(ctx, make_job("article_quiz", article_id=article.article_id))
    assert result["questions"] == 3

    quiz = courses.quizzes[result["quiz_id"]]
    assert quiz.quiz_type == QuizType.ARTICLE
    assert quiz.article_id == article.article_id
    assert quiz.pass_mark_percentage == 65.0
    assert [q.question_type for q in quiz.questions] == ["MULTIPLE_CHOICE", "TRUE_FALSE", "FILL_IN_BLANK"]
    assert quiz.questions[0].options == {"A": "3", "B": "4"}
    assert [q.order_index for q in quiz.questions] == [0, 1, 2]


async def test_article_quiz_requires_content(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=1, with_content=False)
    _, article = first_article(courses, course)

    with pytest.raises(PermanentError):
        await handle_article_quiz(ctx, make_job("article_quiz", article_id=article.article_id))


async def test_existing_quiz_skipped_unless_regenerating(ctx, courses, provider):
    course = courses.add_course(sections=1, articles_per_section=1)
    _, article = first_article(courses, course)
    existing = courses.add_quiz(QuizType.ARTICLE, course.course_id, article_id=article.article_id)

    skipped = await handle_article_quiz(ctx, make_job("article_quiz", article_id=article.article_id))
    assert skipped == {"skipped": True, "quiz_id": existing.quiz_id}
    assert provider.calls == []

    result = await handle_article_quiz(
        ctx, make_job("article_quiz", article_id=article.article_id, regenerate=True)
    )
    assert existing.quiz_id not in courses.quizzes
    assert result["quiz_id"] in courses.quizzes


async def test_section_quiz(ctx, courses):
    course = courses.add_course(sections=1, articles_per_section=2)
    section, _ = first_article(courses, course)

    result = await handle_section_quiz(ctx, make_job("section_quiz", section_id=section.section_id))
    quiz = courses.quizzes[result["quiz_id"]]
    assert quiz.section_id == section.section_id
    assert quiz.article_id is None


async def test_section_quiz_uses_default_range_without_settings(ctx, courses, provider):
    course = courses.add_course(sections=1, articles_per_section=1)
    section, _ = first_article(courses, course)

    await handle_section_quiz(ctx, make_job("section_quiz", section_id=section.section_id))
    _, prompt = provider.calls[-1]
    count = int(re.search(r"Write a (\d+)-question quiz", prompt).group(1))
    assert 5 <= count <= 8


async def test_final_exam_question_count_comes_from_settings(ctx, courses, provider, queue):
    await queue.quiz_settings.update({"final_exam_min_questions": 12, "final_exam_max_questions": 12})
    ctx.quiz_settings = queue.quiz_settings
    course = courses.add_course(sections=2, articles_per_section=1)

    result = await handle_final_exam(ctx, make_job("final_exam", course_id=course.course_id))
    assert courses.quizzes[result["quiz_id"]].quiz_type == QuizType.FINAL_EXAM

    kind, prompt = provider.calls[-1]
    assert kind == GenerationKind.QUIZ
    assert "Write a 12-question final exam" in prompt


async def test_rebuild_sitemap_writes_generated_articles(ctx, courses, tmp_path):
    courses.add_course(sections=1, articles_per_section=2)

    result = await handle_rebuild_sitemap(ctx, make_job("rebuild_sitemap"))
    assert result["urls"] == 3
    xml = (tmp_path / "sitemap.xml").read_text()
    assert "https://learn.example.com/articles/article-1-1" in xml
    assert "<lastmod>2026-01-02</lastmod>" in xml


async def test_mark_unit_failed_flags_article(courses):
    course = courses.add_course(sections=1, articles_per_section=1, with_content=False)
    _, article = first_article(courses, course)

    await mark_unit_failed(courses, make_job("article_content", article_id=article.article_id), "bad output")
    assert courses.articles[article.article_id].generation_status == GenerationStatus.ERROR
    assert courses.articles[article.article_id].generation_error == "bad output"
