"""
Stage handlers, one per job type.

Each handler re-reads its context from the entity store (the payload's
context snapshot is only used for logging), calls the provider, persists
the result and marks the owning unit generated. Handlers raise only
GenerationError subclasses or NotFoundError; the worker turns those into
queue outcomes.
"""

import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from coursegen.config import config
from coursegen.database.courses import CourseService
from coursegen.database.models import (
    Article,
    Course,
    EntityKind,
    GenerationStatus,
    Quiz,
    QuizType,
    Section,
)
from coursegen.email.sender import send_email
from coursegen.errors import NotFoundError, PermanentError
from coursegen.generation import prompts
from coursegen.generation.parsing import (
    parse_json_response,
    parse_questions,
    slugify,
    strip_markdown_wrapper,
)
from coursegen.generation.provider import GenerationKind
from coursegen.generation.sitemap import article_urls, write_sitemaps
from coursegen.jobs.models import GenerationJob, JobType
from coursegen.jobs.quiz_settings import QuizSettings, QuizSettingsStore
from coursegen.utils.logging import worker_logger as logger


async def _no_progress(progress: int):
    return None


@dataclass
class StageContext:
    """Collaborators a handler needs for one job"""
    courses: CourseService
    provider: Any
    report_progress: Callable[[int], Awaitable[None]] = _no_progress
    sitemap_dir: str = field(default_factory=lambda: config.SITEMAP_DIR)
    base_url: str = field(default_factory=lambda: config.APP_BASE_URL)
    rng: Optional[random.Random] = None
    quiz_settings: Optional[QuizSettingsStore] = None

    async def question_count(self, quiz_type: QuizType) -> int:
        settings = await self.quiz_settings.get() if self.quiz_settings else QuizSettings()
        return settings.question_count(quiz_type, self.rng)


StageHandler = Callable[[StageContext, GenerationJob], Awaitable[Dict[str, Any]]]


# =============================================================================
# Context loading
# =============================================================================

async def _load_course(courses: CourseService, course_id: str) -> Course:
    course = await courses.get_course_tree(course_id)
    if course is None:
        raise NotFoundError("course", course_id)
    return course


async def _load_article_context(courses: CourseService, article_id: str) -> Tuple[Course, Section, Article]:
    article = await courses.get_article(article_id)
    if article is None:
        raise NotFoundError("article", article_id)
    course = await _load_course(courses, article.course_id)
    section = next((s for s in course.sections if s.section_id == article.section_id), None)
    if section is None:
        raise NotFoundError("section", article.section_id)
    # The tree copy carries the quiz; the direct read is authoritative for content
    tree_article = next((a for a in section.articles if a.article_id == article_id), None)
    if tree_article is not None:
        article.quiz = tree_article.quiz
    return course, section, article


def _require_id(job: GenerationJob, key: str) -> str:
    value = job.payload.get(key)
    if not value:
        raise PermanentError(f"Job payload is missing {key}", short_circuit=True)
    return value


# =============================================================================
# Course structure
# =============================================================================

async def handle_outline(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    """Generate the course outline and create its sections and articles"""
    course_id = _require_id(job, "course_id")
    course = await _load_course(ctx.courses, course_id)
    await ctx.report_progress(10)

    text = await ctx.provider.generate(
        GenerationKind.COURSE_OUTLINE,
        prompts.build_outline_prompt(course),
        context={"course_id": course_id},
    )
    outline = parse_json_response(text)
    sections = outline.get("sections")
    if not isinstance(sections, list) or not sections:
        raise PermanentError("Outline has no sections")
    await ctx.report_progress(60)

    await ctx.courses.update_course(course_id, {
        "title": outline.get("title") or course.title,
        "description": outline.get("description") or course.description,
        "outline_json": outline,
    })

    created_sections = 0
    created_articles = 0
    if course.sections:
        # Replacing an existing tree would orphan generated content and quizzes
        logger.info("Course already has sections, keeping existing tree",
                    course_id=course_id, sections=len(course.sections))
    else:
        for section_index, section_data in enumerate(sections):
            section = await ctx.courses.create_section(
                course_id,
                section_data.get("title") or f"Section {section_index + 1}",
                section_data.get("description"),
                section_index,
            )
            created_sections += 1
            for article_index, article_data in enumerate(section_data.get("articles") or []):
                title = article_data.get("title") or f"Article {article_index + 1}"
                await ctx.courses.create_article(
                    section.section_id,
                    course_id,
                    title,
                    f"{course.slug}-{slugify(title)}",
                    article_data.get("description"),
                    article_index,
                )
                created_articles += 1

    await ctx.courses.update_generation_status(EntityKind.COURSE, course_id, GenerationStatus.GENERATED)
    await ctx.report_progress(90)
    return {"course_id": course_id, "sections_created": created_sections, "articles_created": created_articles}


async def write_article_content(
    courses: CourseService,
    provider,
    article_id: str,
    checkpoint: Optional[Callable[[int], Awaitable[None]]] = None
) -> str:
    """
    Generate, clean and persist one article's content. Returns the content.

    checkpoint runs between generation and the write; a lost lease raises
    there and the write is abandoned.
    """
    course, section, article = await _load_article_context(courses, article_id)
    text = await provider.generate(
        GenerationKind.ARTICLE_CONTENT,
        prompts.build_article_prompt(course, section, article),
        context={"course_id": course.course_id, "article_id": article_id},
    )
    content = strip_markdown_wrapper(text)
    if not content:
        raise PermanentError("Generated article content is empty")
    if checkpoint:
        await checkpoint(60)
    await courses.save_article_content(article_id, content)
    return content


async def handle_article_content(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    article_id = _require_id(job, "article_id")
    article = await ctx.courses.get_article(article_id)
    if article is None:
        raise NotFoundError("article", article_id)
    if article.has_content and not job.payload.get("regenerate"):
        return {"article_id": article_id, "skipped": True}

    await ctx.report_progress(10)
    content = await write_article_content(ctx.courses, ctx.provider, article_id, ctx.report_progress)
    await ctx.report_progress(90)
    return {"article_id": article_id, "chars": len(content)}


# =============================================================================
# Quizzes
# =============================================================================

async def _generate_quiz(
    ctx: StageContext,
    quiz_type: QuizType,
    prompt: str,
    course: Course,
    default_title: str,
    default_description: str,
    section_id: Optional[str] = None,
    article_id: Optional[str] = None
) -> Dict[str, Any]:
    text = await ctx.provider.generate(
        GenerationKind.QUIZ,
        prompt,
        context={"course_id": course.course_id, "quiz_type": quiz_type.value},
    )
    data = parse_json_response(text)
    questions = parse_questions(data)
    await ctx.report_progress(60)

    quiz = Quiz(
        quiz_id=str(uuid.uuid4()),
        quiz_type=quiz_type,
        course_id=course.course_id,
        title=data.get("title") or default_title,
        section_id=section_id,
        article_id=article_id,
        description=data.get("description") or default_description,
        questions=questions,
    )
    await ctx.courses.save_quiz(quiz)
    await ctx.report_progress(90)
    return {"quiz_id": quiz.quiz_id, "quiz_type": quiz_type.value, "questions": len(questions)}


def _skip_existing(job: GenerationJob, existing: Optional[Quiz]) -> Optional[Dict[str, Any]]:
    """An existing quiz is only replaced by a regeneration job"""
    if existing and not job.payload.get("regenerate"):
        return {"skipped": True, "quiz_id": existing.quiz_id}
    return None


async def handle_article_quiz(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    article_id = _require_id(job, "article_id")
    course, section, article = await _load_article_context(ctx.courses, article_id)
    if not article.has_content:
        raise PermanentError(f"Article {article_id} has no content")

    skipped = _skip_existing(job, article.quiz)
    if skipped:
        return skipped
    await ctx.report_progress(10)

    count = await ctx.question_count(QuizType.ARTICLE)
    return await _generate_quiz(
        ctx,
        QuizType.ARTICLE,
        prompts.build_article_quiz_prompt(course, section, article, count),
        course,
        default_title=f"{article.title} - Quiz",
        default_description=f"Test your knowledge of {article.title}",
        article_id=article_id,
    )


async def handle_section_quiz(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    section_id = _require_id(job, "section_id")
    section = await ctx.courses.get_section(section_id)
    if section is None:
        raise NotFoundError("section", section_id)
    course = await _load_course(ctx.courses, section.course_id)
    section = next((s for s in course.sections if s.section_id == section_id), section)
    if not section.has_content:
        raise PermanentError(f"Section {section_id} has no articles with content")

    skipped = _skip_existing(job, section.quiz)
    if skipped:
        return skipped
    await ctx.report_progress(10)

    count = await ctx.question_count(QuizType.SECTION)
    return await _generate_quiz(
        ctx,
        QuizType.SECTION,
        prompts.build_section_quiz_prompt(course, section, count),
        course,
        default_title=f"{section.title} - Section Quiz",
        default_description=f"Test your knowledge of the {section.title} section",
        section_id=section_id,
    )


async def handle_final_exam(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    course_id = _require_id(job, "course_id")
    course = await _load_course(ctx.courses, course_id)
    if not course.has_content:
        raise PermanentError(f"Course {course_id} has no content")

    skipped = _skip_existing(job, course.final_exam)
    if skipped:
        return skipped
    await ctx.report_progress(10)

    count = await ctx.question_count(QuizType.FINAL_EXAM)
    return await _generate_quiz(
        ctx,
        QuizType.FINAL_EXAM,
        prompts.build_final_exam_prompt(course, count),
        course,
        default_title=f"{course.title} - Final Exam",
        default_description=f"Final exam for {course.title}",
    )


# =============================================================================
# Email / Sitemap
# =============================================================================

async def handle_send_email(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    return await send_email(job.payload)


async def handle_rebuild_sitemap(ctx: StageContext, job: GenerationJob) -> Dict[str, Any]:
    articles = await ctx.courses.list_generated_articles()
    urls = article_urls(articles, ctx.base_url)
    files = write_sitemaps(urls, ctx.sitemap_dir, ctx.base_url)
    logger.info("Sitemap rebuilt", urls=len(urls), files=files)
    return {"urls": len(urls), "files": files}


STAGE_HANDLERS: Dict[str, StageHandler] = {
    JobType.OUTLINE.value: handle_outline,
    JobType.ARTICLE_CONTENT.value: handle_article_content,
    JobType.ARTICLE_QUIZ.value: handle_article_quiz,
    JobType.SECTION_QUIZ.value: handle_section_quiz,
    JobType.FINAL_EXAM.value: handle_final_exam,
    JobType.SEND_EMAIL.value: handle_send_email,
    JobType.REBUILD_SITEMAP.value: handle_rebuild_sitemap,
}


# =============================================================================
# Terminal failure bookkeeping
# =============================================================================

async def mark_unit_failed(courses: CourseService, job: GenerationJob, reason: str):
    """Flip the owning unit's generation_status to error once attempts are exhausted"""
    payload = job.payload
    job_type = job.job_type

    if job_type == JobType.OUTLINE.value and payload.get("course_id"):
        await courses.update_generation_status(EntityKind.COURSE, payload["course_id"], GenerationStatus.ERROR, reason)
    elif job_type == JobType.ARTICLE_CONTENT.value and payload.get("article_id"):
        await courses.update_generation_status(EntityKind.ARTICLE, payload["article_id"], GenerationStatus.ERROR, reason)
    elif job_type in (JobType.ARTICLE_QUIZ.value, JobType.SECTION_QUIZ.value, JobType.FINAL_EXAM.value):
        quiz_type = {
            JobType.ARTICLE_QUIZ.value: QuizType.ARTICLE,
            JobType.SECTION_QUIZ.value: QuizType.SECTION,
            JobType.FINAL_EXAM.value: QuizType.FINAL_EXAM,
        }[job_type]
        # Only a quiz being regenerated exists to carry the error
        existing = await courses.find_quiz(
            quiz_type, payload.get("course_id"), payload.get("section_id"), payload.get("article_id")
        )
        if existing:
            await courses.update_generation_status(EntityKind.QUIZ, existing.quiz_id, GenerationStatus.ERROR, reason)
