"""
Generation Orchestrator

Decides which generation stages of a course need jobs and enqueues them
in dependency order, without duplicating work that already exists or is
already in flight.

Dependent stages are only enqueued after the dependency's output has been
observed in the entity store (enqueue time for quizzes, completion
callback for article content). Queue order is never relied on.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from coursegen.config import config
from coursegen.database.courses import CourseService
from coursegen.database.models import (
    Article,
    Course,
    EntityKind,
    GenerationStatus,
    Quiz,
    Section,
)
from coursegen.errors import NotFoundError, ValidationError
from coursegen.jobs.models import JOB_TYPE_QUEUES, GenerationJob, JobOptions, JobType, QueueName
from coursegen.jobs.queue import JobQueue
from coursegen.utils.logging import orchestrator_logger as logger

# Lets the triggering write settle before a course job runs
COURSE_JOB_DELAY_MS = 1000
# Batches bursts of completions into one sitemap rebuild
SITEMAP_BATCH_DELAY_MS = 30000

REGENERATABLE_TYPES = (
    JobType.OUTLINE,
    JobType.ARTICLE_CONTENT,
    JobType.ARTICLE_QUIZ,
    JobType.SECTION_QUIZ,
    JobType.FINAL_EXAM,
)


# =============================================================================
# Decision Table
# =============================================================================

class Decision(str, Enum):
    ENQUEUE = "enqueue"
    SKIP_NO_CONTENT = "skip_no_content"
    SKIP_EXISTS = "skip_exists"
    SKIP_NOTHING_TO_REGENERATE = "skip_nothing_to_regenerate"
    SKIP_IN_FLIGHT = "skip_in_flight"


def decide(has_output: bool, has_live_job: bool, regenerate_only: bool, gated: bool) -> Decision:
    """
    The generate-vs-regenerate table for one stage target.

    gated: the stage's prerequisite holds (article has content, section has
    an article with content, course has content anywhere).

    | gated | live job | regenerate_only | output | decision                   |
    |-------|----------|-----------------|--------|----------------------------|
    | no    | *        | *               | *      | SKIP_NO_CONTENT            |
    | yes   | yes      | *               | *      | SKIP_IN_FLIGHT             |
    | yes   | no       | no              | no     | ENQUEUE                    |
    | yes   | no       | no              | yes    | SKIP_EXISTS                |
    | yes   | no       | yes             | yes    | ENQUEUE                    |
    | yes   | no       | yes             | no     | SKIP_NOTHING_TO_REGENERATE |
    """
    if not gated:
        return Decision.SKIP_NO_CONTENT
    if has_live_job:
        return Decision.SKIP_IN_FLIGHT
    if regenerate_only:
        return Decision.ENQUEUE if has_output else Decision.SKIP_NOTHING_TO_REGENERATE
    return Decision.SKIP_EXISTS if has_output else Decision.ENQUEUE


def dedupe_key(job_type: JobType, target_id: str) -> str:
    """Correlation key identifying live work for one stage target"""
    return f"{job_type.value}:{target_id}"


# =============================================================================
# Results
# =============================================================================

@dataclass
class BulkGenerationResult:
    jobs_queued: int
    job_ids: List[str] = field(default_factory=list)
    manifest: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "jobs_queued": self.jobs_queued,
            "job_ids": self.job_ids,
            "manifest": self.manifest,
            "message": self.message,
        }


@dataclass
class ArticleGenerationResult:
    article_id: str
    status: str  # exists | queued | in_flight | generated
    job_id: Optional[str] = None
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "article_id": self.article_id,
            "status": self.status,
            "job_id": self.job_id,
            "content": self.content,
        }


@dataclass
class _QuizTarget:
    job_type: JobType
    target_id: str
    title: str
    gated: bool
    existing: Optional[Quiz]
    section_id: Optional[str] = None
    article_id: Optional[str] = None


def _quiz_noun(count: int) -> str:
    return "quiz" if count == 1 else "quizzes"


# =============================================================================
# Orchestrator
# =============================================================================

class GenerationOrchestrator:
    """
    Plans and enqueues generation jobs for a course.

    Usage:
        orchestrator = GenerationOrchestrator(queue, CourseService())
        result = await orchestrator.enqueue_bulk_generation(course_id)
    """

    def __init__(
        self,
        queue: JobQueue,
        courses: CourseService,
        provider=None,
        auto_generate_quizzes: Optional[bool] = None
    ):
        self.queue = queue
        self.courses = courses
        self.provider = provider
        self.auto_generate_quizzes = (
            config.AUTO_GENERATE_QUIZZES if auto_generate_quizzes is None else auto_generate_quizzes
        )

    # =========================================================================
    # Enqueue helpers
    # =========================================================================

    async def _load_course(self, course_id: str) -> Course:
        course = await self.courses.get_course_tree(course_id)
        if course is None:
            raise NotFoundError("course", course_id)
        return course

    async def _enqueue(
        self,
        job_type: JobType,
        target_id: str,
        payload: Dict[str, Any],
        delay_ms: int = COURSE_JOB_DELAY_MS
    ) -> Tuple[str, bool]:
        """(job_id, created); created is False when a live job already holds the target"""
        return await self.queue.enqueue_unique(
            JOB_TYPE_QUEUES[job_type],
            job_type.value,
            payload,
            JobOptions(delay_ms=delay_ms, dedupe_key=dedupe_key(job_type, target_id)),
        )

    async def _live_job(self, job_type: JobType, target_id: str) -> Optional[GenerationJob]:
        return await self.queue.find_live(JOB_TYPE_QUEUES[job_type], dedupe_key(job_type, target_id))

    @staticmethod
    def _payload(course: Course, section: Optional[Section] = None,
                 article: Optional[Article] = None, regenerate: bool = False) -> Dict[str, Any]:
        """Identifiers plus a denormalized context snapshot used for prompt framing only"""
        context = {
            "course_title": course.title,
            "course_level": course.level,
        }
        if section:
            context["section_title"] = section.title
        if article:
            context["article_title"] = article.title
        return {
            "course_id": course.course_id,
            "section_id": section.section_id if section else None,
            "article_id": article.article_id if article else None,
            "regenerate": regenerate,
            "context": context,
        }

    # =========================================================================
    # Bulk quiz generation
    # =========================================================================

    def _quiz_targets(self, course: Course) -> List[_QuizTarget]:
        targets = []
        for section in course.sections:
            for article in section.articles:
                targets.append(_QuizTarget(
                    job_type=JobType.ARTICLE_QUIZ,
                    target_id=article.article_id,
                    title=f"{article.title} - Quiz",
                    gated=article.has_content,
                    existing=article.quiz,
                    section_id=section.section_id,
                    article_id=article.article_id,
                ))
            targets.append(_QuizTarget(
                job_type=JobType.SECTION_QUIZ,
                target_id=section.section_id,
                title=f"{section.title} - Section Quiz",
                gated=section.has_content,
                existing=section.quiz,
                section_id=section.section_id,
            ))
        targets.append(_QuizTarget(
            job_type=JobType.FINAL_EXAM,
            target_id=course.course_id,
            title=f"{course.title} - Final Exam",
            gated=course.has_content,
            existing=course.final_exam,
        ))
        return targets

    async def enqueue_bulk_generation(self, course_id: str, regenerate_only: bool = False) -> BulkGenerationResult:
        """
        Queue article quizzes, section quizzes and the final exam for a course.

        With regenerate_only=False only missing quizzes are queued; with
        regenerate_only=True only existing quizzes are. Targets without
        content, or with a job already in flight, are skipped.
        """
        course = await self._load_course(course_id)
        sections = {s.section_id: s for s in course.sections}
        articles = {a.article_id: a for a in course.articles}

        result = BulkGenerationResult(jobs_queued=0)
        for target in self._quiz_targets(course):
            live = None
            if target.gated:
                live = await self._live_job(target.job_type, target.target_id)

            decision = decide(
                has_output=target.existing is not None,
                has_live_job=live is not None,
                regenerate_only=regenerate_only,
                gated=target.gated,
            )
            if decision != Decision.ENQUEUE:
                logger.debug(
                    "Quiz target skipped",
                    course_id=course_id,
                    job_type=target.job_type.value,
                    target_id=target.target_id,
                    decision=decision.value,
                )
                continue

            payload = self._payload(
                course,
                sections.get(target.section_id),
                articles.get(target.article_id),
                regenerate=regenerate_only,
            )
            job_id, created = await self._enqueue(target.job_type, target.target_id, payload)
            if not created:
                logger.debug(
                    "Quiz target skipped",
                    course_id=course_id,
                    job_type=target.job_type.value,
                    target_id=target.target_id,
                    decision=Decision.SKIP_IN_FLIGHT.value,
                )
                continue
            if target.existing:
                await self.courses.update_generation_status(
                    EntityKind.QUIZ, target.existing.quiz_id, GenerationStatus.PENDING
                )

            result.job_ids.append(job_id)
            entry = {"type": target.job_type.value, "title": target.title, "job_id": job_id}
            if target.article_id:
                entry["article_id"] = target.article_id
            if target.section_id:
                entry["section_id"] = target.section_id
            result.manifest.append(entry)

        result.jobs_queued = len(result.job_ids)
        if result.jobs_queued:
            action = "regeneration" if regenerate_only else "generation"
            result.message = f"Queued {result.jobs_queued} {_quiz_noun(result.jobs_queued)} for {action}"
        elif regenerate_only:
            result.message = "No existing quizzes to regenerate"
        else:
            result.message = "No content available to generate quizzes"

        logger.info(
            "Bulk quiz generation planned",
            course_id=course_id,
            regenerate_only=regenerate_only,
            jobs_queued=result.jobs_queued,
        )
        return result

    # =========================================================================
    # Course structure
    # =========================================================================

    async def request_outline(self, course_id: str, regenerate: bool = False) -> Dict[str, Any]:
        """Queue outline generation and mark the course pending"""
        course = await self._load_course(course_id)

        job_id, created = await self._enqueue(
            JobType.OUTLINE, course_id, self._payload(course, regenerate=regenerate)
        )
        if not created:
            return {"success": True, "job_id": job_id, "queued": False,
                    "message": "Outline generation already in progress"}

        await self.courses.update_generation_status(EntityKind.COURSE, course_id, GenerationStatus.PENDING)
        logger.info("Outline queued", course_id=course_id, job_id=job_id)
        return {"success": True, "job_id": job_id, "queued": True,
                "message": "outline generation queued successfully"}

    async def request_article_content(self, article_id: str, inline: bool = False) -> ArticleGenerationResult:
        """
        Single-unit generation on first view.

        Existing content is returned directly. Otherwise a deduplicated job is
        queued, or with inline=True the provider is called in-process.
        """
        article = await self.courses.get_article(article_id)
        if article is None:
            raise NotFoundError("article", article_id)

        if article.has_content:
            return ArticleGenerationResult(article_id, "exists", content=article.content)

        if inline:
            from coursegen.generation.stages import write_article_content

            content = await write_article_content(self.courses, self._require_provider(), article_id)
            return ArticleGenerationResult(article_id, "generated", content=content)

        live = await self._live_job(JobType.ARTICLE_CONTENT, article_id)
        if live:
            return ArticleGenerationResult(article_id, "in_flight", job_id=live.job_id)

        job_id, created = await self._enqueue_article_content(article)
        return ArticleGenerationResult(article_id, "queued" if created else "in_flight", job_id=job_id)

    async def _enqueue_article_content(self, article: Article, regenerate: bool = False) -> Tuple[str, bool]:
        course = await self._load_course(article.course_id)
        section = next((s for s in course.sections if s.section_id == article.section_id), None)
        job_id, created = await self._enqueue(
            JobType.ARTICLE_CONTENT,
            article.article_id,
            self._payload(course, section, article, regenerate=regenerate),
        )
        if created:
            await self.courses.update_generation_status(
                EntityKind.ARTICLE, article.article_id, GenerationStatus.PENDING
            )
        return job_id, created

    def _require_provider(self):
        if self.provider is None:
            from coursegen.generation.provider import get_provider
            self.provider = get_provider()
        return self.provider

    # =========================================================================
    # Explicit regeneration
    # =========================================================================

    async def regenerate_unit(
        self,
        course_id: str,
        unit_type: str,
        article_id: Optional[str] = None,
        section_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Queue regeneration of one unit regardless of existing output.

        Raises:
            ValidationError: unknown type or missing target id
            NotFoundError: course/section/article does not exist in this course
        """
        try:
            job_type = JobType(unit_type)
        except ValueError:
            raise ValidationError("type", "Invalid regeneration type")
        if job_type not in REGENERATABLE_TYPES:
            raise ValidationError("type", "Invalid regeneration type")

        if job_type == JobType.OUTLINE:
            return await self.request_outline(course_id, regenerate=True)

        course = await self._load_course(course_id)

        if job_type in (JobType.ARTICLE_CONTENT, JobType.ARTICLE_QUIZ):
            if not article_id:
                raise ValidationError("article_id", f"Article ID is required for {job_type.value}")
            article = next((a for a in course.articles if a.article_id == article_id), None)
            if article is None:
                raise NotFoundError("article", article_id)
            section = next(s for s in course.sections if s.section_id == article.section_id)
            target_id = article_id
            payload = self._payload(course, section, article, regenerate=True)
        elif job_type == JobType.SECTION_QUIZ:
            if not section_id:
                raise ValidationError("section_id", "Section ID is required for section_quiz")
            section = next((s for s in course.sections if s.section_id == section_id), None)
            if section is None:
                raise NotFoundError("section", section_id)
            target_id = section_id
            payload = self._payload(course, section, regenerate=True)
        else:
            target_id = course_id
            payload = self._payload(course, regenerate=True)

        job_id, created = await self._enqueue(job_type, target_id, payload)
        if not created:
            return {"success": True, "job_id": job_id, "queued": False,
                    "message": f"{job_type.value} regeneration already in progress"}

        if job_type == JobType.ARTICLE_CONTENT:
            await self.courses.update_generation_status(EntityKind.ARTICLE, target_id, GenerationStatus.PENDING)

        logger.info("Regeneration queued", course_id=course_id, job_type=job_type.value,
                    target_id=target_id, job_id=job_id)
        return {"success": True, "job_id": job_id, "queued": True,
                "message": f"{job_type.value} regeneration queued successfully"}

    # =========================================================================
    # Completion callback
    # =========================================================================

    async def on_job_completed(self, job: GenerationJob, result: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Enqueue stages that depended on a just-completed job.

        outline         -> article_content for every article without content
        article_content -> bulk quiz generation once every article has content
        any             -> one batched sitemap rebuild

        Returns the ids of jobs queued.
        """
        queued: List[str] = []
        course_id = job.payload.get("course_id")

        if job.job_type == JobType.OUTLINE.value and course_id:
            course = await self._load_course(course_id)
            for article in course.articles:
                if article.has_content:
                    continue
                job_id, created = await self._enqueue_article_content(article)
                if created:
                    queued.append(job_id)
            if queued:
                logger.info("Article content queued after outline", course_id=course_id, jobs_queued=len(queued))

        elif job.job_type == JobType.ARTICLE_CONTENT.value and course_id and self.auto_generate_quizzes:
            course = await self._load_course(course_id)
            if course.articles and all(a.has_content for a in course.articles):
                bulk = await self.enqueue_bulk_generation(course_id, regenerate_only=False)
                queued.extend(bulk.job_ids)

        if job.queue_name != QueueName.SITEMAP and job.queue_name != QueueName.EMAIL:
            sitemap_job = await self.request_sitemap_rebuild(trigger=job.job_id)
            if sitemap_job:
                queued.append(sitemap_job)

        return queued

    async def request_sitemap_rebuild(self, trigger: Optional[str] = None) -> Optional[str]:
        """Queue a sitemap rebuild unless one is already pending"""
        job_id, created = await self.queue.enqueue_unique(
            QueueName.SITEMAP,
            JobType.REBUILD_SITEMAP.value,
            {"type": "regenerate", "trigger": trigger},
            JobOptions(delay_ms=SITEMAP_BATCH_DELAY_MS, dedupe_key=dedupe_key(JobType.REBUILD_SITEMAP, "all")),
        )
        if not created:
            logger.debug("Sitemap rebuild already pending, skipping", trigger=trigger)
            return None
        return job_id
