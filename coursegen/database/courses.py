"""
Course Service

Entity store for courses, sections, articles and quizzes using Supabase.
Stage handlers re-read context through this service at execution time.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import uuid4

from supabase import Client

from .client import get_supabase_admin_client
from .models import (
    Article,
    Course,
    EntityKind,
    GenerationStatus,
    Quiz,
    QuizQuestion,
    QuizType,
    Section,
)


# Table backing each entity kind
ENTITY_TABLES = {
    EntityKind.COURSE: ("courses", "course_id"),
    EntityKind.SECTION: ("course_sections", "section_id"),
    EntityKind.ARTICLE: ("course_articles", "article_id"),
    EntityKind.QUIZ: ("course_quizzes", "quiz_id"),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status(value: Optional[str]) -> GenerationStatus:
    return GenerationStatus(value) if value else GenerationStatus.NOT_STARTED


def course_from_row(row: Dict[str, Any]) -> Course:
    return Course(
        course_id=row["course_id"],
        title=row.get("title") or "",
        slug=row.get("slug") or "",
        description=row.get("description"),
        level=row.get("level") or "BEGINNER",
        generation_status=_status(row.get("generation_status")),
        generation_error=row.get("generation_error"),
        outline=row.get("outline_json"),
    )


def section_from_row(row: Dict[str, Any]) -> Section:
    return Section(
        section_id=row["section_id"],
        course_id=row["course_id"],
        title=row.get("title") or "",
        description=row.get("description"),
        order_index=row.get("order_index") or 0,
        generation_status=_status(row.get("generation_status")),
        generation_error=row.get("generation_error"),
    )


def article_from_row(row: Dict[str, Any]) -> Article:
    return Article(
        article_id=row["article_id"],
        section_id=row["section_id"],
        course_id=row["course_id"],
        title=row.get("title") or "",
        slug=row.get("slug") or "",
        description=row.get("description"),
        order_index=row.get("order_index") or 0,
        content=row.get("content"),
        is_content_generated=bool(row.get("is_content_generated")),
        generation_status=_status(row.get("generation_status")),
        generation_error=row.get("generation_error"),
        updated_at=row.get("updated_at"),
    )


def quiz_from_row(row: Dict[str, Any], question_rows: Optional[List[Dict[str, Any]]] = None) -> Quiz:
    questions = [
        QuizQuestion(
            question_type=q["question_type"],
            question_text=q["question_text"],
            correct_answer=q.get("correct_answer"),
            options=q.get("options_json"),
            explanation=q.get("explanation"),
            order_index=q.get("order_index") or 0,
            points=q.get("points") or 1.0,
        )
        for q in sorted(question_rows or [], key=lambda q: q.get("order_index") or 0)
    ]
    return Quiz(
        quiz_id=row["quiz_id"],
        quiz_type=QuizType(row["quiz_type"]),
        course_id=row["course_id"],
        title=row.get("title") or "",
        section_id=row.get("section_id"),
        article_id=row.get("article_id"),
        description=row.get("description"),
        pass_mark_percentage=row.get("pass_mark_percentage") or 65.0,
        questions=questions,
    )


class CourseService:
    """
    Service class for the course content tree.

    Tables: courses, course_sections, course_articles, course_quizzes,
    course_quiz_questions. Every quiz row carries its course_id so a whole
    course's quizzes load in one query.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_admin_client()
        return self._client

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_course_tree(self, course_id: str) -> Optional[Course]:
        """
        Load a course with its ordered sections and articles, each article's
        and section's quiz, and the final exam.
        """
        result = (
            self.client.table("courses")
            .select("*")
            .eq("course_id", course_id)
            .execute()
        )
        if not result.data:
            return None
        course = course_from_row(result.data[0])

        sections_result = (
            self.client.table("course_sections")
            .select("*")
            .eq("course_id", course_id)
            .order("order_index")
            .execute()
        )
        articles_result = (
            self.client.table("course_articles")
            .select("*")
            .eq("course_id", course_id)
            .order("order_index")
            .execute()
        )
        quizzes_result = (
            self.client.table("course_quizzes")
            .select("*")
            .eq("course_id", course_id)
            .execute()
        )

        quizzes = [quiz_from_row(row) for row in quizzes_result.data or []]
        article_quizzes = {q.article_id: q for q in quizzes if q.quiz_type == QuizType.ARTICLE}
        section_quizzes = {q.section_id: q for q in quizzes if q.quiz_type == QuizType.SECTION}
        course.final_exam = next((q for q in quizzes if q.quiz_type == QuizType.FINAL_EXAM), None)

        sections = {row["section_id"]: section_from_row(row) for row in sections_result.data or []}
        for row in articles_result.data or []:
            article = article_from_row(row)
            article.quiz = article_quizzes.get(article.article_id)
            if article.section_id in sections:
                sections[article.section_id].articles.append(article)

        for section in sections.values():
            section.quiz = section_quizzes.get(section.section_id)
        course.sections = sorted(sections.values(), key=lambda s: s.order_index)
        return course

    async def get_section(self, section_id: str) -> Optional[Section]:
        """Section with its ordered articles"""
        result = (
            self.client.table("course_sections")
            .select("*")
            .eq("section_id", section_id)
            .execute()
        )
        if not result.data:
            return None
        section = section_from_row(result.data[0])

        articles = (
            self.client.table("course_articles")
            .select("*")
            .eq("section_id", section_id)
            .order("order_index")
            .execute()
        )
        section.articles = [article_from_row(row) for row in articles.data or []]
        return section

    async def get_article(self, article_id: str) -> Optional[Article]:
        result = (
            self.client.table("course_articles")
            .select("*")
            .eq("article_id", article_id)
            .execute()
        )
        return article_from_row(result.data[0]) if result.data else None

    async def find_quiz(
        self,
        quiz_type: QuizType,
        course_id: str,
        section_id: Optional[str] = None,
        article_id: Optional[str] = None
    ) -> Optional[Quiz]:
        """The quiz of a type attached to a target, if any"""
        query = (
            self.client.table("course_quizzes")
            .select("*")
            .eq("course_id", course_id)
            .eq("quiz_type", quiz_type.value)
        )
        if quiz_type == QuizType.ARTICLE:
            query = query.eq("article_id", article_id)
        elif quiz_type == QuizType.SECTION:
            query = query.eq("section_id", section_id)
        result = query.limit(1).execute()
        return quiz_from_row(result.data[0]) if result.data else None

    async def list_generated_articles(self) -> List[Article]:
        """All articles with content, for the sitemap"""
        result = (
            self.client.table("course_articles")
            .select("article_id, section_id, course_id, title, slug, is_content_generated, updated_at")
            .eq("is_content_generated", True)
            .order("updated_at", desc=True)
            .execute()
        )
        return [article_from_row(row) for row in result.data or []]

    # =========================================================================
    # Writes
    # =========================================================================

    async def update_generation_status(
        self,
        kind: EntityKind,
        entity_id: str,
        status: GenerationStatus,
        error: Optional[str] = None
    ):
        """Set generation_status (and clear or record generation_error)"""
        table, key = ENTITY_TABLES[kind]
        self.client.table(table).update({
            "generation_status": status.value,
            "generation_error": error,
            "updated_at": _now_iso(),
        }).eq(key, entity_id).execute()

    async def update_course(self, course_id: str, fields: Dict[str, Any]):
        """Update course columns (title, description, outline_json, ...)"""
        data = dict(fields)
        data["updated_at"] = _now_iso()
        self.client.table("courses").update(data).eq("course_id", course_id).execute()

    async def create_section(
        self,
        course_id: str,
        title: str,
        description: Optional[str],
        order_index: int
    ) -> Section:
        row = {
            "section_id": str(uuid4()),
            "course_id": course_id,
            "title": title,
            "description": description,
            "order_index": order_index,
            "generation_status": GenerationStatus.GENERATED.value,
            "created_at": _now_iso(),
        }
        result = self.client.table("course_sections").insert(row).execute()
        return section_from_row(result.data[0])

    async def create_article(
        self,
        section_id: str,
        course_id: str,
        title: str,
        slug: str,
        description: Optional[str],
        order_index: int
    ) -> Article:
        row = {
            "article_id": str(uuid4()),
            "section_id": section_id,
            "course_id": course_id,
            "title": title,
            "slug": slug,
            "description": description,
            "order_index": order_index,
            "is_content_generated": False,
            "generation_status": GenerationStatus.NOT_STARTED.value,
            "created_at": _now_iso(),
        }
        result = self.client.table("course_articles").insert(row).execute()
        return article_from_row(result.data[0])

    async def save_article_content(self, article_id: str, content: str):
        """Store generated content and flip is_content_generated"""
        now = _now_iso()
        self.client.table("course_articles").update({
            "content": content,
            "is_content_generated": True,
            "generated_at": now,
            "generation_status": GenerationStatus.GENERATED.value,
            "generation_error": None,
            "updated_at": now,
        }).eq("article_id", article_id).execute()

    async def save_quiz(self, quiz: Quiz) -> Quiz:
        """
        Store a quiz, replacing any existing quiz of the same type and target.

        The replaced quiz is deleted only after the new one and its questions
        are stored; its questions are cascade-deleted with it.
        """
        existing = await self.find_quiz(quiz.quiz_type, quiz.course_id, quiz.section_id, quiz.article_id)

        self.client.table("course_quizzes").insert({
            "quiz_id": quiz.quiz_id,
            "quiz_type": quiz.quiz_type.value,
            "course_id": quiz.course_id,
            "section_id": quiz.section_id,
            "article_id": quiz.article_id,
            "title": quiz.title,
            "description": quiz.description,
            "pass_mark_percentage": quiz.pass_mark_percentage,
            "generation_status": GenerationStatus.GENERATED.value,
            "created_at": _now_iso(),
        }).execute()

        if quiz.questions:
            try:
                self.client.table("course_quiz_questions").insert([
                    {
                        "quiz_id": quiz.quiz_id,
                        "question_type": q.question_type,
                        "question_text": q.question_text,
                        "options_json": q.options,
                        "correct_answer": q.correct_answer,
                        "explanation": q.explanation,
                        "order_index": q.order_index,
                        "points": q.points,
                    }
                    for q in quiz.questions
                ]).execute()
            except Exception:
                # Keep the previous quiz as the only one for this target
                self.client.table("course_quizzes").delete().eq("quiz_id", quiz.quiz_id).execute()
                raise

        if existing and existing.quiz_id != quiz.quiz_id:
            self.client.table("course_quizzes").delete().eq("quiz_id", existing.quiz_id).execute()

        return quiz
