"""
Entity models for the content tree the pipeline fills in.

Course -> ordered Sections -> ordered Articles. Articles and Sections may
own one Quiz of the matching type; a Course owns at most one final exam.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from coursegen.errors import ValidationError


class GenerationStatus(str, Enum):
    """Generation state of a unit of content"""
    NOT_STARTED = "not_started"
    PENDING = "pending"
    GENERATED = "generated"
    ERROR = "error"


class QuizType(str, Enum):
    ARTICLE = "article"
    SECTION = "section"
    FINAL_EXAM = "final_exam"


class EntityKind(str, Enum):
    """Tables that carry a generation_status column"""
    COURSE = "course"
    SECTION = "section"
    ARTICLE = "article"
    QUIZ = "quiz"


VALID_QUESTION_TYPES = ("MULTIPLE_CHOICE", "TRUE_FALSE", "FILL_IN_BLANK", "ESSAY")


@dataclass
class QuizQuestion:
    question_type: str
    question_text: str
    correct_answer: Optional[str] = None
    options: Optional[Dict[str, str]] = None
    explanation: Optional[str] = None
    order_index: int = 0
    points: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_type": self.question_type,
            "question_text": self.question_text,
            "correct_answer": self.correct_answer,
            "options": self.options,
            "explanation": self.explanation,
            "order_index": self.order_index,
            "points": self.points,
        }


@dataclass
class Quiz:
    quiz_id: str
    quiz_type: QuizType
    course_id: str
    title: str
    section_id: Optional[str] = None
    article_id: Optional[str] = None
    description: Optional[str] = None
    pass_mark_percentage: float = 65.0
    questions: List[QuizQuestion] = field(default_factory=list)

    def __post_init__(self):
        check_quiz_ownership(self.quiz_type, self.section_id, self.article_id)


@dataclass
class Article:
    article_id: str
    section_id: str
    course_id: str
    title: str
    slug: str
    description: Optional[str] = None
    order_index: int = 0
    content: Optional[str] = None
    is_content_generated: bool = False
    generation_status: GenerationStatus = GenerationStatus.NOT_STARTED
    generation_error: Optional[str] = None
    updated_at: Optional[str] = None
    quiz: Optional[Quiz] = None

    @property
    def has_content(self) -> bool:
        return self.is_content_generated and bool(self.content)


@dataclass
class Section:
    section_id: str
    course_id: str
    title: str
    description: Optional[str] = None
    order_index: int = 0
    generation_status: GenerationStatus = GenerationStatus.NOT_STARTED
    generation_error: Optional[str] = None
    articles: List[Article] = field(default_factory=list)
    quiz: Optional[Quiz] = None

    @property
    def has_content(self) -> bool:
        """At least one article with generated content"""
        return any(article.has_content for article in self.articles)


@dataclass
class Course:
    course_id: str
    title: str
    slug: str
    description: Optional[str] = None
    level: str = "BEGINNER"
    generation_status: GenerationStatus = GenerationStatus.NOT_STARTED
    generation_error: Optional[str] = None
    outline: Optional[Dict[str, Any]] = None
    sections: List[Section] = field(default_factory=list)
    final_exam: Optional[Quiz] = None

    @property
    def has_content(self) -> bool:
        return any(section.has_content for section in self.sections)

    @property
    def articles(self) -> List[Article]:
        return [article for section in self.sections for article in section.articles]


def check_quiz_ownership(quiz_type: QuizType, section_id: Optional[str], article_id: Optional[str]):
    """
    article quizzes need an article, section quizzes a section and no
    article, final exams neither.
    """
    if quiz_type == QuizType.ARTICLE and not article_id:
        raise ValidationError("article_id", "Article quiz requires an article_id")
    if quiz_type == QuizType.SECTION and (not section_id or article_id):
        raise ValidationError("section_id", "Section quiz requires a section_id and no article_id")
    if quiz_type == QuizType.FINAL_EXAM and (section_id or article_id):
        raise ValidationError("quiz_type", "Final exam cannot belong to a section or article")
