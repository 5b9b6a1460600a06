"""Quiz question-count settings: lazy defaults, range validation and updates."""

import asyncio
import random

import pytest

from coursegen.database.models import QuizType
from coursegen.errors import ValidationError
from coursegen.jobs.quiz_settings import QuizSettings, validate_quiz_settings

pytestmark = pytest.mark.anyio


async def test_first_read_creates_defaults(queue):
    assert await queue.db.get_quiz_settings("default") is None

    settings = await queue.quiz_settings.get()
    assert settings.question_range(QuizType.ARTICLE) == (3, 5)
    assert settings.question_range(QuizType.SECTION) == (5, 8)
    assert settings.question_range(QuizType.FINAL_EXAM) == (15, 25)
    assert settings.created_at is not None
    assert await queue.db.get_quiz_settings("default") is not None


async def test_concurrent_first_reads_agree(queue):
    results = await asyncio.gather(*(queue.quiz_settings.get() for _ in range(5)))
    assert {s.final_exam_max_questions for s in results} == {25}


async def test_partial_update_keeps_other_ranges(queue):
    settings = await queue.quiz_settings.update({"article_quiz_max_questions": 10})
    assert settings.question_range(QuizType.ARTICLE) == (3, 10)
    assert settings.question_range(QuizType.SECTION) == (5, 8)

    settings = await queue.quiz_settings.get()
    assert settings.article_quiz_max_questions == 10


@pytest.mark.parametrize("fields, field, message", [
    ({"section_quiz_min_questions": 9}, "section_quiz_min_questions",
     "Section Quiz: Minimum cannot be greater than maximum"),
    ({"article_quiz_min_questions": 0}, "article_quiz_min_questions",
     "Article Quiz: Minimum must be at least 1"),
    ({"final_exam_max_questions": 501}, "final_exam_max_questions",
     "Final Exam: Maximum cannot exceed 500 questions"),
    ({"final_exam_min_questions": "15"}, "final_exam_min_questions",
     "final_exam_min_questions must be an integer"),
    ({"final_exam_min_questions": True}, "final_exam_min_questions",
     "final_exam_min_questions must be an integer"),
    ({"flashcards_per_article": 3}, "flashcards_per_article",
     "Unknown quiz setting: flashcards_per_article"),
])
async def test_invalid_update_is_rejected_without_writing(queue, fields, field, message):
    with pytest.raises(ValidationError) as exc_info:
        await queue.quiz_settings.update(fields)
    assert exc_info.value.field == field
    assert exc_info.value.message == message
    assert (await queue.quiz_settings.get()).counts() == QuizSettings().counts()


async def test_empty_update_is_rejected(queue):
    with pytest.raises(ValidationError):
        await queue.quiz_settings.update({})


def test_range_errors_are_reported_together():
    with pytest.raises(ValidationError) as exc_info:
        validate_quiz_settings(
            {"article_quiz_min_questions": 0, "final_exam_max_questions": 600}, QuizSettings()
        )
    assert exc_info.value.field == "article_quiz_min_questions"
    assert exc_info.value.message == (
        "Article Quiz: Minimum must be at least 1; Final Exam: Maximum cannot exceed 500 questions"
    )


def test_question_count_stays_within_range():
    settings = QuizSettings(section_quiz_min_questions=6, section_quiz_max_questions=7)
    rng = random.Random(3)
    counts = {settings.question_count(QuizType.SECTION, rng) for _ in range(50)}
    assert counts == {6, 7}
    assert QuizSettings(final_exam_min_questions=20, final_exam_max_questions=20).question_count(
        QuizType.FINAL_EXAM
    ) == 20
