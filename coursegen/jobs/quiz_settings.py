"""
Runtime-editable quiz question counts.

One settings row ("default") holds a min/max question range per quiz type.
The stage worker picks a count uniformly within the range for each quiz it
generates. The row is created with defaults on first read, the same way
queue configs are.
"""

import random
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from coursegen.database.models import QuizType
from coursegen.errors import ValidationError
from coursegen.jobs.database import GenerationJobDatabase, QUIZ_SETTINGS_FIELDS
from coursegen.utils.logging import config_logger as logger

DEFAULT_SETTINGS_ID = "default"
MAX_QUESTIONS = 500

# (label, min field, max field) per quiz type
QUESTION_RANGES: Dict[QuizType, Tuple[str, str, str]] = {
    QuizType.ARTICLE: ("Article Quiz", "article_quiz_min_questions", "article_quiz_max_questions"),
    QuizType.SECTION: ("Section Quiz", "section_quiz_min_questions", "section_quiz_max_questions"),
    QuizType.FINAL_EXAM: ("Final Exam", "final_exam_min_questions", "final_exam_max_questions"),
}


@dataclass
class QuizSettings:
    article_quiz_min_questions: int = 3
    article_quiz_max_questions: int = 5
    section_quiz_min_questions: int = 5
    section_quiz_max_questions: int = 8
    final_exam_min_questions: int = 15
    final_exam_max_questions: int = 25
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def question_range(self, quiz_type: QuizType) -> Tuple[int, int]:
        _, low, high = QUESTION_RANGES[quiz_type]
        return getattr(self, low), getattr(self, high)

    def question_count(self, quiz_type: QuizType, rng: Optional[random.Random] = None) -> int:
        """A count picked uniformly within the quiz type's range"""
        return (rng or random).randint(*self.question_range(quiz_type))

    def counts(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in QUIZ_SETTINGS_FIELDS}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QuizSettings":
        return cls(**{name: row[name] for name in (*QUIZ_SETTINGS_FIELDS, "created_at", "updated_at")})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_quiz_settings(fields: Dict[str, Any], current: QuizSettings) -> Dict[str, int]:
    """
    Check an update payload merged over the current settings.

    Values must be integers; each range needs 1 <= min <= max <= 500.
    Raises ValidationError naming the first offending field, with every
    range problem in the message.
    """
    if not fields:
        raise ValidationError(None, "No quiz settings provided")

    for name, value in fields.items():
        if name not in QUIZ_SETTINGS_FIELDS:
            raise ValidationError(name, f"Unknown quiz setting: {name}")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(name, f"{name} must be an integer")

    merged = {**current.counts(), **fields}
    errors: List[Tuple[str, str]] = []
    for label, low, high in QUESTION_RANGES.values():
        if merged[low] > merged[high]:
            errors.append((low, f"{label}: Minimum cannot be greater than maximum"))
        if merged[low] < 1:
            errors.append((low, f"{label}: Minimum must be at least 1"))
        if merged[high] > MAX_QUESTIONS:
            errors.append((high, f"{label}: Maximum cannot exceed {MAX_QUESTIONS} questions"))

    if errors:
        raise ValidationError(errors[0][0], "; ".join(message for _, message in errors))
    return dict(fields)


class QuizSettingsStore:
    """
    Read and update the question-count settings row.

    Usage:
        store = QuizSettingsStore(db)
        settings = await store.get()
        settings = await store.update({"final_exam_max_questions": 30})
    """

    def __init__(self, db: GenerationJobDatabase, settings_id: str = DEFAULT_SETTINGS_ID):
        self.db = db
        self.settings_id = settings_id

    async def get(self) -> QuizSettings:
        """Return the stored settings, creating the default row if absent."""
        row = await self.db.get_quiz_settings(self.settings_id)
        if row:
            return QuizSettings.from_row(row)

        defaults = QuizSettings().counts()
        now_iso = datetime.now(timezone.utc).isoformat()
        if await self.db.insert_quiz_settings_if_absent(self.settings_id, defaults, now_iso):
            logger.info("Created default quiz settings", **defaults)
        return QuizSettings.from_row(await self.db.get_quiz_settings(self.settings_id))

    async def update(self, fields: Dict[str, Any]) -> QuizSettings:
        """Validate then apply a partial update. Returns the resulting settings."""
        current = await self.get()
        validated = validate_quiz_settings(fields, current)

        now_iso = datetime.now(timezone.utc).isoformat()
        await self.db.update_quiz_settings(self.settings_id, validated, now_iso)

        logger.info("Quiz settings updated", **validated)
        return await self.get()
