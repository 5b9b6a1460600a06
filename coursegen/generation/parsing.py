"""
Parsing and cleanup of provider output.
"""

import json
import re
from typing import Any, Dict, List, Optional

from coursegen.database.models import QuizQuestion, VALID_QUESTION_TYPES
from coursegen.errors import PermanentError
from coursegen.utils.logging import get_logger

logger = get_logger("parsing")

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove one ```json / ``` wrapper around the whole response."""
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_json_response(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of a provider response.

    Raises:
        PermanentError: the response is not a JSON object
    """
    cleaned = strip_code_fence(text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        # Fall back to the outermost {...} span; models sometimes add prose
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise PermanentError(f"Failed to parse provider response as JSON: {e}")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            raise PermanentError(f"Failed to parse provider response as JSON: {e}")

    if not isinstance(data, dict):
        raise PermanentError("Provider response is not a JSON object")
    return data


def strip_markdown_wrapper(content: str) -> str:
    """
    Remove an outer ```markdown wrapper, but only when it contains no
    inner code fences (which would otherwise be broken).
    """
    cleaned = content.strip()
    if cleaned.startswith("```markdown") and cleaned.endswith("```"):
        inner = cleaned[len("```markdown"):-3]
        if "```" not in inner:
            return inner.strip()
    return cleaned


def normalize_question_type(question_type: Optional[str]) -> str:
    normalized = (question_type or "").strip().upper()
    if normalized == "FILL_IN_THE_BLANK":
        return "FILL_IN_BLANK"
    if normalized not in VALID_QUESTION_TYPES:
        logger.warning("Invalid question type, defaulting to MULTIPLE_CHOICE", question_type=question_type)
        return "MULTIPLE_CHOICE"
    return normalized


def parse_questions(data: Dict[str, Any]) -> List[QuizQuestion]:
    """
    Build quiz questions from a parsed {"questions": [...]} payload.

    Raises:
        PermanentError: no usable questions
    """
    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise PermanentError("Provider response contains no questions")

    questions = []
    for raw in raw_questions:
        if not isinstance(raw, dict) or not raw.get("question"):
            continue
        answer = raw.get("correctAnswer", raw.get("correct_answer"))
        questions.append(QuizQuestion(
            question_type=normalize_question_type(raw.get("type")),
            question_text=raw["question"],
            correct_answer=str(answer) if answer is not None else None,
            options=raw.get("options") or None,
            explanation=raw.get("explanation"),
            order_index=len(questions),
        ))

    if not questions:
        raise PermanentError("Provider response contains no usable questions")
    return questions


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())
    return slug.strip("-")
