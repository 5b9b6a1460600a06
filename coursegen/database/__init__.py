"""
coursegen Database Layer

This module provides the Supabase client and the entity-store services
the pipeline reads context from and writes results to.
"""

from .client import get_supabase_admin_client, SupabaseClientError
from .courses import CourseService
from .results import ResultService
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

__all__ = [
    "get_supabase_admin_client",
    "SupabaseClientError",
    "CourseService",
    "ResultService",
    "Article",
    "Course",
    "EntityKind",
    "GenerationStatus",
    "Quiz",
    "QuizQuestion",
    "QuizType",
    "Section",
]
