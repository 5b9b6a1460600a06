"""
Generation Prompts

Prompt builders for each generation stage. Context comes from the entity
store at execution time, never from the queued payload snapshot.
"""

from typing import List

from coursegen.database.models import Article, Course, Section


# =============================================================================
# Shared Fragments
# =============================================================================

QUESTION_FORMAT = """
Question "type" must be exactly one of:
- "MULTIPLE_CHOICE" (include "options" with keys a-d)
- "TRUE_FALSE" (correctAnswer "true" or "false")
- "FILL_IN_BLANK" (mark the blank with _____)

Respond with a JSON object shaped like:
{
  "title": "Quiz title",
  "description": "One sentence on what the quiz covers",
  "questions": [
    {
      "type": "MULTIPLE_CHOICE",
      "question": "Question text?",
      "options": {"a": "...", "b": "...", "c": "...", "d": "..."},
      "correctAnswer": "a",
      "explanation": "Why this answer is correct"
    }
  ]
}

Return ONLY the JSON object.
"""

ARTICLE_EXCERPT_CHARS = 2000
SECTION_EXCERPT_CHARS = 1000
SECTION_CONTEXT_CHARS = 4000
COURSE_CONTEXT_CHARS = 10000


def _excerpt(text: str, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def _level(course: Course) -> str:
    return (course.level or "beginner").lower()


# =============================================================================
# Course Structure
# =============================================================================

def build_outline_prompt(course: Course) -> str:
    return f"""Design a course for a {_level(course)} audience.

Topic: {course.title}
Requirements: {course.description or "None given"}

Produce:
1. A clear course title
2. A course description of two or three paragraphs covering what learners will gain and any prerequisites
3. An outline of 4-8 sections, each with 3-6 articles, ordered from fundamentals to advanced material

Respond with a JSON object shaped like:
{{
  "title": "Course title",
  "description": "Course description",
  "sections": [
    {{
      "title": "Section title",
      "description": "What the section covers",
      "articles": [
        {{"title": "Article title", "description": "What the article covers"}}
      ]
    }}
  ]
}}

Return ONLY the JSON object."""


def build_article_prompt(course: Course, section: Section, article: Article) -> str:
    return f"""Write the full lesson for one article of a course.

Course: {course.title} ({_level(course)} level)
Course description: {course.description or ""}
Section: {section.title}
Section description: {section.description or ""}
Article: {article.title}
Article description: {article.description or ""}

The lesson should introduce the topic, explain the key concepts with worked
examples (code where relevant), call out common pitfalls, and end with a
short summary. Aim for at least 1000 words.

Write Markdown, starting with a single # heading for the title."""


# =============================================================================
# Quizzes
# =============================================================================

def build_article_quiz_prompt(course: Course, section: Section, article: Article, count: int) -> str:
    return f"""Write a {count}-question quiz on this course article.

Course: {course.title} ({_level(course)} level)
Section: {section.title}
Article: {article.title}
Content:
{_excerpt(article.content, ARTICLE_EXCERPT_CHARS)}

Test understanding of the article's key concepts using a mix of question types.
{QUESTION_FORMAT}"""


def build_section_quiz_prompt(course: Course, section: Section, count: int) -> str:
    articles = [a for a in section.articles if a.has_content]
    overview = "\n\n".join(
        f"Article: {a.title}\n{_excerpt(a.content, SECTION_EXCERPT_CHARS)}" for a in articles
    )
    return f"""Write a {count}-question quiz covering a whole course section.

Course: {course.title} ({_level(course)} level)
Section: {section.title}
Section description: {section.description or "N/A"}
Articles: {len(articles)}
Content overview:
{_excerpt(overview, SECTION_CONTEXT_CHARS)}

Draw questions from every article, not just the first.
{QUESTION_FORMAT}"""


def build_final_exam_prompt(course: Course, count: int) -> str:
    blocks: List[str] = []
    for section in course.sections:
        articles = "\n".join(
            f"Article: {a.title}\n{_excerpt(a.content, SECTION_EXCERPT_CHARS)}"
            for a in section.articles if a.has_content
        )
        blocks.append(f"Section: {section.title}\n{section.description or ''}\n{articles}")
    overview = "\n\n".join(blocks)

    return f"""Write a {count}-question final exam for this course.

Course: {course.title} ({_level(course)} level)
Course description: {course.description or ""}
Sections: {len(course.sections)}
Content overview:
{_excerpt(overview, COURSE_CONTEXT_CHARS)}

Cover every section, mixing conceptual and applied questions suitable for a
final assessment. Roughly 70% multiple choice, 20% true/false, 10% fill in the blank.
{QUESTION_FORMAT}"""
