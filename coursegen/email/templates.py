"""
Email HTML templates for coursegen notifications.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from coursegen.config import config

_VARIABLE_RE = re.compile(r"{{\s*(\w+)\s*}}")

JOB_TYPE_LABELS = {
    "outline": "Course outline",
    "article_content": "Article content",
    "article_quiz": "Article quiz",
    "section_quiz": "Section quiz",
    "final_exam": "Final exam",
}


def process_template_variables(template: str, data: Dict[str, Any]) -> str:
    """
    Replace {{name}} placeholders. Global variables (site_url, current_year)
    are always available; caller data takes precedence. Unknown
    placeholders are left in place.
    """
    variables = {
        "site_url": config.APP_BASE_URL.rstrip("/"),
        "current_year": str(datetime.now(timezone.utc).year),
    }
    variables.update(data or {})

    def replace(match):
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return _VARIABLE_RE.sub(replace, template)


def render_generation_email(
    job_type: str,
    status: str,
    course_title: str,
    target_title: Optional[str] = None,
    course_id: Optional[str] = None,
    error: Optional[str] = None
) -> Dict[str, str]:
    """
    Render the admin notification for a finished generation job.

    Returns:
        Dict with subject, html and text
    """
    base_url = config.APP_BASE_URL.rstrip('/')
    label = JOB_TYPE_LABELS.get(job_type, job_type)
    subject_target = target_title or course_title
    succeeded = status == "completed"

    subject = f"{label} {'generated' if succeeded else 'failed'}: {subject_target}"
    course_link = f"{base_url}/admin/courses/{course_id}" if course_id else base_url

    error_section = ""
    if error:
        error_section = f'''
        <div style="margin: 20px 0; padding: 16px; background: #fdecea; border-radius: 8px; color: #8a1c1c;">
          <strong>Error:</strong> {error}
        </div>
        '''

    html = f'''<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; color: #1f2933; max-width: 600px; margin: 0 auto; padding: 24px;">
  <h2 style="margin: 0 0 12px 0;">{subject}</h2>
  <p style="margin: 0 0 8px 0;">Course: <strong>{course_title}</strong></p>
  {f'<p style="margin: 0 0 8px 0;">Unit: {target_title}</p>' if target_title else ''}
  <p style="margin: 0 0 8px 0;">Status: {status}</p>
  {error_section}
  <p style="margin: 24px 0;">
    <a href="{course_link}" style="display: inline-block; background: #3b5bdb; color: white; padding: 10px 24px; border-radius: 6px; text-decoration: none;">Open course</a>
  </p>
</body>
</html>'''

    text_lines = [subject, f"Course: {course_title}"]
    if target_title:
        text_lines.append(f"Unit: {target_title}")
    text_lines.append(f"Status: {status}")
    if error:
        text_lines.append(f"Error: {error}")
    text_lines.append(course_link)

    return {"subject": subject, "html": html, "text": "\n".join(text_lines)}
