"""
Transactional email sending via Resend, plus fire-and-forget admin
notifications routed through the email queue.
"""

from typing import Any, Dict, Optional

import resend
from resend.exceptions import ResendError

from coursegen.config import config
from coursegen.email.templates import process_template_variables, render_generation_email
from coursegen.errors import PermanentError, RateLimitedError, TransientError
from coursegen.jobs.models import GenerationJob, JobType, QueueName
from coursegen.utils.logging import email_logger as logger


def _map_resend_error(error: Exception) -> Exception:
    """429 -> RateLimited, 5xx -> Transient, other API errors -> Permanent"""
    code = getattr(error, "code", None)
    try:
        status = int(code)
    except (TypeError, ValueError):
        status = None

    if status == 429:
        return RateLimitedError(f"Email provider rate limit: {error}")
    if status is not None and status >= 500:
        return TransientError(f"Email provider error {status}: {error}")
    if status is not None:
        return PermanentError(f"Email rejected ({status}): {error}")
    return TransientError(f"Email send failed: {error}")


async def send_email(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Send one email described by a send_email job payload.

    Payload keys: to, subject, html, text, from, reply_to, and optionally
    template_data (applied to subject/html/text placeholders).

    Raises:
        PermanentError: missing recipient or API key
        RateLimitedError, TransientError: provider failures worth retrying
    """
    if not config.RESEND_API_KEY:
        raise PermanentError("RESEND_API_KEY is not configured", short_circuit=True)

    to = payload.get("to")
    if not to:
        raise PermanentError("Email payload has no recipient", short_circuit=True)

    data = payload.get("template_data") or {}
    subject = process_template_variables(payload.get("subject") or "", data)
    params: Dict[str, Any] = {
        "from": payload.get("from") or config.EMAIL_FROM,
        "to": to if isinstance(to, list) else [to],
        "subject": subject,
    }
    if payload.get("html"):
        params["html"] = process_template_variables(payload["html"], data)
    if payload.get("text"):
        params["text"] = process_template_variables(payload["text"], data)
    if payload.get("reply_to"):
        params["reply_to"] = payload["reply_to"]

    resend.api_key = config.RESEND_API_KEY
    try:
        response = resend.Emails.send(params)
    except ResendError as e:
        raise _map_resend_error(e) from e

    resend_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    logger.info("Email sent successfully", to=params["to"], subject=subject, resend_id=resend_id)
    return {"success": True, "resend_id": resend_id}


async def queue_admin_notification(
    queue,
    job: GenerationJob,
    status: str,
    course_title: Optional[str] = None,
    target_title: Optional[str] = None,
    error: Optional[str] = None
) -> Optional[str]:
    """
    Queue a notification email about a finished generation job.

    Never raises: a failed notification must not affect the job it reports on.
    """
    if not config.ADMIN_NOTIFICATION_EMAIL:
        return None
    if job.queue_name in (QueueName.EMAIL, QueueName.SITEMAP):
        return None

    try:
        context = job.payload.get("context") or {}
        rendered = render_generation_email(
            job_type=job.job_type,
            status=status,
            course_title=course_title or context.get("course_title") or "Untitled course",
            target_title=target_title or context.get("article_title") or context.get("section_title"),
            course_id=job.payload.get("course_id"),
            error=error,
        )
        email_job_id = await queue.enqueue(
            QueueName.EMAIL,
            JobType.SEND_EMAIL.value,
            {
                "to": config.ADMIN_NOTIFICATION_EMAIL,
                "subject": rendered["subject"],
                "html": rendered["html"],
                "text": rendered["text"],
                "source_job_id": job.job_id,
            },
        )
        logger.debug("Admin notification queued", job_id=job.job_id, email_job_id=email_job_id)
        return email_job_id
    except Exception as e:
        logger.error("Failed to queue admin notification", job_id=job.job_id, error=str(e))
        return None
