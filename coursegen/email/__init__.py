"""Email rendering and sending for coursegen."""

from .sender import send_email, queue_admin_notification
from .templates import process_template_variables, render_generation_email

__all__ = [
    "send_email",
    "queue_admin_notification",
    "process_template_variables",
    "render_generation_email",
]
