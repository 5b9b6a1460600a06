"""
Supabase client for the entity store.

Workers and the admin API share one service-role client. A missing
credential fails the job that needed it outright instead of burning its
retry budget.
"""

from functools import lru_cache

from supabase import Client, create_client

from coursegen.config import config
from coursegen.errors import PermanentError
from coursegen.utils.logging import get_logger

logger = get_logger("database")

HEALTH_CHECK_TABLE = "courses"


class SupabaseClientError(PermanentError):
    """Supabase credentials are missing."""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"{setting} is not configured", short_circuit=True)


@lru_cache(maxsize=1)
def get_supabase_admin_client() -> Client:
    """
    Service-role client (bypasses Row Level Security).

    Server-side only: stage workers, the admin API and setup scripts.
    """
    for setting in ("SUPABASE_URL", "SUPABASE_SERVICE_KEY"):
        if not getattr(config, setting):
            raise SupabaseClientError(setting)
    return create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)


def verify_supabase_connection() -> bool:
    """True when the course tables answer a trivial query."""
    try:
        client = get_supabase_admin_client()
        client.table(HEALTH_CHECK_TABLE).select("course_id").limit(1).execute()
    except Exception as e:
        logger.error("Supabase connection failed", table=HEALTH_CHECK_TABLE, error=str(e))
        return False
    return True
