"""
Generation Result Service

Terminal outcome records for generation jobs, keyed by job_id. The queue
trims finished jobs; these rows keep the business outcome queryable.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any

from supabase import Client

from .client import get_supabase_admin_client


class ResultService:
    """Service for the generation_results table"""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_admin_client()
        return self._client

    async def save_result(
        self,
        job_id: str,
        queue_name: str,
        job_type: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        course_id: Optional[str] = None,
        section_id: Optional[str] = None,
        article_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upsert the terminal record for a job (status: completed|failed)"""
        record = {
            "job_id": job_id,
            "queue_name": queue_name,
            "job_type": job_type,
            "status": status,
            "result": result,
            "error": error,
            "course_id": course_id,
            "section_id": section_id,
            "article_id": article_id,
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }
        response = (
            self.client.table("generation_results")
            .upsert(record, on_conflict="job_id")
            .execute()
        )
        return response.data[0] if response.data else record

    async def get_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get the terminal record for a job"""
        response = (
            self.client.table("generation_results")
            .select("*")
            .eq("job_id", job_id)
            .execute()
        )
        return response.data[0] if response.data else None
