"""
Job status reporting.

Live jobs are answered from the queue. Jobs trimmed or purged from the
queue fall back to the terminal record the worker wrote to the entity
store, so a finished job's outcome stays queryable.
"""

from typing import Any, Dict, Optional

from coursegen.jobs.models import JobState
from coursegen.jobs.queue import JobQueue

NOT_FOUND_MESSAGE = "Job not found or already processed"


class StatusReporter:
    """
    Resolve a job id to {job_id, status, progress?, result?, error?, attempts?}.

    status is one of waiting, active, delayed, completed, failed, not_found.
    """

    def __init__(self, queue: JobQueue, results=None):
        self.queue = queue
        self.results = results

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        job = await self.queue.get_job(job_id)
        if job is not None:
            status: Dict[str, Any] = {
                "job_id": job_id,
                "status": job.state.value,
                "attempts": job.attempt_count,
                "max_attempts": job.max_attempts,
            }
            if job.state == JobState.COMPLETED:
                status["result"] = job.result
            elif job.state == JobState.FAILED:
                status["error"] = job.error_message
            else:
                status["progress"] = job.progress
                if job.error_message:
                    # Reason of the last failed attempt while a retry is pending
                    status["error"] = job.error_message
            return status

        record = await self._terminal_record(job_id)
        if record is None:
            return {"job_id": job_id, "status": "not_found", "error": NOT_FOUND_MESSAGE}

        if record.get("status") == JobState.FAILED.value:
            return {"job_id": job_id, "status": "failed", "error": record.get("error")}
        return {"job_id": job_id, "status": "completed", "result": record.get("result")}

    async def _terminal_record(self, job_id: str) -> Optional[Dict[str, Any]]:
        if self.results is None:
            return None
        return await self.results.get_result(job_id)
