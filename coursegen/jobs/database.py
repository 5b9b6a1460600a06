"""
Database schema for the generation job queue.
Uses aiosqlite for async SQLite operations.

Every state transition is a single conditional UPDATE (compare-and-set on
state and lease token), so concurrent workers in other processes sharing
the same file can never both win a lease or finish the same job.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite

from coursegen.jobs.models import GenerationJob, JobState

_SELECT_JOB = f"SELECT {', '.join(GenerationJob.COLUMNS)} FROM generation_jobs"

QUEUE_CONFIG_FIELDS = (
    "attempts",
    "backoff_delay_ms",
    "rate_limit_retry_seconds",
    "max_backoff_minutes",
)

QUIZ_SETTINGS_FIELDS = (
    "article_quiz_min_questions",
    "article_quiz_max_questions",
    "section_quiz_min_questions",
    "section_quiz_max_questions",
    "final_exam_min_questions",
    "final_exam_max_questions",
)


class GenerationJobDatabase:
    """Handles job queue, queue-config and quiz-settings database operations"""

    def __init__(self, db_path: str = "generation_jobs.db"):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    async def connect(self):
        """Connect to database and create tables if needed"""
        if not self.is_memory:
            db_dir = Path(self.db_path).parent
            if str(db_dir) != "." and not db_dir.exists():
                db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        if not self.is_memory:
            # Several worker processes share the file
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._create_tables()

    async def _create_tables(self):
        """Create required tables"""
        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS generation_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT UNIQUE NOT NULL,
                queue_name TEXT NOT NULL,
                job_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'waiting',

                -- Retry bookkeeping
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                backoff_base_ms INTEGER NOT NULL,
                last_delay_ms INTEGER,

                -- Scheduling
                priority INTEGER NOT NULL DEFAULT 0,
                available_at INTEGER NOT NULL,
                dedupe_key TEXT,
                lease_token TEXT,

                -- Progress and outcome
                progress INTEGER DEFAULT 0,
                result TEXT,
                error_message TEXT,

                -- Timestamps (epoch ms)
                created_at INTEGER NOT NULL,
                started_at INTEGER,
                finished_at INTEGER
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_lease
            ON generation_jobs(queue_name, state, available_at)
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_dedupe
            ON generation_jobs(queue_name, dedupe_key)
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS queue_configs (
                queue_name TEXT PRIMARY KEY,
                attempts INTEGER NOT NULL,
                backoff_delay_ms INTEGER NOT NULL,
                rate_limit_retry_seconds INTEGER NOT NULL,
                max_backoff_minutes INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS quiz_generation_settings (
                settings_id TEXT PRIMARY KEY,
                article_quiz_min_questions INTEGER NOT NULL,
                article_quiz_max_questions INTEGER NOT NULL,
                section_quiz_min_questions INTEGER NOT NULL,
                section_quiz_max_questions INTEGER NOT NULL,
                final_exam_min_questions INTEGER NOT NULL,
                final_exam_max_questions INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._conn.commit()

    # =========================================================================
    # Job Creation / Retrieval
    # =========================================================================

    async def insert_job(self, job: GenerationJob) -> bool:
        """
        Insert a new job row.

        A job with a dedupe_key is only inserted while no waiting/active/delayed
        job of the same queue holds that key (NULL keys never match).
        Returns True if the row was inserted.
        """
        cursor = await self._conn.execute("""
            INSERT INTO generation_jobs
            (job_id, queue_name, job_type, payload, state, attempt_count,
             max_attempts, backoff_base_ms, priority, available_at,
             dedupe_key, created_at)
            SELECT ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM generation_jobs
                WHERE queue_name = ? AND dedupe_key = ?
                  AND state IN ('waiting', 'active', 'delayed')
            )
        """, (
            job.job_id,
            job.queue_name.value,
            job.job_type,
            json.dumps(job.payload),
            job.state.value,
            job.max_attempts,
            job.backoff_base_ms,
            job.priority,
            job.available_at,
            job.dedupe_key,
            job.created_at,
            job.queue_name.value,
            job.dedupe_key,
        ))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        """Get a job by its job_id"""
        cursor = await self._conn.execute(f"{_SELECT_JOB} WHERE job_id = ?", (job_id,))
        row = await cursor.fetchone()
        return GenerationJob.from_row(row) if row else None

    async def get_lease_candidates(self, queue_name: str, now_ms: int, limit: int = 5) -> List[GenerationJob]:
        """Eligible jobs: highest priority first, then oldest eligible timestamp."""
        cursor = await self._conn.execute(f"""
            {_SELECT_JOB}
            WHERE queue_name = ?
              AND state IN ('waiting', 'delayed')
              AND available_at <= ?
            ORDER BY priority DESC, available_at ASC, id ASC
            LIMIT ?
        """, (queue_name, now_ms, limit))
        rows = await cursor.fetchall()
        return [GenerationJob.from_row(row) for row in rows]

    async def find_live_by_dedupe_key(self, queue_name: str, dedupe_key: str) -> Optional[GenerationJob]:
        """A waiting/active/delayed job carrying this correlation key"""
        cursor = await self._conn.execute(f"""
            {_SELECT_JOB}
            WHERE queue_name = ? AND dedupe_key = ?
              AND state IN ('waiting', 'active', 'delayed')
            ORDER BY id ASC
            LIMIT 1
        """, (queue_name, dedupe_key))
        row = await cursor.fetchone()
        return GenerationJob.from_row(row) if row else None

    async def list_jobs(
        self,
        queue_name: str,
        states: Iterable[JobState],
        limit: Optional[int] = None
    ) -> List[GenerationJob]:
        """Jobs in the given states, newest first"""
        state_values = [s.value for s in states]
        placeholders = ", ".join("?" for _ in state_values)
        sql = f"""
            {_SELECT_JOB}
            WHERE queue_name = ? AND state IN ({placeholders})
            ORDER BY created_at DESC, id DESC
        """
        params: List[Any] = [queue_name, *state_values]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [GenerationJob.from_row(row) for row in rows]

    async def count_by_state(self, queue_name: str) -> Dict[str, int]:
        """Per-state job counts for a queue"""
        counts = {state.value: 0 for state in JobState}
        cursor = await self._conn.execute("""
            SELECT state, COUNT(*) FROM generation_jobs
            WHERE queue_name = ?
            GROUP BY state
        """, (queue_name,))
        for state, count in await cursor.fetchall():
            counts[state] = count
        return counts

    async def get_stalled_jobs(self, cutoff_ms: int) -> List[GenerationJob]:
        """Active jobs whose lease started before the cutoff"""
        cursor = await self._conn.execute(f"""
            {_SELECT_JOB}
            WHERE state = 'active' AND started_at < ?
        """, (cutoff_ms,))
        rows = await cursor.fetchall()
        return [GenerationJob.from_row(row) for row in rows]

    # =========================================================================
    # State Transitions (compare-and-set)
    # =========================================================================

    async def claim(self, job_id: str, lease_token: str, now_ms: int) -> bool:
        """Move an eligible waiting/delayed job to active under a new lease."""
        cursor = await self._conn.execute("""
            UPDATE generation_jobs
            SET state = 'active',
                lease_token = ?,
                started_at = ?,
                progress = 0
            WHERE job_id = ?
              AND state IN ('waiting', 'delayed')
              AND available_at <= ?
        """, (lease_token, now_ms, job_id, now_ms))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def mark_completed(
        self,
        job_id: str,
        lease_token: str,
        result: Optional[Dict[str, Any]],
        now_ms: int
    ) -> bool:
        """Mark an active job completed with its result"""
        cursor = await self._conn.execute("""
            UPDATE generation_jobs
            SET state = 'completed',
                result = ?,
                finished_at = ?,
                progress = 100,
                lease_token = NULL
            WHERE job_id = ? AND state = 'active' AND lease_token = ?
        """, (
            json.dumps(result) if result is not None else None,
            now_ms,
            job_id,
            lease_token,
        ))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def reschedule(
        self,
        job_id: str,
        lease_token: str,
        attempt_count: int,
        available_at: int,
        delay_ms: int,
        error_message: str
    ) -> bool:
        """Put an active job back into delayed for a retry"""
        cursor = await self._conn.execute("""
            UPDATE generation_jobs
            SET state = 'delayed',
                attempt_count = ?,
                available_at = ?,
                last_delay_ms = ?,
                error_message = ?,
                lease_token = NULL,
                progress = 0
            WHERE job_id = ? AND state = 'active' AND lease_token = ?
        """, (attempt_count, available_at, delay_ms, error_message, job_id, lease_token))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def mark_failed(
        self,
        job_id: str,
        lease_token: Optional[str],
        attempt_count: int,
        error_message: str,
        now_ms: int
    ) -> bool:
        """Mark a job permanently failed. lease_token None skips the lease check."""
        sql = """
            UPDATE generation_jobs
            SET state = 'failed',
                attempt_count = ?,
                error_message = ?,
                finished_at = ?,
                lease_token = NULL
            WHERE job_id = ? AND state = 'active'
        """
        params: List[Any] = [attempt_count, error_message, now_ms, job_id]
        if lease_token is not None:
            sql += " AND lease_token = ?"
            params.append(lease_token)
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount == 1

    async def requeue(
        self,
        job_id: str,
        from_state: JobState,
        now_ms: int,
        attempt_count: Optional[int] = None,
        error_message: Optional[str] = None
    ) -> bool:
        """Move a job from from_state back to waiting, eligible immediately"""
        sql = """
            UPDATE generation_jobs
            SET state = 'waiting',
                available_at = ?,
                lease_token = NULL,
                finished_at = NULL,
                progress = 0
        """
        params: List[Any] = [now_ms]
        if attempt_count is not None:
            sql += ", attempt_count = ?"
            params.append(attempt_count)
        if error_message is not None:
            sql += ", error_message = ?"
            params.append(error_message)
        sql += " WHERE job_id = ? AND state = ?"
        params.extend([job_id, from_state.value])
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount == 1

    async def update_progress(self, job_id: str, lease_token: str, progress: int) -> bool:
        """Record handler progress for an active job"""
        cursor = await self._conn.execute("""
            UPDATE generation_jobs
            SET progress = ?
            WHERE job_id = ? AND state = 'active' AND lease_token = ?
        """, (progress, job_id, lease_token))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def lease_is_current(self, job_id: str, lease_token: str) -> bool:
        cursor = await self._conn.execute("""
            SELECT 1 FROM generation_jobs
            WHERE job_id = ? AND state = 'active' AND lease_token = ?
        """, (job_id, lease_token))
        return await cursor.fetchone() is not None

    # =========================================================================
    # Removal / Trimming
    # =========================================================================

    async def delete_job(self, job_id: str) -> bool:
        cursor = await self._conn.execute(
            "DELETE FROM generation_jobs WHERE job_id = ?", (job_id,)
        )
        await self._conn.commit()
        return cursor.rowcount == 1

    async def delete_by_states(self, queue_name: str, states: Iterable[JobState]) -> int:
        """Delete every job of a queue in the given states. Returns the count."""
        state_values = [s.value for s in states]
        placeholders = ", ".join("?" for _ in state_values)
        cursor = await self._conn.execute(f"""
            DELETE FROM generation_jobs
            WHERE queue_name = ? AND state IN ({placeholders})
        """, (queue_name, *state_values))
        await self._conn.commit()
        return cursor.rowcount

    async def delete_finished_before(self, queue_name: str, state: JobState, cutoff_ms: int) -> int:
        """Remove terminal jobs that finished before the cutoff"""
        cursor = await self._conn.execute("""
            DELETE FROM generation_jobs
            WHERE queue_name = ? AND state = ? AND finished_at < ?
        """, (queue_name, state.value, cutoff_ms))
        await self._conn.commit()
        return cursor.rowcount

    async def delete_finished_beyond(self, queue_name: str, state: JobState, keep: int) -> int:
        """Keep only the `keep` most recently finished jobs in a terminal state"""
        cursor = await self._conn.execute("""
            DELETE FROM generation_jobs
            WHERE queue_name = ? AND state = ?
              AND id NOT IN (
                  SELECT id FROM generation_jobs
                  WHERE queue_name = ? AND state = ?
                  ORDER BY finished_at DESC, id DESC
                  LIMIT ?
              )
        """, (queue_name, state.value, queue_name, state.value, keep))
        await self._conn.commit()
        return cursor.rowcount

    # =========================================================================
    # Queue Configuration Rows
    # =========================================================================

    async def get_queue_config(self, queue_name: str) -> Optional[Dict[str, Any]]:
        cursor = await self._conn.execute("""
            SELECT queue_name, attempts, backoff_delay_ms,
                   rate_limit_retry_seconds, max_backoff_minutes,
                   created_at, updated_at
            FROM queue_configs
            WHERE queue_name = ?
        """, (queue_name,))
        row = await cursor.fetchone()
        if not row:
            return None
        return {
            "queue_name": row[0],
            "attempts": row[1],
            "backoff_delay_ms": row[2],
            "rate_limit_retry_seconds": row[3],
            "max_backoff_minutes": row[4],
            "created_at": row[5],
            "updated_at": row[6],
        }

    async def insert_queue_config_if_absent(self, queue_name: str, values: Dict[str, int], now_iso: str) -> bool:
        """Insert the row unless one exists. Returns True if this call created it."""
        cursor = await self._conn.execute("""
            INSERT OR IGNORE INTO queue_configs
            (queue_name, attempts, backoff_delay_ms, rate_limit_retry_seconds,
             max_backoff_minutes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            queue_name,
            values["attempts"],
            values["backoff_delay_ms"],
            values["rate_limit_retry_seconds"],
            values["max_backoff_minutes"],
            now_iso,
            now_iso,
        ))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def update_queue_config(self, queue_name: str, fields: Dict[str, int], now_iso: str) -> bool:
        """Apply validated field updates in one statement"""
        updates = [f"{name} = ?" for name in fields if name in QUEUE_CONFIG_FIELDS]
        values: List[Any] = [fields[name] for name in fields if name in QUEUE_CONFIG_FIELDS]
        updates.append("updated_at = ?")
        values.extend([now_iso, queue_name])

        cursor = await self._conn.execute(f"""
            UPDATE queue_configs
            SET {', '.join(updates)}
            WHERE queue_name = ?
        """, values)
        await self._conn.commit()
        return cursor.rowcount == 1

    async def count_queue_config_rows(self, queue_name: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM queue_configs WHERE queue_name = ?", (queue_name,)
        )
        return (await cursor.fetchone())[0]

    # =========================================================================
    # Quiz Generation Settings Row
    # =========================================================================

    async def get_quiz_settings(self, settings_id: str) -> Optional[Dict[str, Any]]:
        columns = (*QUIZ_SETTINGS_FIELDS, "created_at", "updated_at")
        cursor = await self._conn.execute(f"""
            SELECT {', '.join(columns)}
            FROM quiz_generation_settings
            WHERE settings_id = ?
        """, (settings_id,))
        row = await cursor.fetchone()
        return dict(zip(columns, row)) if row else None

    async def insert_quiz_settings_if_absent(self, settings_id: str, values: Dict[str, int], now_iso: str) -> bool:
        """Insert the row unless one exists. Returns True if this call created it."""
        cursor = await self._conn.execute(f"""
            INSERT OR IGNORE INTO quiz_generation_settings
            (settings_id, {', '.join(QUIZ_SETTINGS_FIELDS)}, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (settings_id, *(values[name] for name in QUIZ_SETTINGS_FIELDS), now_iso, now_iso))
        await self._conn.commit()
        return cursor.rowcount == 1

    async def update_quiz_settings(self, settings_id: str, fields: Dict[str, int], now_iso: str) -> bool:
        updates = [f"{name} = ?" for name in fields if name in QUIZ_SETTINGS_FIELDS]
        values: List[Any] = [fields[name] for name in fields if name in QUIZ_SETTINGS_FIELDS]
        updates.append("updated_at = ?")
        values.extend([now_iso, settings_id])

        cursor = await self._conn.execute(f"""
            UPDATE quiz_generation_settings
            SET {', '.join(updates)}
            WHERE settings_id = ?
        """, values)
        await self._conn.commit()
        return cursor.rowcount == 1

    async def close(self):
        """Close database connection"""
        if self._conn:
            await self._conn.close()
            self._conn = None
