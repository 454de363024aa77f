"""SQLite-backed persistence for job records."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiosqlite

from .exceptions import InvalidTransitionError
from .models import (
    ALLOWED_TRANSITIONS,
    GenerationOptions,
    JobRecord,
    JobStatus,
    TERMINAL_STATUSES,
    UserFileRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

# Columns stored as JSON text.
_JSON_COLUMNS = ("options", "progress", "outputs", "scenes", "scene_outputs", "manifest", "active_prediction")

_COLUMNS = (
    "job_id", "job_type", "owner_id", "status", "created_at", "started_at",
    "completed_at", "updated_at", "error", "cancel_requested",
    "current_scene_index", "regenerating_scene_index", "active_prediction_id",
) + _JSON_COLUMNS

Mutator = Callable[[JobRecord], Optional[Dict[str, Any]]]


class JobStore:
    """Async SQLite store for job lifecycle tracking.

    All writes go through :meth:`mutate`, which runs read-modify-write
    under one lock so concurrent writers never lose each other's fields.
    Terminal jobs are immutable unless the caller explicitly reopens them.
    """

    def __init__(self, db_path: str = "media_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the jobs and user_files tables if they don't exist."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                owner_id TEXT,
                status TEXT NOT NULL DEFAULT 'queued',
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT NOT NULL,
                error TEXT,
                cancel_requested INTEGER DEFAULT 0,
                current_scene_index INTEGER DEFAULT 0,
                regenerating_scene_index INTEGER,
                active_prediction_id TEXT,
                options TEXT NOT NULL,
                progress TEXT DEFAULT '{}',
                outputs TEXT DEFAULT '[]',
                scenes TEXT DEFAULT '[]',
                scene_outputs TEXT DEFAULT '[]',
                manifest TEXT DEFAULT '{}',
                active_prediction TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_prediction ON jobs (active_prediction_id)"
        )
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS user_files (
                file_id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT,
                job_id TEXT NOT NULL,
                file_url TEXT NOT NULL,
                file_type TEXT NOT NULL,
                file_size_bytes INTEGER,
                expires_at TEXT,
                created_at TEXT NOT NULL
            )
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── CRUD ─────────────────────────────────────────────────────────

    async def create_job(self, options: GenerationOptions) -> JobRecord:
        """Insert a new queued job and return its record."""
        if self._db is None:
            await self.initialize()
        rec = JobRecord(
            job_id=uuid.uuid4().hex[:12],
            job_type=options.type,
            options=options,
            owner_id=options.owner_id,
        )
        row = self._record_to_row(rec)
        placeholders = ",".join("?" for _ in _COLUMNS)
        async with self._lock:
            await self._db.execute(
                f"INSERT INTO jobs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                [row[c] for c in _COLUMNS],
            )
            await self._db.commit()
        return rec

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Fetch a single job by ID."""
        if self._db is None:
            await self.initialize()
        async with self._db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    async def list_jobs(self, limit: int = 50, status: Optional[JobStatus] = None) -> List[JobRecord]:
        """List jobs ordered by creation time (newest first)."""
        if self._db is None:
            await self.initialize()
        if status is None:
            sql, args = "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
        else:
            sql = "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?"
            args = (status.value, limit)
        async with self._db.execute(sql, args) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def list_unfinished(self) -> List[JobRecord]:
        """Every job not yet completed or failed, oldest first."""
        if self._db is None:
            await self.initialize()
        terminal = tuple(s.value for s in TERMINAL_STATUSES)
        async with self._db.execute(
            "SELECT * FROM jobs WHERE status NOT IN (?, ?) ORDER BY created_at ASC", terminal
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def find_by_prediction(self, prediction_id: str) -> Optional[JobRecord]:
        """Return the job whose active prediction is *prediction_id*."""
        if self._db is None:
            await self.initialize()
        async with self._db.execute(
            "SELECT * FROM jobs WHERE active_prediction_id = ? LIMIT 1", (prediction_id,)
        ) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    # ── Atomic updates ───────────────────────────────────────────────

    async def mutate(
        self,
        job_id: str,
        fn: Mutator,
        *,
        reopen: bool = False,
    ) -> Tuple[Optional[JobRecord], bool]:
        """Apply ``fn(current)``'s partial update atomically.

        Returns ``(record, changed)``.  ``changed`` is False when the job is
        missing, the mutator returned nothing, or the job is terminal and
        *reopen* was not requested.

        Raises
        ------
        InvalidTransitionError
            If the merged record breaks the status state machine or the
            outputs / error invariants.
        """
        if self._db is None:
            await self.initialize()
        async with self._lock:
            current = await self.get_job(job_id)
            if current is None:
                return None, False
            if current.is_terminal and not reopen:
                logger.debug("Ignoring write to terminal job %s (%s)", job_id, current.status.value)
                return current, False
            partial = fn(current.model_copy(deep=True))
            if not partial:
                return current, False

            merged = self._merge(current, partial, reopen=reopen)
            row = self._record_to_row(merged)
            sets = ", ".join(f"{c} = ?" for c in _COLUMNS if c != "job_id")
            vals = [row[c] for c in _COLUMNS if c != "job_id"] + [job_id]
            await self._db.execute(f"UPDATE jobs SET {sets} WHERE job_id = ?", vals)
            await self._db.commit()
            return merged, True

    async def update(
        self, job_id: str, partial: Dict[str, Any], *, reopen: bool = False
    ) -> Tuple[Optional[JobRecord], bool]:
        """Merge *partial* into the job (field-level last-writer-wins)."""
        return await self.mutate(job_id, lambda _rec: partial, reopen=reopen)

    # ── Retention records ────────────────────────────────────────────

    async def record_file(self, rec: UserFileRecord) -> UserFileRecord:
        if self._db is None:
            await self.initialize()
        async with self._lock:
            cur = await self._db.execute(
                "INSERT INTO user_files (owner_id, job_id, file_url, file_type, "
                "file_size_bytes, expires_at, created_at) VALUES (?,?,?,?,?,?,?)",
                (rec.owner_id, rec.job_id, rec.file_url, rec.file_type,
                 rec.file_size_bytes, rec.expires_at, rec.created_at),
            )
            await self._db.commit()
        return rec.model_copy(update={"file_id": cur.lastrowid})

    async def list_files(self, job_id: str) -> List[UserFileRecord]:
        if self._db is None:
            await self.initialize()
        async with self._db.execute(
            "SELECT * FROM user_files WHERE job_id = ? ORDER BY file_id", (job_id,)
        ) as cur:
            rows = await cur.fetchall()
            cols = [d[0] for d in cur.description]
        return [UserFileRecord(**dict(zip(cols, r))) for r in rows]

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _merge(current: JobRecord, partial: Dict[str, Any], *, reopen: bool) -> JobRecord:
        data = current.model_dump()
        data.update(partial)
        merged = JobRecord.model_validate(data)

        now = utcnow()
        if merged.status != current.status:
            if current.is_terminal:
                if not reopen or merged.status != JobStatus.running:
                    raise InvalidTransitionError(
                        f"Job {current.job_id} is {current.status.value}; "
                        f"cannot move to {merged.status.value}"
                    )
                merged.completed_at = None
            elif merged.status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Job {current.job_id}: {current.status.value} -> {merged.status.value} not allowed"
                )
            if merged.status == JobStatus.running and merged.started_at is None:
                merged.started_at = now
            if merged.status in TERMINAL_STATUSES:
                merged.completed_at = now

        if merged.status != JobStatus.failed:
            merged.error = None
        elif not merged.error:
            raise InvalidTransitionError(f"Job {current.job_id}: failed without an error message")
        if (merged.status == JobStatus.completed) != bool(merged.outputs):
            raise InvalidTransitionError(
                f"Job {current.job_id}: outputs must be non-empty exactly when completed"
            )
        if merged.active_prediction is not None and merged.status in TERMINAL_STATUSES:
            merged.active_prediction = None
        merged.updated_at = now
        return merged

    @staticmethod
    def _record_to_row(rec: JobRecord) -> Dict[str, Any]:
        d = rec.model_dump(mode="json")
        row = {c: d.get(c) for c in _COLUMNS if c not in _JSON_COLUMNS}
        row["cancel_requested"] = int(bool(d["cancel_requested"]))
        row["active_prediction_id"] = (
            rec.active_prediction.prediction_id if rec.active_prediction else None
        )
        for c in _JSON_COLUMNS:
            row[c] = json.dumps(d[c]) if d[c] is not None else None
        return row

    @staticmethod
    def _row_to_record(row, description) -> JobRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d.pop("active_prediction_id", None)
        for c in _JSON_COLUMNS:
            raw = d.get(c)
            d[c] = json.loads(raw) if raw else None
        d["cancel_requested"] = bool(d.get("cancel_requested"))
        for c, empty in (("progress", {}), ("outputs", []), ("scenes", []),
                         ("scene_outputs", []), ("manifest", {})):
            if d.get(c) is None:
                d[c] = empty
        return JobRecord(**d)
