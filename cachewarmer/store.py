"""SQLite persistence for jobs and tasks, with retries on lock contention."""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import time
from collections.abc import Callable
from typing import Any, TypeVar

from cachewarmer.models import (
    Job,
    JobOptions,
    JobStatus,
    Task,
    TaskStatus,
    from_db_time,
    to_db_time,
    utc_now,
)
from cachewarmer.queue import execute_in_queue, get_next_pending_task_tx

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRIES = 5
_BASE_BACKOFF = 0.2
_LOCK_MARKERS = ("database is locked", "busy")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        domain TEXT NOT NULL,
        status TEXT NOT NULL,
        progress REAL NOT NULL,
        total_tasks INTEGER NOT NULL,
        completed_tasks INTEGER NOT NULL,
        failed_tasks INTEGER NOT NULL,
        created_at DATETIME NOT NULL,
        started_at DATETIME,
        completed_at DATETIME,
        concurrency INTEGER NOT NULL,
        find_links BOOLEAN NOT NULL,
        max_depth INTEGER NOT NULL DEFAULT 0,
        include_paths TEXT,
        exclude_paths TEXT,
        error_message TEXT,
        required_workers INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        url TEXT NOT NULL,
        status TEXT NOT NULL,
        depth INTEGER NOT NULL,
        created_at DATETIME NOT NULL,
        started_at DATETIME,
        completed_at DATETIME,
        retry_count INTEGER NOT NULL,
        error TEXT,
        status_code INTEGER,
        response_time INTEGER,
        cache_status TEXT,
        content_type TEXT,
        source_type TEXT NOT NULL,
        source_url TEXT,
        FOREIGN KEY (job_id) REFERENCES jobs(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crawl_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL,
        task_id TEXT NOT NULL,
        url TEXT NOT NULL,
        response_time INTEGER,
        status_code INTEGER,
        error TEXT,
        cache_status TEXT,
        content_type TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_job_id ON tasks(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
)

_JOB_COLUMNS = """
    id, domain, status, progress, total_tasks, completed_tasks, failed_tasks,
    created_at, started_at, completed_at, concurrency, find_links, max_depth,
    include_paths, exclude_paths, error_message, required_workers
"""


class JobNotFoundError(LookupError):
    """Raised when no job has the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


def init_schema(db: sqlite3.Connection) -> None:
    """Create the jobs, tasks and crawl_results tables and their indexes."""
    with db:
        for statement in _SCHEMA:
            db.execute(statement)


def serialize(value: Any) -> str:
    """Compact JSON for a value; ``"{}"`` if it cannot be encoded."""
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        logger.error("failed to serialize data: %s", exc)
        return "{}"


def _is_lock_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(marker in message for marker in _LOCK_MARKERS)


def retry_db(operation: Callable[[], T]) -> T:
    """Run ``operation``, retrying with exponential backoff while the database is locked."""
    for attempt in range(_MAX_RETRIES + 1):
        try:
            return operation()
        except Exception as exc:
            if not _is_lock_error(exc) or attempt == _MAX_RETRIES:
                raise
            backoff = _BASE_BACKOFF * (1 << attempt)
            delay = backoff + random.uniform(0, backoff / 2)
            logger.warning(
                "database locked (attempt %d), retrying in %.3f s: %s", attempt + 1, delay, exc
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def _decode_paths(raw: Any, label: str) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"failed to unmarshal {label}: {exc}") from exc
    return list(value) if value else []


def _job_from_row(row: tuple) -> Job:
    (
        job_id,
        domain,
        status,
        progress,
        total_tasks,
        completed_tasks,
        failed_tasks,
        created_at,
        started_at,
        completed_at,
        concurrency,
        find_links,
        max_depth,
        include_paths,
        exclude_paths,
        error_message,
        required_workers,
    ) = row
    return Job(
        id=job_id,
        domain=domain,
        status=JobStatus(status),
        progress=float(progress),
        total_tasks=total_tasks,
        completed_tasks=completed_tasks,
        failed_tasks=failed_tasks,
        created_at=from_db_time(created_at) or utc_now(),
        started_at=from_db_time(started_at),
        completed_at=from_db_time(completed_at),
        concurrency=concurrency,
        find_links=bool(find_links),
        max_depth=max_depth or 0,
        include_paths=_decode_paths(include_paths, "include paths"),
        exclude_paths=_decode_paths(exclude_paths, "exclude paths"),
        error_message=error_message or "",
        required_workers=required_workers or 0,
    )


def create_job(db: sqlite3.Connection, options: JobOptions) -> Job:
    """Insert a new pending job built from ``options`` and return it."""
    job = Job(
        domain=options.domain,
        concurrency=options.concurrency,
        find_links=options.find_links,
        max_depth=options.max_depth,
        include_paths=list(options.include_paths),
        exclude_paths=list(options.exclude_paths),
        required_workers=options.required_workers,
    )

    def insert() -> None:
        with db:
            db.execute(
                """
                INSERT INTO jobs (
                    id, domain, status, progress, total_tasks, completed_tasks, failed_tasks,
                    created_at, concurrency, find_links, max_depth, include_paths,
                    exclude_paths, required_workers
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.domain,
                    job.status.value,
                    job.progress,
                    job.total_tasks,
                    job.completed_tasks,
                    job.failed_tasks,
                    to_db_time(job.created_at),
                    job.concurrency,
                    job.find_links,
                    job.max_depth,
                    serialize(job.include_paths),
                    serialize(job.exclude_paths),
                    job.required_workers,
                ),
            )

    retry_db(insert)
    return job


def create_task(db: sqlite3.Connection, task: Task) -> None:
    """Insert a task row."""

    def insert() -> None:
        with db:
            db.execute(
                """
                INSERT INTO tasks (
                    id, job_id, url, status, depth, created_at, started_at, completed_at,
                    retry_count, error, source_type, source_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.job_id,
                    task.url,
                    task.status.value,
                    task.depth,
                    to_db_time(task.created_at),
                    to_db_time(task.started_at),
                    to_db_time(task.completed_at),
                    task.retry_count,
                    task.error,
                    task.source_type,
                    task.source_url,
                ),
            )

    retry_db(insert)


def get_job(db: sqlite3.Connection, job_id: str) -> Job:
    """Load a job by id; raise :class:`JobNotFoundError` if it does not exist."""
    row = retry_db(
        lambda: db.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        ).fetchone()
    )
    if row is None:
        raise JobNotFoundError(job_id)
    return _job_from_row(row)


def get_next_pending_task(db: sqlite3.Connection, job_id: str) -> Task | None:
    """Claim the next pending task of a job through the shared transaction queue."""
    return execute_in_queue(lambda tx: get_next_pending_task_tx(tx, job_id))


def update_task_status(db: sqlite3.Connection, task: Task) -> None:
    """Persist a task's status, stamping start or completion time as it applies."""
    now = utc_now()

    def update() -> None:
        with db:
            if task.status is TaskStatus.RUNNING:
                task.started_at = now
                db.execute(
                    "UPDATE tasks SET status = ?, started_at = ? WHERE id = ?",
                    (task.status.value, to_db_time(task.started_at), task.id),
                )
            elif task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                task.completed_at = now
                db.execute(
                    """
                    UPDATE tasks
                    SET status = ?, completed_at = ?, error = ?, retry_count = ?
                    WHERE id = ?
                    """,
                    (
                        task.status.value,
                        to_db_time(task.completed_at),
                        task.error,
                        task.retry_count,
                        task.id,
                    ),
                )
            else:
                db.execute(
                    "UPDATE tasks SET status = ? WHERE id = ?", (task.status.value, task.id)
                )

    try:
        retry_db(update)
    except Exception:
        logger.error("failed to update task %s to %s", task.id, task.status.value)
        raise


def _scalar(db: sqlite3.Connection, query: str, *params: Any) -> int:
    return db.execute(query, params).fetchone()[0]


def update_job_progress(db: sqlite3.Connection, job_id: str) -> None:
    """Recount a job's tasks and complete it once no unfinished task remains."""

    def update() -> None:
        with db:
            total = _scalar(db, "SELECT COUNT(*) FROM tasks WHERE job_id = ?", job_id)
            completed = _scalar(
                db,
                "SELECT COUNT(*) FROM tasks WHERE job_id = ? AND status = ?",
                job_id,
                TaskStatus.COMPLETED.value,
            )
            failed = _scalar(
                db,
                "SELECT COUNT(*) FROM tasks WHERE job_id = ? AND status = ?",
                job_id,
                TaskStatus.FAILED.value,
            )
            progress = (completed + failed) / total * 100 if total > 0 else 0.0
            db.execute(
                """
                UPDATE jobs
                SET progress = ?, total_tasks = ?, completed_tasks = ?, failed_tasks = ?
                WHERE id = ?
                """,
                (progress, total, completed, failed, job_id),
            )
            unfinished = _scalar(
                db,
                "SELECT COUNT(*) FROM tasks WHERE job_id = ? AND status NOT IN (?, ?, ?)",
                job_id,
                TaskStatus.COMPLETED.value,
                TaskStatus.FAILED.value,
                TaskStatus.SKIPPED.value,
            )
            if unfinished == 0 and total > 0:
                db.execute(
                    "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ? AND status = ?",
                    (
                        JobStatus.COMPLETED.value,
                        to_db_time(utc_now()),
                        job_id,
                        JobStatus.RUNNING.value,
                    ),
                )

    retry_db(update)


def list_jobs(db: sqlite3.Connection, limit: int, offset: int) -> list[Job]:
    """Jobs ordered newest first, paginated by ``limit`` and ``offset``."""
    rows = db.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY created_at DESC LIMIT ? OFFSET ?",
        (limit, offset),
    ).fetchall()
    return [_job_from_row(row) for row in rows]