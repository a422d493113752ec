"""Serialised database transactions and the transactional job/task helpers."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from cachewarmer.models import (
    CrawlResultData,
    JobStatus,
    Task,
    TaskStatus,
    from_db_time,
    to_db_time,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_ATTEMPTS = 3
_RETRY_STEP = 0.2
_CONNECTION_ERROR_MARKERS = ("stream is closed", "bad connection")


class QueueNotInitializedError(RuntimeError):
    """Raised when work is queued before a queue has been installed."""

    def __init__(self) -> None:
        super().__init__("database instance not initialized")


class TransactionQueue:
    """Runs callables one at a time, each inside its own transaction."""

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection
        self._lock = threading.Lock()

    def execute(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` in a transaction; commit on success, roll back on error."""
        with self._lock:
            conn = self.connection
            if not conn.in_transaction:
                conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(conn)
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
            return result


_queue: TransactionQueue | None = None


def set_db_instance(instance: TransactionQueue | None) -> None:
    """Install the queue used by :func:`execute_in_queue`."""
    global _queue
    _queue = instance


def _is_connection_error(exc: BaseException) -> bool:
    message = str(exc)
    return any(marker in message for marker in _CONNECTION_ERROR_MARKERS)


def execute_in_queue(fn: Callable[[sqlite3.Connection], T]) -> T:
    """Run ``fn`` through the installed queue, retrying connection failures."""
    queue = _queue
    if queue is None:
        raise QueueNotInitializedError()
    for attempt in range(1, _MAX_ATTEMPTS):
        try:
            return queue.execute(fn)
        except Exception as exc:
            if not _is_connection_error(exc):
                raise
            logger.warning("database connection error (attempt %d), retrying: %s", attempt, exc)
            time.sleep(attempt * _RETRY_STEP)
    return queue.execute(fn)


def update_task_status_tx(tx: sqlite3.Connection, task: Task) -> None:
    """Store a task's status, timestamps, retry count and error."""
    now = utc_now()
    if task.status is TaskStatus.RUNNING and task.started_at is None:
        task.started_at = now
    if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED) and task.completed_at is None:
        task.completed_at = now
    tx.execute(
        """
        UPDATE tasks
        SET status = ?, started_at = ?, completed_at = ?, retry_count = ?, error = ?
        WHERE id = ?
        """,
        (
            task.status.value,
            to_db_time(task.started_at),
            to_db_time(task.completed_at),
            task.retry_count,
            task.error,
            task.id,
        ),
    )


def _count(tx: sqlite3.Connection, query: str, *params: Any) -> int:
    return tx.execute(query, params).fetchone()[0]


def update_job_progress_tx(tx: sqlite3.Connection, job_id: str) -> None:
    """Recount a job's tasks, store progress and complete it when all are done."""
    total = _count(tx, "SELECT COUNT(*) FROM tasks WHERE job_id = ?", job_id)
    completed = _count(
        tx,
        "SELECT COUNT(*) FROM tasks WHERE job_id = ? AND status = ?",
        job_id,
        TaskStatus.COMPLETED.value,
    )
    failed = _count(
        tx,
        "SELECT COUNT(*) FROM tasks WHERE job_id = ? AND status = ?",
        job_id,
        TaskStatus.FAILED.value,
    )
    progress = (completed + failed) / total * 100 if total > 0 else 0.0
    logger.debug(
        "job %s progress: total=%d completed=%d failed=%d", job_id, total, completed, failed
    )

    tx.execute(
        """
        UPDATE jobs SET progress = ?, total_tasks = ?, completed_tasks = ?, failed_tasks = ?
        WHERE id = ?
        """,
        (progress, total, completed, failed, job_id),
    )

    if total > 0 and completed + failed == total:
        tx.execute(
            "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ? AND status = ?",
            (
                JobStatus.COMPLETED.value,
                to_db_time(utc_now()),
                job_id,
                JobStatus.RUNNING.value,
            ),
        )


def _task_from_row(row: tuple) -> Task:
    (
        task_id,
        job_id,
        url,
        status,
        depth,
        created_at,
        started_at,
        completed_at,
        retry_count,
        error,
        source_type,
        source_url,
    ) = row
    return Task(
        id=task_id,
        job_id=job_id,
        url=url,
        status=TaskStatus(status),
        depth=depth,
        created_at=from_db_time(created_at) or utc_now(),
        started_at=from_db_time(started_at),
        completed_at=from_db_time(completed_at),
        retry_count=retry_count,
        error=error or "",
        source_type=source_type,
        source_url=source_url or "",
    )


def get_next_pending_task_tx(tx: sqlite3.Connection, job_id: str) -> Task | None:
    """Claim the next pending task of a job, or return None if there is none."""
    row = tx.execute(
        "SELECT id FROM tasks WHERE job_id = ? AND status = ? LIMIT 1",
        (job_id, TaskStatus.PENDING.value),
    ).fetchone()
    if row is None:
        return None
    task_id = row[0]

    tx.execute(
        "UPDATE tasks SET status = ?, started_at = ? WHERE id = ?",
        (TaskStatus.RUNNING.value, to_db_time(utc_now()), task_id),
    )

    full = tx.execute(
        """
        SELECT id, job_id, url, status, depth, created_at, started_at, completed_at,
               retry_count, error, source_type, source_url
        FROM tasks WHERE id = ?
        """,
        (task_id,),
    ).fetchone()
    return _task_from_row(full)


def batch_insert_crawl_results(
    tx: sqlite3.Connection, results: Iterable[CrawlResultData]
) -> None:
    """Insert crawl results into the crawl_results table."""
    rows = [
        (
            r.job_id,
            r.task_id,
            r.url,
            r.response_time,
            r.status_code,
            r.error,
            r.cache_status,
            r.content_type,
        )
        for r in results
    ]
    if not rows:
        return
    started = time.perf_counter()
    tx.executemany(
        """
        INSERT INTO crawl_results
            (job_id, task_id, url, response_time, status_code, error, cache_status, content_type)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    logger.debug(
        "batch inserted %d crawl results in %.1f ms",
        len(rows),
        (time.perf_counter() - started) * 1000,
    )


def update_job_counter(
    tx: sqlite3.Connection, job_id: str, completed_count: int, failed_count: int
) -> None:
    """Add to a job's counters, recompute progress and complete it when done."""
    if completed_count == 0 and failed_count == 0:
        return
    tx.execute(
        """
        UPDATE jobs
        SET
            completed_tasks = completed_tasks + ?,
            failed_tasks = failed_tasks + ?,
            progress = CAST(100.0 * (completed_tasks + ? + failed_tasks + ?) /
                       CASE WHEN total_tasks = 0 THEN 1 ELSE total_tasks END AS FLOAT),
            status = CASE
                WHEN (completed_tasks + ? + failed_tasks + ?) >= total_tasks AND total_tasks > 0
                THEN ? ELSE status END,
            completed_at = CASE
                WHEN (completed_tasks + ? + failed_tasks + ?) >= total_tasks AND total_tasks > 0
                THEN ? ELSE completed_at END
        WHERE id = ?
        """,
        (
            completed_count,
            failed_count,
            completed_count,
            failed_count,
            completed_count,
            failed_count,
            JobStatus.COMPLETED.value,
            completed_count,
            failed_count,
            to_db_time(utc_now()),
            job_id,
        ),
    )
    logger.debug(
        "updated job %s counters: completed+%d failed+%d", job_id, completed_count, failed_count
    )


def filter_tasks_by_status(tasks: Iterable[Task], status: TaskStatus) -> list[Task]:
    """Tasks that have the given status, in their original order."""
    return [task for task in tasks if task.status is status]


def cleanup_stuck_jobs(db: sqlite3.Connection) -> int:
    """Complete pending/running jobs whose tasks have all finished.

    Returns the number of jobs fixed.
    """
    with db:
        cursor = db.execute(
            """
            UPDATE jobs
            SET status = ?, completed_at = COALESCE(completed_at, ?), progress = 100.0
            WHERE (status = ? OR status = ?)
              AND total_tasks > 0
              AND total_tasks = completed_tasks + failed_tasks
            """,
            (
                JobStatus.COMPLETED.value,
                to_db_time(utc_now()),
                JobStatus.PENDING.value,
                JobStatus.RUNNING.value,
            ),
        )
    fixed = cursor.rowcount
    if fixed > 0:
        logger.info("fixed %d stuck jobs", fixed)
    return fixed