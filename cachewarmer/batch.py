"""Bulk task insertion and batched write-back of finished tasks."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from cachewarmer.models import (
    CrawlResultData,
    JobStatus,
    Task,
    TaskStatus,
    _new_id,
    to_db_time,
    utc_now,
)
from cachewarmer.queue import (
    batch_insert_crawl_results,
    execute_in_queue,
    filter_tasks_by_status,
)
from cachewarmer.store import JobNotFoundError

logger = logging.getLogger(__name__)

BATCH_FLUSH_SIZE = 50
ENQUEUE_BATCH_SIZE = 500


@dataclass
class JobCounts:
    """Finished-task tallies for one job within a batch."""

    completed: int = 0
    failed: int = 0


class TaskBatch:
    """Thread-safe collection of finished tasks awaiting a database flush."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: list[Task] = []
        self._job_counts: dict[str, JobCounts] = {}

    def add(self, task: Task) -> bool:
        """Queue a task; return True once the batch is large enough to flush."""
        with self._lock:
            self._tasks.append(task)
            counts = self._job_counts.setdefault(task.job_id, JobCounts())
            if task.status is TaskStatus.COMPLETED:
                counts.completed += 1
            elif task.status is TaskStatus.FAILED:
                counts.failed += 1
            return len(self._tasks) >= BATCH_FLUSH_SIZE

    def drain(self) -> tuple[list[Task], dict[str, JobCounts]]:
        """Take every queued task and the per-job counts, leaving the batch empty."""
        with self._lock:
            tasks, counts = self._tasks, self._job_counts
            self._tasks = []
            self._job_counts = {}
        return tasks, counts

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)


def enqueue_urls(
    db: sqlite3.Connection,
    job_id: str,
    urls: list[str],
    source_type: str,
    source_url: str,
    depth: int,
) -> None:
    """Add URLs as pending tasks of a job, in batches through the transaction queue.

    The job's total is raised by the full number of URLs first; empty URLs are
    not inserted. Raises :class:`JobNotFoundError` for an unknown job and
    ``ValueError`` when the job is neither pending nor running.
    """

    def reserve(tx: sqlite3.Connection) -> None:
        row = tx.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        status = row[0]
        if status not in (JobStatus.PENDING.value, JobStatus.RUNNING.value):
            raise ValueError(f"job is in invalid state: {status}")
        tx.execute(
            "UPDATE jobs SET total_tasks = total_tasks + ? WHERE id = ?",
            (len(urls), job_id),
        )

    execute_in_queue(reserve)

    for start in range(0, len(urls), ENQUEUE_BATCH_SIZE):
        batch = urls[start : start + ENQUEUE_BATCH_SIZE]

        def insert(tx: sqlite3.Connection, batch: list[str] = batch) -> None:
            now = to_db_time(utc_now())
            rows = [
                (
                    _new_id(),
                    job_id,
                    url,
                    TaskStatus.PENDING.value,
                    depth,
                    now,
                    0,
                    source_type,
                    source_url,
                )
                for url in batch
                if url
            ]
            if not rows:
                return
            tx.executemany(
                """
                INSERT INTO tasks (
                    id, job_id, url, status, depth, created_at, retry_count,
                    source_type, source_url
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

        try:
            execute_in_queue(insert)
        except Exception:
            try:
                execute_in_queue(
                    lambda tx, size=len(batch): tx.execute(
                        "UPDATE jobs SET total_tasks = total_tasks - ? WHERE id = ?",
                        (size, job_id),
                    )
                )
            except Exception as adjust_exc:
                logger.error("failed to adjust total_tasks after batch failure: %s", adjust_exc)
            raise


def _write_batch(
    tx: sqlite3.Connection, tasks: list[Task], job_counts: Mapping[str, JobCounts]
) -> None:
    started = time.perf_counter()
    for task in tasks:
        if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            if task.completed_at is None:
                task.completed_at = utc_now()
            tx.execute(
                "UPDATE tasks SET status = ?, completed_at = ?, error = ? WHERE id = ?",
                (task.status.value, to_db_time(task.completed_at), task.error, task.id),
            )
    logger.debug(
        "updated %d tasks in %.1f ms", len(tasks), (time.perf_counter() - started) * 1000
    )

    completed = filter_tasks_by_status(tasks, TaskStatus.COMPLETED)
    batch_insert_crawl_results(
        tx,
        (
            CrawlResultData(
                job_id=task.job_id,
                task_id=task.id,
                url=task.url,
                response_time=task.response_time,
                status_code=task.status_code,
                error=task.error,
                cache_status=task.cache_status,
                content_type=task.content_type,
            )
            for task in completed
        ),
    )

    for job_id, counts in job_counts.items():
        tx.execute(
            """
            UPDATE jobs
            SET
                completed_tasks = completed_tasks + ?,
                failed_tasks = failed_tasks + ?,
                progress = CAST(100.0 * (completed_tasks + failed_tasks) /
                           CASE WHEN total_tasks = 0 THEN 1 ELSE total_tasks END AS FLOAT)
            WHERE id = ?
            """,
            (counts.completed, counts.failed, job_id),
        )

    for job_id in job_counts:
        row = tx.execute(
            "SELECT total_tasks, completed_tasks, failed_tasks FROM jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        total, done, failed = row
        if total > 0 and done + failed >= total:
            tx.execute(
                """
                UPDATE jobs SET status = ?, completed_at = ?, progress = 100.0
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    to_db_time(utc_now()),
                    job_id,
                    JobStatus.RUNNING.value,
                ),
            )
            logger.debug(
                "job %s marked as completed: total=%d completed=%d failed=%d",
                job_id,
                total,
                done,
                failed,
            )


def flush_tasks(tasks: list[Task], job_counts: Mapping[str, JobCounts]) -> None:
    """Write finished tasks, their crawl results and job counters in one transaction."""
    if not tasks:
        return
    started = time.perf_counter()
    execute_in_queue(lambda tx: _write_batch(tx, tasks, job_counts))
    logger.debug(
        "flushed %d tasks for %d jobs in %.1f ms",
        len(tasks),
        len(job_counts),
        (time.perf_counter() - started) * 1000,
    )


def batch_update_tasks(tx: sqlite3.Connection, tasks: Iterable[Task]) -> None:
    """Store status, timestamps, error and retry count of each task."""
    tx.executemany(
        """
        UPDATE tasks
        SET status = ?, started_at = ?, completed_at = ?, error = ?, retry_count = ?
        WHERE id = ?
        """,
        [
            (
                task.status.value,
                to_db_time(task.started_at),
                to_db_time(task.completed_at),
                task.error,
                task.retry_count,
                task.id,
            )
            for task in tasks
        ],
    )