"""A pool of worker threads that claim, warm and record crawl tasks."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable

from cachewarmer.batch import TaskBatch, flush_tasks
from cachewarmer.models import (
    MAX_TASK_RETRIES,
    TASK_STALE_TIMEOUT,
    Crawler,
    JobOptions,
    JobStatus,
    Task,
    TaskStatus,
    to_db_time,
    utc_now,
)
from cachewarmer.queue import cleanup_stuck_jobs, execute_in_queue
from cachewarmer.store import get_next_pending_task, update_task_status

logger = logging.getLogger(__name__)

_IDLE_WAIT = 0.1
_BETWEEN_TASKS = 0.2
_MAX_ERROR_SLEEP = 10.0
_ERROR_TRUNCATE = 20


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(getattr(exc, "reason", None), TimeoutError):
        return True
    return "timed out" in str(exc)


class WorkerPool:
    """Worker threads that process pending tasks of the jobs added to the pool."""

    def __init__(self, db: sqlite3.Connection, crawler: Crawler, num_workers: int):
        self.db = db
        self.crawler = crawler
        self.num_workers = num_workers
        self.base_worker_count = num_workers
        self.current_workers = num_workers
        self.recovery_interval = 60.0
        self.cleanup_interval = 60.0
        self.task_monitor_interval = 5.0
        self.batch_interval = 10.0

        self._jobs: dict[str, bool] = {}
        self._job_requirements: dict[str, int] = {}
        self._jobs_lock = threading.RLock()
        self._workers_lock = threading.RLock()
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()
        self._stop = threading.Event()
        self._running = False
        self.stopping = False
        self._active = 0
        self._idle = threading.Condition()
        self._batch = TaskBatch()

        self._spawn(self._process_batches, "batch-processor")

    def _spawn(self, target: Callable[..., None], name: str, *args: object) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads.append(thread)
        thread.start()
        return thread

    @property
    def active_jobs(self) -> list[str]:
        """Ids of the jobs this pool is working on."""
        with self._jobs_lock:
            return list(self._jobs)

    def start(self) -> None:
        """Launch the workers and the background monitors."""
        logger.info("starting worker pool with %d workers", self.num_workers)
        with self._workers_lock:
            self._running = True
            count = self.current_workers
        for worker_id in range(count):
            self._spawn(self._worker, f"worker-{worker_id}", worker_id)

        self._spawn(
            self._every, "recovery-monitor", self.recovery_interval, self.recover_stale_tasks
        )

        try:
            cleanup_stuck_jobs(self.db)
        except Exception as exc:
            logger.error("failed to perform initial job cleanup: %s", exc)

        self.start_task_monitor()
        self.start_cleanup_monitor()

    def stop(self) -> None:
        """Stop every thread, then write out whatever is still batched."""
        self.stopping = True
        logger.debug("stopping worker pool")
        self._stop.set()
        current = threading.current_thread()
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            if thread is not current:
                thread.join()
        self.flush_batches()
        logger.debug("worker pool stopped")

    def wait_for_jobs(self) -> None:
        """Block until no task is being processed."""
        with self._idle:
            self._idle.wait_for(lambda: self._active == 0)

    def _max_required(self) -> int:
        return max([self.base_worker_count, *self._job_requirements.values()])

    def add_job(self, job_id: str, options: JobOptions | None) -> None:
        """Start working on a job, scaling up if it asks for more workers."""
        with self._jobs_lock:
            self._jobs[job_id] = True
            required = self.base_worker_count
            if options is not None and options.required_workers > 0:
                required = options.required_workers
                self._job_requirements[job_id] = options.required_workers
            max_required = self._max_required()

        if max_required > self.current_workers:
            self.scale_workers(max_required)
        logger.debug("added job %s to worker pool (required workers %d)", job_id, required)

    def remove_job(self, job_id: str) -> None:
        """Stop working on a job and let surplus workers retire."""
        with self._jobs_lock:
            self._jobs.pop(job_id, None)
            self._job_requirements.pop(job_id, None)
            max_required = self._max_required()

        with self._workers_lock:
            if max_required < self.current_workers:
                logger.debug(
                    "scaling worker pool down from %d to %d", self.current_workers, max_required
                )
                self.current_workers = max_required
        logger.debug("removed job %s from worker pool", job_id)

    def scale_workers(self, target_workers: int) -> None:
        """Grow the pool to ``target_workers``; never shrinks it."""
        with self._workers_lock:
            if target_workers <= self.current_workers:
                return
            first_new = self.current_workers
            logger.debug(
                "scaling worker pool from %d to %d", self.current_workers, target_workers
            )
            self.current_workers = target_workers
            if self._running and not self._stop.is_set():
                for worker_id in range(first_new, target_workers):
                    self._spawn(self._worker, f"worker-{worker_id}", worker_id)

    def _worker(self, worker_id: int) -> None:
        consecutive_errors = 0
        while not self._stop.is_set():
            with self._workers_lock:
                if worker_id >= self.current_workers:
                    return
            try:
                self.process_next_task(worker_id)
            except Exception as exc:
                consecutive_errors += 1
                delay = min(0.1 * (1 << min(consecutive_errors, 6)), _MAX_ERROR_SLEEP)
                logger.error("worker %d failed to process task: %s", worker_id, exc)
                self._stop.wait(delay)
            else:
                consecutive_errors = 0
                self._stop.wait(_BETWEEN_TASKS)

    def process_next_task(self, worker_id: int) -> Task | None:
        """Claim and process one pending task from any active job.

        Returns the processed task, or None when no job had work.
        """
        active = self.active_jobs
        if not active:
            self._stop.wait(_IDLE_WAIT)
            return None

        for job_id in active:
            task = get_next_pending_task(self.db, job_id)
            if task is not None:
                return self.process_task(task, worker_id)

        self._stop.wait(_IDLE_WAIT)
        return None

    def process_task(self, task: Task, worker_id: int) -> Task:
        """Warm a task's URL and record the outcome.

        Timeouts put the task back to pending until it has used its retries;
        other failures mark it failed and re-raise. Successes are batched.
        """
        with self._idle:
            self._active += 1
        try:
            return self._run_task(task, worker_id)
        finally:
            with self._idle:
                self._active -= 1
                self._idle.notify_all()

    def _run_task(self, task: Task, worker_id: int) -> Task:
        started = time.perf_counter()
        logger.debug("worker %d picked task %s (%s)", worker_id, task.id, task.url)
        try:
            result = self.crawler.warm_url(task.url)
        except Exception as exc:
            if _is_timeout(exc) and task.retry_count < MAX_TASK_RETRIES:
                task.retry_count += 1
                task.status = TaskStatus.PENDING
                task.error = str(exc)
                update_task_status(self.db, task)
                return task
            task.status = TaskStatus.FAILED
            task.error = str(exc)
            try:
                update_task_status(self.db, task)
            except Exception as update_exc:
                logger.error("failed to update task %s status: %s", task.id, update_exc)
            raise

        task.status = TaskStatus.COMPLETED
        task.status_code = result.status_code
        task.response_time = result.response_time
        task.cache_status = result.cache_status
        task.content_type = result.content_type
        if result.error:
            task.error = f"Failed: {result.error[:_ERROR_TRUNCATE]}..."

        should_flush = self._batch.add(task)
        logger.debug(
            "worker %d queued task %s for batch (size %d) after %.1f ms",
            worker_id,
            task.id,
            len(self._batch),
            (time.perf_counter() - started) * 1000,
        )
        if should_flush:
            threading.Thread(target=self.flush_batches, daemon=True).start()
        return task

    def flush_batches(self) -> int:
        """Write all batched tasks to the database; return how many were written."""
        tasks, job_counts = self._batch.drain()
        if not tasks:
            return 0
        try:
            flush_tasks(tasks, job_counts)
        except Exception as exc:
            logger.error("failed to process batch of %d tasks: %s", len(tasks), exc)
            return 0
        return len(tasks)

    def _process_batches(self) -> None:
        while not self._stop.wait(self.batch_interval):
            self.flush_batches()

    def check_for_pending_tasks(self) -> list[str]:
        """Add jobs that have pending tasks to the pool; return the newly added ids."""
        rows = self.db.execute(
            "SELECT DISTINCT job_id FROM tasks WHERE status = ? LIMIT 100",
            (TaskStatus.PENDING.value,),
        ).fetchall()

        added: list[str] = []
        for (job_id,) in rows:
            with self._jobs_lock:
                active = self._jobs.get(job_id, False)
            if active:
                continue
            self.add_job(job_id, None)
            added.append(job_id)
            try:
                with self.db:
                    self.db.execute(
                        """
                        UPDATE jobs
                        SET status = ?,
                            started_at = CASE WHEN started_at IS NULL THEN ? ELSE started_at END
                        WHERE id = ? AND status = ?
                        """,
                        (
                            JobStatus.RUNNING.value,
                            to_db_time(utc_now()),
                            job_id,
                            JobStatus.PENDING.value,
                        ),
                    )
            except sqlite3.Error as exc:
                logger.error("failed to update status of job %s: %s", job_id, exc)
        return added

    def recover_stale_tasks(self) -> int:
        """Reset or fail tasks left running too long; return how many were handled."""

        def recover(tx: sqlite3.Connection) -> int:
            stale_before = to_db_time(utc_now() - TASK_STALE_TIMEOUT)
            rows = tx.execute(
                "SELECT id, retry_count FROM tasks WHERE status = ? AND started_at < ?",
                (TaskStatus.RUNNING.value, stale_before),
            ).fetchall()
            handled = 0
            for task_id, retry_count in rows:
                try:
                    if retry_count >= MAX_TASK_RETRIES:
                        tx.execute(
                            "UPDATE tasks SET status = ?, error = ?, completed_at = ? WHERE id = ?",
                            (
                                TaskStatus.FAILED.value,
                                "Max retries exceeded",
                                to_db_time(utc_now()),
                                task_id,
                            ),
                        )
                    else:
                        tx.execute(
                            """
                            UPDATE tasks
                            SET status = ?, started_at = NULL, retry_count = retry_count + 1
                            WHERE id = ?
                            """,
                            (TaskStatus.PENDING.value, task_id),
                        )
                except sqlite3.Error as exc:
                    logger.error("failed to update stale task %s: %s", task_id, exc)
                    continue
                handled += 1
            return handled

        return execute_in_queue(recover)

    def update_failed_task_count(self, job_id: str) -> None:
        """Add one to a job's failed-task counter."""
        with self.db:
            self.db.execute(
                "UPDATE jobs SET failed_tasks = failed_tasks + 1 WHERE id = ?", (job_id,)
            )

    def _every(self, interval: float, action: Callable[[], object]) -> None:
        while not self._stop.wait(interval):
            try:
                action()
            except Exception as exc:
                logger.error("background %s failed: %s", getattr(action, "__name__", action), exc)

    def start_task_monitor(self) -> None:
        """Periodically pick up jobs that have pending tasks."""
        self._spawn(
            self._every, "task-monitor", self.task_monitor_interval, self.check_for_pending_tasks
        )
        logger.info("task monitor started")

    def start_cleanup_monitor(self) -> None:
        """Periodically complete jobs whose tasks have all finished."""
        self._spawn(
            self._every,
            "cleanup-monitor",
            self.cleanup_interval,
            lambda: cleanup_stuck_jobs(self.db),
        )
        logger.info("job cleanup monitor started")