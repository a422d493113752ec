"""Job lifecycle: creation, seeding with URLs, starting, cancelling and status."""

from __future__ import annotations

import logging
import sqlite3
import threading

from cachewarmer.batch import enqueue_urls
from cachewarmer.models import (
    Crawler,
    Job,
    JobOptions,
    JobStatus,
    TaskStatus,
    to_db_time,
    utc_now,
)
from cachewarmer.queue import cleanup_stuck_jobs
from cachewarmer.store import JobNotFoundError
from cachewarmer.store import create_job as store_create_job
from cachewarmer.store import get_job
from cachewarmer.worker import WorkerPool

logger = logging.getLogger(__name__)

_STARTABLE = (JobStatus.PENDING, JobStatus.RUNNING)
_CANCELLABLE = (JobStatus.RUNNING, JobStatus.PENDING, JobStatus.PAUSED)


class JobStateError(RuntimeError):
    """Raised when a job's status does not allow the requested transition."""

    def __init__(self, action: str, status: JobStatus):
        super().__init__(f"job cannot be {action}: {status.value}")
        self.action = action
        self.status = status


class JobManager:
    """Creates jobs, feeds them URLs and moves them through their lifecycle."""

    def __init__(self, db: sqlite3.Connection, crawler: Crawler, worker_pool: WorkerPool):
        self.db = db
        self.crawler = crawler
        self.worker_pool = worker_pool
        self.sitemap_threads: list[threading.Thread] = []

    def _enqueue_manual(self, job_id: str, urls: list[str], label: str) -> None:
        try:
            enqueue_urls(self.db, job_id, urls, "manual", "", 0)
        except Exception as exc:
            logger.error("failed to enqueue %s for job %s: %s", label, job_id, exc)

    def create_job(self, options: JobOptions) -> Job:
        """Create a job and seed it with start URLs, its sitemap or its root URL.

        Sitemap discovery runs in a background thread kept in ``sitemap_threads``.
        """
        job = store_create_job(self.db, options)
        logger.debug(
            "created job %s for %s (use_sitemap=%s find_links=%s max_depth=%d)",
            job.id,
            job.domain,
            options.use_sitemap,
            options.find_links,
            options.max_depth,
        )

        if options.start_urls:
            self._enqueue_manual(job.id, list(options.start_urls), "start URLs")
        elif options.use_sitemap:
            thread = threading.Thread(
                target=self.process_sitemap,
                args=(
                    job.id,
                    options.domain,
                    list(options.include_paths),
                    list(options.exclude_paths),
                ),
                name=f"sitemap-{job.id}",
                daemon=True,
            )
            self.sitemap_threads.append(thread)
            thread.start()
        else:
            self._enqueue_manual(job.id, [f"https://{options.domain}"], "root URL")
        return job

    def start_job(self, job_id: str) -> Job:
        """Mark a pending or running job as running and hand it to the worker pool.

        Tasks left running are put back to pending with one more retry counted.
        """
        job = get_job(self.db, job_id)
        if job.status not in _STARTABLE:
            raise JobStateError("started", job.status)

        job.status = JobStatus.RUNNING
        if job.started_at is None:
            job.started_at = utc_now()

        try:
            with self.db:
                self.db.execute(
                    """
                    UPDATE tasks
                    SET status = ?, started_at = NULL, retry_count = retry_count + 1
                    WHERE job_id = ? AND status = ?
                    """,
                    (TaskStatus.PENDING.value, job_id, TaskStatus.RUNNING.value),
                )
        except sqlite3.Error as exc:
            logger.error("failed to reset in-progress tasks of job %s: %s", job_id, exc)

        with self.db:
            self.db.execute(
                "UPDATE jobs SET status = ?, started_at = ? WHERE id = ?",
                (job.status.value, to_db_time(job.started_at), job.id),
            )

        self.worker_pool.add_job(job.id, None)
        logger.debug("started job %s for %s", job.id, job.domain)
        return job

    def cancel_job(self, job_id: str) -> Job:
        """Cancel a pending, running or paused job and skip its pending tasks."""
        job = get_job(self.db, job_id)
        if job.status not in _CANCELLABLE:
            raise JobStateError("canceled", job.status)

        job.status = JobStatus.CANCELLED
        job.completed_at = utc_now()

        try:
            with self.db:
                self.db.execute(
                    "UPDATE jobs SET status = ?, completed_at = ? WHERE id = ?",
                    (job.status.value, to_db_time(job.completed_at), job.id),
                )
        except sqlite3.Error as exc:
            logger.error("failed to mark job %s cancelled: %s", job.id, exc)

        self.worker_pool.remove_job(job.id)

        try:
            with self.db:
                self.db.execute(
                    "UPDATE tasks SET status = ? WHERE job_id = ? AND status = ?",
                    (TaskStatus.SKIPPED.value, job.id, TaskStatus.PENDING.value),
                )
        except sqlite3.Error as exc:
            logger.error("failed to cancel pending tasks of job %s: %s", job.id, exc)

        logger.debug("cancelled job %s for %s", job.id, job.domain)
        return job

    def get_job_status(self, job_id: str) -> Job:
        """Fix stuck jobs, then return the current state of a job."""
        try:
            cleanup_stuck_jobs(self.db)
        except Exception as exc:
            logger.error("failed to cleanup stuck jobs during status check: %s", exc)
        return get_job(self.db, job_id)

    def _set_error_message(self, job_id: str, message: str) -> None:
        try:
            with self.db:
                self.db.execute(
                    "UPDATE jobs SET error_message = ? WHERE id = ?", (message, job_id)
                )
        except sqlite3.Error as exc:
            logger.error("failed to record error for job %s: %s", job_id, exc)

    def process_sitemap(
        self,
        job_id: str,
        domain: str,
        include_paths: list[str],
        exclude_paths: list[str],
    ) -> list[str]:
        """Queue the pages listed in a domain's sitemaps, then start the job if pending.

        Returns the URLs that were queued.
        """
        logger.info("starting sitemap processing for job %s (%s)", job_id, domain)
        base_url = f"https://{domain}"

        try:
            sitemaps = self.crawler.discover_sitemaps(base_url)
        except Exception as exc:
            logger.error("failed to discover sitemaps for %s: %s", domain, exc)
            self._set_error_message(job_id, f"Failed to discover sitemaps: {exc}")
            return []

        urls: list[str] = []
        for sitemap_url in sitemaps:
            try:
                urls.extend(self.crawler.parse_sitemap(sitemap_url))
            except Exception as exc:
                logger.error("failed to parse sitemap %s: %s", sitemap_url, exc)

        if include_paths or exclude_paths:
            urls = self.crawler.filter_urls(urls, include_paths, exclude_paths)

        if urls:
            try:
                enqueue_urls(self.db, job_id, urls, "sitemap", base_url, 0)
            except Exception as exc:
                logger.error("failed to enqueue sitemap URLs for job %s: %s", job_id, exc)
                return []
            logger.debug("added %d sitemap URLs to job %s", len(urls), job_id)
        else:
            logger.info("no URLs found in sitemap for job %s (%s)", job_id, domain)
            self._set_error_message(job_id, "No URLs found in sitemap")

        try:
            job = get_job(self.db, job_id)
        except JobNotFoundError:
            return urls
        if job.status is JobStatus.PENDING:
            try:
                self.start_job(job_id)
            except Exception as exc:
                logger.error("failed to start job %s after processing sitemap: %s", job_id, exc)
        return urls

    def update_job_status(self, job: Job) -> bool:
        """Complete a job whose tasks have all finished; return whether it was completed."""
        if job.completed_tasks + job.failed_tasks != job.total_tasks:
            return False
        job.status = JobStatus.COMPLETED
        job.completed_at = utc_now()
        job.progress = 100.0
        with self.db:
            self.db.execute(
                """
                UPDATE jobs
                SET status = ?, completed_at = ?, progress = ?,
                    completed_tasks = ?, failed_tasks = ?
                WHERE id = ?
                """,
                (
                    job.status.value,
                    to_db_time(job.completed_at),
                    job.progress,
                    job.completed_tasks,
                    job.failed_tasks,
                    job.id,
                ),
            )
        return True