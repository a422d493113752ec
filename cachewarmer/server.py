"""HTTP service that starts sitemap crawls, reports on jobs and warms single URLs."""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sqlite3
import sys
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import Any
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from cachewarmer.models import Crawler, _new_id, to_db_time, utc_now
from cachewarmer.queue import TransactionQueue, set_db_instance
from cachewarmer.store import init_schema
from cachewarmer.worker import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_TEST_URL = "https://www.example.com"
SITE_CONCURRENCY = 5
SITE_MAX_DEPTH = 1
WORKER_COUNT = 5
JOB_MONITOR_INTERVAL = 5.0

_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

_STATUS_TEXT = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def get_env_with_default(key: str, default: str) -> str:
    """Value of an environment variable, or ``default`` when unset or empty."""
    return os.environ.get(key) or default


@dataclass
class Config:
    """Service settings read from the environment."""

    port: str = "8080"
    env: str = "development"
    log_level: str = "info"
    sentry_dsn: str = ""
    database_path: str = "cachewarmer.db"

    @classmethod
    def from_env(cls) -> Config:
        return cls(
            port=get_env_with_default("PORT", "8080"),
            env=get_env_with_default("APP_ENV", "development"),
            log_level=get_env_with_default("LOG_LEVEL", "info"),
            sentry_dsn=os.environ.get("SENTRY_DSN", ""),
            database_path=get_env_with_default("DATABASE_PATH", "cachewarmer.db"),
        )


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname.lower(),
            "time": datetime.fromtimestamp(record.created).astimezone().isoformat(
                timespec="seconds"
            ),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(config: Config) -> int:
    """Install the root log handler for the environment and return the level used."""
    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, "_cachewarmer", False)]:
        root.removeHandler(handler)

    if config.env == "development":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-5s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z",
            )
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
    handler._cachewarmer = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    level = _LEVELS.get(config.log_level.strip().lower(), logging.INFO)
    root.setLevel(level)
    return level


def complete_finished_jobs(db: sqlite3.Connection) -> list[str]:
    """Mark running jobs whose tasks have all finished as completed; return their ids."""
    with db:
        rows = db.execute(
            """
            SELECT id FROM jobs
            WHERE (completed_tasks + failed_tasks) >= total_tasks AND status = 'running'
            """
        ).fetchall()
        job_ids = [job_id for (job_id,) in rows]
        now = to_db_time(utc_now())
        for job_id in job_ids:
            db.execute(
                """
                UPDATE jobs SET status = 'completed', completed_at = ?
                WHERE id = ? AND status = 'running'
                """,
                (now, job_id),
            )
    for job_id in job_ids:
        logger.info("job %s marked as completed", job_id)
    return job_ids


@dataclass
class _Response:
    status: int
    body: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)


def _json(data: Any, status: int = 200) -> _Response:
    body = (json.dumps(data) + "\n").encode("utf-8")
    return _Response(status, body, [("Content-Type", "application/json")])


def _text_error(message: str, status: int) -> _Response:
    return _Response(
        status,
        (message + "\n").encode("utf-8"),
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
        ],
    )


def _now_rfc3339() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


class _App:
    """WSGI application serving the service's endpoints."""

    def __init__(self, db: sqlite3.Connection, crawler: Crawler):
        self.db = db
        self.crawler = crawler
        self.routes: dict[str, Callable[[dict[str, str]], _Response]] = {
            "/health": self._health,
            "/pg-health": self._db_health,
            "/recent-crawls": self._recent_crawls,
            "/test-crawl": self._test_crawl,
            "/reset-db": self._reset_db,
            "/site": self._site,
            "/job-status": self._job_status,
        }

    def __call__(
        self, environ: dict[str, Any], start_response: Callable[..., Any]
    ) -> Iterable[bytes]:
        handler = self.routes.get(environ.get("PATH_INFO", ""))
        if handler is None:
            response = _text_error("404 page not found", 404)
        else:
            query = {
                key: values[0]
                for key, values in parse_qs(
                    environ.get("QUERY_STRING", ""), keep_blank_values=True
                ).items()
            }
            try:
                response = handler(query)
            except Exception:
                logger.exception("unhandled error serving %s", environ.get("PATH_INFO"))
                response = _text_error("Internal Server Error", 500)
        status_line = f"{response.status} {_STATUS_TEXT.get(response.status, '')}".strip()
        headers = [*response.headers, ("Content-Length", str(len(response.body)))]
        start_response(status_line, headers)
        return [response.body]

    def _health(self, query: dict[str, str]) -> _Response:
        return _json({"status": "OK", "time": _now_rfc3339()})

    def _db_health(self, query: dict[str, str]) -> _Response:
        try:
            self.db.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.error("database health check failed: %s", exc)
            return _json({"status": "ERROR", "error": str(exc)}, 503)
        return _json({"status": "OK", "time": _now_rfc3339()})

    def _recent_crawls(self, query: dict[str, str]) -> _Response:
        limit = 10
        try:
            parsed = int(query.get("limit", ""))
        except ValueError:
            parsed = 0
        if parsed > 0:
            limit = parsed
        try:
            rows = self.db.execute(
                """
                SELECT id, job_id, task_id, url, response_time, status_code, error,
                       cache_status, content_type, created_at
                FROM crawl_results
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.error("failed to get recent results: %s", exc)
            return _json({"error": "Failed to get recent results"}, 500)
        keys = (
            "id",
            "job_id",
            "task_id",
            "url",
            "response_time",
            "status_code",
            "error",
            "cache_status",
            "content_type",
            "created_at",
        )
        return _json([dict(zip(keys, row)) for row in rows])

    def _test_crawl(self, query: dict[str, str]) -> _Response:
        url = query.get("url") or DEFAULT_TEST_URL
        try:
            result = self.crawler.warm_url(url)
        except Exception as exc:
            logger.error("failed to crawl %s: %s", url, exc)
            return _json({"error": str(exc)}, 500)

        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO crawl_results
                    (job_id, task_id, url, response_time, status_code, error,
                     cache_status, content_type, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        "",
                        "",
                        result.url,
                        result.response_time,
                        result.status_code,
                        result.error,
                        result.cache_status,
                        result.content_type,
                        to_db_time(utc_now()),
                    ),
                )
        except sqlite3.Error as exc:
            logger.error("failed to store crawl result for %s: %s", url, exc)
        return _json(result.to_dict())

    def _reset_db(self, query: dict[str, str]) -> _Response:
        logger.warning("database reset requested")
        try:
            with self.db:
                for table in ("crawl_results", "tasks", "jobs"):
                    self.db.execute(f"DROP TABLE IF EXISTS {table}")
            init_schema(self.db)
        except sqlite3.Error as exc:
            logger.error("failed to reset database schema: %s", exc)
            return _text_error("Failed to reset database", 500)
        return _json({"status": "Database schema reset successfully"})

    def _site(self, query: dict[str, str]) -> _Response:
        domain = query.get("domain", "")
        if not domain:
            return _text_error("Domain parameter is required", 400)
        base_url = domain if domain.startswith("http") else f"https://{domain}"

        try:
            sitemaps = self.crawler.discover_sitemaps(domain)
        except Exception as exc:
            logger.error("failed to discover sitemaps for %s: %s", domain, exc)
            return _text_error("Failed to discover sitemaps", 500)

        job_id = _new_id()
        all_urls: list[str] = []
        for sitemap_url in sitemaps:
            try:
                all_urls.extend(self.crawler.parse_sitemap(sitemap_url))
            except Exception as exc:
                logger.error("failed to parse sitemap %s: %s", sitemap_url, exc)

        now = to_db_time(utc_now())
        try:
            with self.db:
                self.db.execute(
                    """
                    INSERT INTO jobs (id, domain, status, progress, total_tasks,
                                      completed_tasks, failed_tasks, created_at,
                                      concurrency, find_links, max_depth)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        domain,
                        "pending",
                        0.0,
                        len(all_urls),
                        0,
                        0,
                        now,
                        SITE_CONCURRENCY,
                        False,
                        SITE_MAX_DEPTH,
                    ),
                )
        except sqlite3.Error as exc:
            logger.error("failed to create job for %s: %s", domain, exc)
            return _text_error("Failed to create job", 500)

        for url in all_urls:
            try:
                with self.db:
                    self.db.execute(
                        """
                        INSERT INTO tasks (id, job_id, url, status, depth, created_at,
                                           retry_count, source_type, source_url)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (_new_id(), job_id, url, "pending", 0, now, 0, "sitemap", base_url),
                    )
            except sqlite3.Error as exc:
                logger.error("failed to add task for %s: %s", url, exc)

        try:
            with self.db:
                self.db.execute(
                    "UPDATE jobs SET status = 'running', started_at = ? WHERE id = ?",
                    (to_db_time(utc_now()), job_id),
                )
        except sqlite3.Error as exc:
            logger.error("failed to update status of job %s: %s", job_id, exc)

        return _json(
            {
                "status": "OK",
                "job_id": job_id,
                "urls_added": len(all_urls),
                "message": "Sitemap crawl started",
            }
        )

    def _job_status(self, query: dict[str, str]) -> _Response:
        job_id = query.get("job_id", "")
        if not job_id:
            return _text_error("job_id parameter required", 400)
        try:
            row = self.db.execute(
                """
                SELECT total_tasks, completed_tasks, failed_tasks, status
                FROM jobs WHERE id = ?
                """,
                (job_id,),
            ).fetchone()
        except sqlite3.Error:
            row = None
        if row is None:
            return _text_error("Job not found", 404)
        total, completed, failed, status = row
        progress = (completed + failed) / total * 100 if total else 0.0
        return _json(
            {
                "job_id": job_id,
                "status": status,
                "total": total,
                "completed": completed,
                "failed": failed,
                "progress": progress,
            }
        )


def create_app(db: sqlite3.Connection, crawler: Crawler) -> Callable[..., Iterable[bytes]]:
    """Build the WSGI application for the service."""
    return _App(db, crawler)


def _load_dotenv(path: Path = Path(".env")) -> None:
    if not path.is_file():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :]
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        os.environ.setdefault(key, value)


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def _monitor_jobs(db: sqlite3.Connection, stop: threading.Event) -> None:
    while not stop.wait(JOB_MONITOR_INTERVAL):
        try:
            complete_finished_jobs(db)
        except sqlite3.Error as exc:
            logger.error("failed to update completed jobs: %s", exc)


def main(argv: list[str] | None = None) -> int:
    """Run the service until interrupted."""
    parser = argparse.ArgumentParser(
        prog="cachewarmer", description="Cache warming crawl service."
    )
    parser.parse_args(argv)

    _load_dotenv()
    config = Config.from_env()
    setup_logging(config)

    try:
        db = sqlite3.connect(config.database_path, check_same_thread=False)
        init_schema(db)
    except sqlite3.Error as exc:
        logger.critical("failed to open database %s: %s", config.database_path, exc)
        return 1
    logger.info("connected to database %s", config.database_path)
    set_db_instance(TransactionQueue(db))

    crawler = Crawler()
    pool = WorkerPool(db, crawler, WORKER_COUNT)
    pool.start()

    monitor_stop = threading.Event()
    threading.Thread(
        target=_monitor_jobs, args=(db, monitor_stop), name="job-monitor", daemon=True
    ).start()

    try:
        server = make_server(
            "",
            int(config.port),
            create_app(db, crawler),
            server_class=_ThreadingWSGIServer,
            handler_class=_QuietHandler,
        )
    except (OSError, ValueError) as exc:
        logger.critical("server error: %s", exc)
        monitor_stop.set()
        pool.stop()
        db.close()
        return 1

    def request_shutdown(signum: int, frame: Any) -> None:
        logger.info("shutting down server...")
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)

    logger.info("starting server on port %s", config.port)
    try:
        server.serve_forever()
    finally:
        server.server_close()
        monitor_stop.set()
        pool.stop()
        db.close()
    logger.info("server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())