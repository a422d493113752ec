import json
import logging
import sqlite3
from datetime import datetime
from wsgiref.util import setup_testing_defaults

import pytest

from cachewarmer.models import CrawlResult, JobOptions
from cachewarmer.server import (
    Config,
    complete_finished_jobs,
    create_app,
    get_env_with_default,
    setup_logging,
)
from cachewarmer.store import create_job, init_schema


class FakeCrawler:
    def __init__(self, sitemaps=None, pages=None, warm_error=None, discover_error=None):
        self.sitemaps = sitemaps or []
        self.pages = pages or {}
        self.warm_error = warm_error
        self.discover_error = discover_error
        self.discovered = []

    def warm_url(self, url):
        if self.warm_error is not None:
            raise self.warm_error
        return CrawlResult(
            url=url,
            response_time=12,
            status_code=200,
            cache_status="HIT",
            content_type="text/html",
        )

    def discover_sitemaps(self, domain):
        self.discovered.append(domain)
        if self.discover_error is not None:
            raise self.discover_error
        return list(self.sitemaps)

    def parse_sitemap(self, sitemap_url):
        if sitemap_url not in self.pages:
            raise ValueError(f"no sitemap at {sitemap_url}")
        return list(self.pages[sitemap_url])

    def filter_urls(self, urls, include_paths, exclude_paths):
        return list(urls)


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:")
    init_schema(conn)
    yield conn
    conn.close()


def call(app, path, query=""):
    environ = {}
    setup_testing_defaults(environ)
    environ["PATH_INFO"] = path
    environ["QUERY_STRING"] = query
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = headers

    body = b"".join(app(environ, start_response))
    return int(captured["status"].split()[0]), dict(captured["headers"]), body


def test_health_endpoint(db):
    status, headers, body = call(create_app(db, FakeCrawler()), "/health")
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    data = json.loads(body)
    assert data["status"] == "OK"
    assert datetime.fromisoformat(data["time"]).tzinfo is not None


def test_test_crawl_endpoint(db):
    status, headers, body = call(
        create_app(db, FakeCrawler()), "/test-crawl", "url=https://example.com"
    )
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    data = json.loads(body)
    assert data["url"] == "https://example.com"
    assert data["status_code"] == 200
    assert data["cache_status"] == "HIT"
    rows = db.execute("SELECT url, status_code FROM crawl_results").fetchall()
    assert rows == [("https://example.com", 200)]


def test_test_crawl_uses_default_url(db):
    _, _, body = call(create_app(db, FakeCrawler()), "/test-crawl")
    assert json.loads(body)["url"] == "https://www.example.com"


def test_test_crawl_reports_crawler_error(db):
    crawler = FakeCrawler(warm_error=OSError("connection refused"))
    status, _, body = call(create_app(db, crawler), "/test-crawl", "url=https://example.com")
    assert status == 500
    assert json.loads(body) == {"error": "connection refused"}


def test_db_health_ok(db):
    status, _, body = call(create_app(db, FakeCrawler()), "/pg-health")
    assert status == 200
    assert json.loads(body)["status"] == "OK"


def test_db_health_reports_closed_database():
    conn = sqlite3.connect(":memory:")
    app = create_app(conn, FakeCrawler())
    conn.close()
    status, _, body = call(app, "/pg-health")
    assert status == 503
    assert json.loads(body)["status"] == "ERROR"


def test_recent_crawls_respects_limit(db):
    app = create_app(db, FakeCrawler())
    for n in range(3):
        call(app, "/test-crawl", f"url=https://example.com/{n}")
    _, _, body = call(app, "/recent-crawls", "limit=2")
    results = json.loads(body)
    assert [r["url"] for r in results] == ["https://example.com/2", "https://example.com/1"]


@pytest.mark.parametrize("limit", ["abc", "-1", "0"])
def test_recent_crawls_invalid_limit_uses_default(db, limit):
    app = create_app(db, FakeCrawler())
    for n in range(12):
        call(app, "/test-crawl", f"url=https://example.com/{n}")
    _, _, body = call(app, "/recent-crawls", f"limit={limit}")
    assert len(json.loads(body)) == 10


def test_site_requires_domain(db):
    status, headers, body = call(create_app(db, FakeCrawler()), "/site")
    assert status == 400
    assert body == b"Domain parameter is required\n"
    assert headers["Content-Type"].startswith("text/plain")


def test_site_creates_running_job_with_tasks(db):
    crawler = FakeCrawler(
        sitemaps=["https://example.com/sitemap.xml", "https://example.com/missing.xml"],
        pages={"https://example.com/sitemap.xml": ["https://example.com/a", "https://example.com/b"]},
    )
    status, _, body = call(create_app(db, crawler), "/site", "domain=example.com")
    assert status == 200
    data = json.loads(body)
    assert data["status"] == "OK"
    assert data["urls_added"] == 2
    assert data["message"] == "Sitemap crawl started"
    assert crawler.discovered == ["example.com"]

    job = db.execute(
        "SELECT domain, status, total_tasks, concurrency, max_depth, started_at FROM jobs WHERE id = ?",
        (data["job_id"],),
    ).fetchone()
    assert job[:5] == ("example.com", "running", 2, 5, 1)
    assert job[5]
    tasks = db.execute(
        "SELECT url, status, source_type, source_url FROM tasks WHERE job_id = ? ORDER BY url",
        (data["job_id"],),
    ).fetchall()
    assert tasks == [
        ("https://example.com/a", "pending", "sitemap", "https://example.com"),
        ("https://example.com/b", "pending", "sitemap", "https://example.com"),
    ]


def test_site_keeps_http_base_url(db):
    crawler = FakeCrawler(
        sitemaps=["http://example.com/sitemap.xml"],
        pages={"http://example.com/sitemap.xml": ["http://example.com/a"]},
    )
    _, _, body = call(create_app(db, crawler), "/site", "domain=http://example.com")
    job_id = json.loads(body)["job_id"]
    (source_url,) = db.execute(
        "SELECT source_url FROM tasks WHERE job_id = ?", (job_id,)
    ).fetchone()
    assert source_url == "http://example.com"


def test_site_discovery_failure(db):
    crawler = FakeCrawler(discover_error=OSError("unreachable"))
    status, _, body = call(create_app(db, crawler), "/site", "domain=example.com")
    assert status == 500
    assert body == b"Failed to discover sitemaps\n"
    assert db.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0


def test_job_status_requires_job_id(db):
    status, _, body = call(create_app(db, FakeCrawler()), "/job-status")
    assert status == 400
    assert body == b"job_id parameter required\n"


def test_job_status_unknown_job(db):
    status, _, body = call(create_app(db, FakeCrawler()), "/job-status", "job_id=nope")
    assert status == 404
    assert body == b"Job not found\n"


def test_job_status_reports_progress(db):
    job = create_job(db, JobOptions(domain="example.com"))
    with db:
        db.execute(
            "UPDATE jobs SET total_tasks = 4, completed_tasks = 2, failed_tasks = 1, status = 'running' WHERE id = ?",
            (job.id,),
        )
    status, _, body = call(create_app(db, FakeCrawler()), "/job-status", f"job_id={job.id}")
    assert status == 200
    assert json.loads(body) == {
        "job_id": job.id,
        "status": "running",
        "total": 4,
        "completed": 2,
        "failed": 1,
        "progress": 75.0,
    }


def test_reset_db_clears_tables(db):
    create_job(db, JobOptions(domain="example.com"))
    app = create_app(db, FakeCrawler())
    call(app, "/test-crawl", "url=https://example.com")
    status, _, body = call(app, "/reset-db")
    assert status == 200
    assert json.loads(body) == {"status": "Database schema reset successfully"}
    assert db.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0
    assert db.execute("SELECT COUNT(*) FROM crawl_results").fetchone()[0] == 0


def test_unknown_path_is_not_found(db):
    status, _, body = call(create_app(db, FakeCrawler()), "/nowhere")
    assert status == 404
    assert body == b"404 page not found\n"


def test_complete_finished_jobs(db):
    done = create_job(db, JobOptions(domain="done.example.com"))
    busy = create_job(db, JobOptions(domain="busy.example.com"))
    waiting = create_job(db, JobOptions(domain="waiting.example.com"))
    with db:
        db.execute(
            "UPDATE jobs SET status = 'running', total_tasks = 3, completed_tasks = 2, failed_tasks = 1 WHERE id = ?",
            (done.id,),
        )
        db.execute(
            "UPDATE jobs SET status = 'running', total_tasks = 3, completed_tasks = 1 WHERE id = ?",
            (busy.id,),
        )
    assert complete_finished_jobs(db) == [done.id]
    statuses = dict(db.execute("SELECT id, status FROM jobs").fetchall())
    assert statuses == {done.id: "completed", busy.id: "running", waiting.id: "pending"}
    (completed_at,) = db.execute(
        "SELECT completed_at FROM jobs WHERE id = ?", (done.id,)
    ).fetchone()
    assert completed_at


def test_get_env_with_default(monkeypatch):
    monkeypatch.setenv("CACHEWARMER_SAMPLE", "value")
    assert get_env_with_default("CACHEWARMER_SAMPLE", "fallback") == "value"
    monkeypatch.setenv("CACHEWARMER_SAMPLE", "")
    assert get_env_with_default("CACHEWARMER_SAMPLE", "fallback") == "fallback"
    monkeypatch.delenv("CACHEWARMER_SAMPLE")
    assert get_env_with_default("CACHEWARMER_SAMPLE", "fallback") == "fallback"


def test_config_from_env_defaults(monkeypatch):
    for key in ("PORT", "APP_ENV", "LOG_LEVEL", "SENTRY_DSN", "DATABASE_PATH"):
        monkeypatch.delenv(key, raising=False)
    assert Config.from_env() == Config(
        port="8080",
        env="development",
        log_level="info",
        sentry_dsn="",
        database_path="cachewarmer.db",
    )


def test_config_from_env_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    config = Config.from_env()
    assert (config.port, config.env, config.log_level) == ("9000", "production", "debug")


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("debug", logging.DEBUG),
        ("info", logging.INFO),
        ("warn", logging.WARNING),
        ("error", logging.ERROR),
        ("bogus", logging.INFO),
    ],
)
def test_setup_logging_levels(restore_root_logger, name, expected):
    level = setup_logging(Config(env="production", log_level=name))
    assert level == expected
    assert logging.getLogger().level == expected


def test_setup_logging_does_not_stack_handlers(restore_root_logger):
    before = len(logging.getLogger().handlers)
    first = setup_logging(Config(env="development", log_level="info"))
    second = setup_logging(Config(env="development", log_level="info"))
    assert first == logging.INFO
    assert second == logging.INFO
    assert len(logging.getLogger().handlers) == before + 1