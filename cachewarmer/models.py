"""Job, task and crawl result types, and the HTTP crawler that warms pages."""

from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import Message
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

TASK_STALE_TIMEOUT = timedelta(minutes=3)
MAX_TASK_RETRIES = 5


class JobStatus(str, Enum):
    """Lifecycle state of a crawl job."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Lifecycle state of a single URL task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(moment: datetime | None) -> str | None:
    """Format a datetime for storage; None stays None."""
    if moment is None:
        return None
    return moment.isoformat(sep=" ", timespec="microseconds")


def from_db_time(value: Any) -> datetime | None:
    """Parse a stored timestamp; empty values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(moment: datetime | None) -> str | None:
    return None if moment is None else moment.isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Job:
    """A crawling job for one domain."""

    domain: str
    id: str = field(default_factory=_new_id)
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    concurrency: int = 0
    find_links: bool = False
    max_depth: int = 0
    include_paths: list[str] = field(default_factory=list)
    exclude_paths: list[str] = field(default_factory=list)
    required_workers: int = 0
    error_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation, leaving out empty optional fields."""
        data: dict[str, Any] = {
            "id": self.id,
            "domain": self.domain,
            "status": self.status.value,
            "progress": self.progress,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "concurrency": self.concurrency,
            "find_links": self.find_links,
            "max_depth": self.max_depth,
            "required_workers": self.required_workers,
        }
        if self.include_paths:
            data["include_paths"] = list(self.include_paths)
        if self.exclude_paths:
            data["exclude_paths"] = list(self.exclude_paths)
        if self.error_message:
            data["error_message"] = self.error_message
        return data


@dataclass
class Task:
    """A single URL to be crawled within a job."""

    job_id: str
    url: str
    id: str = field(default_factory=_new_id)
    status: TaskStatus = TaskStatus.PENDING
    depth: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_count: int = 0
    error: str = ""
    source_type: str = ""
    source_url: str = ""
    status_code: int = 0
    response_time: int = 0
    cache_status: str = ""
    content_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation, leaving out empty optional fields."""
        data: dict[str, Any] = {
            "id": self.id,
            "job_id": self.job_id,
            "url": self.url,
            "status": self.status.value,
            "depth": self.depth,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "retry_count": self.retry_count,
            "source_type": self.source_type,
        }
        optional = {
            "error": self.error,
            "source_url": self.source_url,
            "status_code": self.status_code,
            "response_time": self.response_time,
            "cache_status": self.cache_status,
            "content_type": self.content_type,
        }
        data.update({key: value for key, value in optional.items() if value})
        return data


@dataclass
class JobOptions:
    """Settings for a new crawl job."""

    domain: str
    start_urls: list[str] = field(default_factory=list)
    use_sitemap: bool = False
    concurrency: int = 0
    find_links: bool = False
    max_depth: int = 0
    include_paths: list[str] = field(default_factory=list)
    exclude_paths: list[str] = field(default_factory=list)
    required_workers: int = 0


@dataclass
class CrawlResultData:
    """One row destined for the crawl_results table."""

    job_id: str
    task_id: str
    url: str
    response_time: int = 0
    status_code: int = 0
    error: str = ""
    cache_status: str = ""
    content_type: str = ""


@dataclass
class CrawlResult:
    """Outcome of warming one URL."""

    url: str
    response_time: int = 0
    status_code: int = 0
    error: str = ""
    cache_status: str = ""
    content_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "response_time": self.response_time,
            "status_code": self.status_code,
            "error": self.error,
            "cache_status": self.cache_status,
            "content_type": self.content_type,
        }


_CACHE_HEADERS = ("CF-Cache-Status", "X-Cache", "X-Cache-Status")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _base_url(domain: str) -> str:
    base = domain.rstrip("/")
    if not base.startswith("http"):
        base = f"https://{base}"
    return base


class Crawler:
    """Fetches pages to warm caches and reads sitemaps."""

    def __init__(self, timeout: float = 30.0, user_agent: str = "cachewarmer/1.0"):
        self.timeout = timeout
        self.user_agent = user_agent

    def _get(self, url: str) -> tuple[int, Message, bytes]:
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status, response.headers, response.read()
        except urllib.error.HTTPError as exc:
            body = exc.read() if exc.fp is not None else b""
            exc.close()
            return exc.code, exc.headers, body

    def warm_url(self, url: str) -> CrawlResult:
        """Request a URL and record timing, status and cache headers.

        Network failures (including timeouts) raise ``OSError``.
        """
        start = time.perf_counter()
        status, headers, _ = self._get(url)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        cache_status = next(
            (headers[name] for name in _CACHE_HEADERS if headers.get(name)), ""
        )
        return CrawlResult(
            url=url,
            response_time=elapsed_ms,
            status_code=status,
            error=f"HTTP {status}" if status >= 400 else "",
            cache_status=cache_status,
            content_type=headers.get("Content-Type", ""),
        )

    def discover_sitemaps(self, domain: str) -> list[str]:
        """Find sitemap URLs from robots.txt, falling back to /sitemap.xml."""
        base = _base_url(domain)
        found: list[str] = []
        try:
            status, _, body = self._get(f"{base}/robots.txt")
        except OSError as exc:
            logger.debug("robots.txt unavailable for %s: %s", base, exc)
        else:
            if status == 200:
                for line in body.decode("utf-8", "replace").splitlines():
                    key, sep, value = line.partition(":")
                    location = value.strip()
                    if sep and key.strip().lower() == "sitemap" and location:
                        if location not in found:
                            found.append(location)
        if found:
            return found

        fallback = f"{base}/sitemap.xml"
        try:
            status, _, _ = self._get(fallback)
        except OSError as exc:
            logger.debug("default sitemap unavailable for %s: %s", base, exc)
            return []
        return [fallback] if status == 200 else []

    def parse_sitemap(self, sitemap_url: str) -> list[str]:
        """Return page URLs listed in a sitemap, following sitemap indexes."""
        status, _, body = self._get(sitemap_url)
        if status != 200:
            raise ValueError(f"sitemap {sitemap_url} returned HTTP {status}")
        root = ET.fromstring(body)
        is_index = _local_name(root.tag) == "sitemapindex"
        urls: list[str] = []
        for entry in root:
            if _local_name(entry.tag) not in ("url", "sitemap"):
                continue
            for child in entry:
                if _local_name(child.tag) != "loc" or not child.text:
                    continue
                location = child.text.strip()
                if is_index:
                    try:
                        nested = self.parse_sitemap(location)
                    except (OSError, ValueError, ET.ParseError) as exc:
                        logger.error("failed to parse sitemap %s: %s", location, exc)
                        continue
                    urls.extend(u for u in nested if u not in urls)
                elif location not in urls:
                    urls.append(location)
        return urls

    def filter_urls(
        self, urls: list[str], include_paths: list[str], exclude_paths: list[str]
    ) -> list[str]:
        """Keep URLs whose path matches an include prefix and no exclude prefix."""
        kept = []
        for url in urls:
            path = urlsplit(url).path or "/"
            if include_paths and not any(path.startswith(p) for p in include_paths):
                continue
            if any(path.startswith(p) for p in exclude_paths):
                continue
            kept.append(url)
        return kept