import sqlite3

import pytest

from cachewarmer.models import CrawlResultData, Task, TaskStatus, to_db_time, utc_now
from cachewarmer.queue import (
    QueueNotInitializedError,
    TransactionQueue,
    batch_insert_crawl_results,
    cleanup_stuck_jobs,
    execute_in_queue,
    filter_tasks_by_status,
    get_next_pending_task_tx,
    set_db_instance,
    update_job_counter,
    update_job_progress_tx,
    update_task_status_tx,
)

SCHEMA = """
CREATE TABLE jobs (
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
    include_paths TEXT,
    exclude_paths TEXT,
    error_message TEXT,
    required_workers INTEGER DEFAULT 0
);
CREATE TABLE tasks (
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
    source_url TEXT
);
CREATE TABLE crawl_results (
    job_id TEXT, task_id TEXT, url TEXT, response_time INTEGER,
    status_code INTEGER, error TEXT, cache_status TEXT, content_type TEXT
);
"""


@pytest.fixture
def db():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.executescript(SCHEMA)
    yield conn
    conn.close()


@pytest.fixture
def queue(db):
    q = TransactionQueue(db)
    set_db_instance(q)
    yield q
    set_db_instance(None)


def add_job(db, job_id, status="running", total=0, completed=0, failed=0):
    db.execute(
        "INSERT INTO jobs (id, domain, status, progress, total_tasks, completed_tasks,"
        " failed_tasks, created_at, concurrency, find_links) VALUES (?, ?, ?, 0, ?, ?, ?, ?, 5, 0)",
        (job_id, "example.com", status, total, completed, failed, to_db_time(utc_now())),
    )
    db.commit()


def add_task(db, task_id, job_id, status="pending"):
    db.execute(
        "INSERT INTO tasks (id, job_id, url, status, depth, created_at, retry_count, source_type)"
        " VALUES (?, ?, ?, ?, 0, ?, 0, 'sitemap')",
        (task_id, job_id, f"https://example.com/{task_id}", status, to_db_time(utc_now())),
    )
    db.commit()


def job_row(db, job_id):
    return db.execute(
        "SELECT status, progress, completed_tasks, failed_tasks, completed_at FROM jobs WHERE id = ?",
        (job_id,),
    ).fetchone()


def test_execute_in_queue_requires_instance():
    set_db_instance(None)
    with pytest.raises(QueueNotInitializedError):
        execute_in_queue(lambda tx: None)


def test_queue_commits_and_returns(db, queue):
    result = execute_in_queue(
        lambda tx: tx.execute(
            "INSERT INTO crawl_results (job_id) VALUES ('j')"
        ).rowcount
    )
    assert result == 1
    assert db.execute("SELECT COUNT(*) FROM crawl_results").fetchone()[0] == 1


def test_queue_rolls_back_on_error(db, queue):
    def failing(tx):
        tx.execute("INSERT INTO crawl_results (job_id) VALUES ('j')")
        raise ValueError("boom")

    with pytest.raises(ValueError):
        queue.execute(failing)
    assert db.execute("SELECT COUNT(*) FROM crawl_results").fetchone()[0] == 0


def test_execute_in_queue_retries_connection_errors(queue):
    calls = []

    def flaky(tx):
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("driver: bad connection")
        return "done"

    assert execute_in_queue(flaky) == "done"
    assert len(calls) == 2


def test_execute_in_queue_does_not_retry_other_errors(queue):
    calls = []

    def broken(tx):
        calls.append(1)
        raise sqlite3.OperationalError("no such table: nothing")

    with pytest.raises(sqlite3.OperationalError):
        execute_in_queue(broken)
    assert len(calls) == 1


def test_get_next_pending_task_claims_task(db, queue):
    add_job(db, "job-1")
    add_task(db, "t1", "job-1")
    task = execute_in_queue(lambda tx: get_next_pending_task_tx(tx, "job-1"))
    assert task.id == "t1"
    assert task.status is TaskStatus.RUNNING
    assert task.started_at is not None
    assert task.source_type == "sitemap"
    assert execute_in_queue(lambda tx: get_next_pending_task_tx(tx, "job-1")) is None


def test_update_task_status_sets_completion_time(db, queue):
    add_job(db, "job-1")
    add_task(db, "t1", "job-1")
    task = Task(id="t1", job_id="job-1", url="https://example.com/t1", status=TaskStatus.COMPLETED)
    execute_in_queue(lambda tx: update_task_status_tx(tx, task))
    status, completed_at = db.execute(
        "SELECT status, completed_at FROM tasks WHERE id = 't1'"
    ).fetchone()
    assert status == "completed"
    assert completed_at == to_db_time(task.completed_at)
    assert task.started_at is None


def test_update_job_progress_completes_job(db, queue):
    add_job(db, "job-1", status="running")
    add_task(db, "t1", "job-1", status="completed")
    add_task(db, "t2", "job-1", status="failed")
    execute_in_queue(lambda tx: update_job_progress_tx(tx, "job-1"))
    status, progress, completed, failed, completed_at = job_row(db, "job-1")
    assert (status, completed, failed) == ("completed", 1, 1)
    assert progress == 100.0
    assert completed_at is not None
    assert cleanup_stuck_jobs(db) == 0


def test_update_job_progress_writes_counts_for_pending_job(db, queue):
    add_job(db, "job-1", status="pending")
    add_task(db, "t1", "job-1", status="completed")
    add_task(db, "t2", "job-1", status="failed")
    assert cleanup_stuck_jobs(db) == 0
    execute_in_queue(lambda tx: update_job_progress_tx(tx, "job-1"))
    assert job_row(db, "job-1")[0] == "pending"
    assert cleanup_stuck_jobs(db) == 1


def test_update_job_progress_keeps_running_with_pending(db, queue):
    add_job(db, "job-1", status="running")
    add_task(db, "t1", "job-1", status="completed")
    add_task(db, "t2", "job-1", status="pending")
    execute_in_queue(lambda tx: update_job_progress_tx(tx, "job-1"))
    status, progress, completed, _, completed_at = job_row(db, "job-1")
    assert status == "running"
    assert completed == 1
    assert 0 < progress < 100.0
    assert completed_at is None
    assert cleanup_stuck_jobs(db) == 0
    task = execute_in_queue(lambda tx: get_next_pending_task_tx(tx, "job-1"))
    assert task.id == "t2"


def test_batch_insert_crawl_results(db, queue):
    results = [
        CrawlResultData(job_id="j", task_id="a", url="https://example.com/a", status_code=200),
        CrawlResultData(job_id="j", task_id="b", url="https://example.com/b", status_code=404),
    ]
    execute_in_queue(lambda tx: batch_insert_crawl_results(tx, results))
    execute_in_queue(lambda tx: batch_insert_crawl_results(tx, []))
    rows = db.execute("SELECT task_id, status_code FROM crawl_results ORDER BY task_id").fetchall()
    assert rows == [("a", 200), ("b", 404)]
    assert rows == [(r.task_id, r.status_code) for r in results]


def test_update_job_counter_completes_when_done(db, queue):
    add_job(db, "job-1", status="running", total=2)
    execute_in_queue(lambda tx: update_job_counter(tx, "job-1", 1, 1))
    status, progress, completed, failed, completed_at = job_row(db, "job-1")
    assert (status, completed, failed) == ("completed", 1, 1)
    assert progress == 100.0
    assert completed_at is not None
    assert cleanup_stuck_jobs(db) == 0


def test_update_job_counter_partial_and_noop(db, queue):
    add_job(db, "job-1", status="running", total=4)
    execute_in_queue(lambda tx: update_job_counter(tx, "job-1", 0, 0))
    assert job_row(db, "job-1")[2] == 0
    execute_in_queue(lambda tx: update_job_counter(tx, "job-1", 1, 0))
    status, progress, completed, _, _ = job_row(db, "job-1")
    assert status == "running"
    assert completed == 1
    assert 0 < progress < 100.0
    assert cleanup_stuck_jobs(db) == 0


def test_filter_tasks_by_status():
    tasks = [
        Task(job_id="j", url="u1", status=TaskStatus.COMPLETED),
        Task(job_id="j", url="u2", status=TaskStatus.FAILED),
        Task(job_id="j", url="u3", status=TaskStatus.COMPLETED),
    ]
    completed = filter_tasks_by_status(tasks, TaskStatus.COMPLETED)
    assert [t.url for t in completed] == ["u1", "u3"]
    assert filter_tasks_by_status([], TaskStatus.FAILED) == []


def test_cleanup_stuck_jobs(db):
    add_job(db, "stuck", status="running", total=3, completed=2, failed=1)
    add_job(db, "busy", status="running", total=3, completed=1)
    add_job(db, "empty", status="pending", total=0)
    assert cleanup_stuck_jobs(db) == 1
    assert job_row(db, "stuck")[0] == "completed"
    assert job_row(db, "stuck")[1] == 100.0
    assert job_row(db, "busy")[0] == "running"
    assert job_row(db, "empty")[0] == "pending"
    assert cleanup_stuck_jobs(db) == 0