# cachewarmer

A small service that warms a website's caches. It finds a domain's
sitemaps, turns every URL in them into a task, and has a pool of worker
threads request each URL. Status codes, response times and cache status
are stored in an SQLite database, together with the jobs, their tasks
and their progress.

## Installing

```
pip install .
```

The package needs nothing outside the Python standard library. To run
the tests, install the `test` extra:

```
pip install ".[test]"
pytest
```

## Running the service

```
cachewarmer
```

On start the command reads a `.env` file in the current directory, if
there is one (variables already set in the environment win), opens the
SQLite database, creates its tables, starts five workers and serves HTTP
until it receives SIGINT or SIGTERM.

Settings come from the environment (`Config.from_env()` builds them in
code):

| Variable        | Default          | Meaning                                      |
|-----------------|------------------|----------------------------------------------|
| `PORT`          | `8080`           | HTTP port to listen on                       |
| `APP_ENV`       | `development`    | `development` logs readable lines to stdout; anything else logs JSON lines to stderr |
| `LOG_LEVEL`     | `info`           | `trace`, `debug`, `info`, `warn`, `error`, `fatal` or `panic`; unknown values mean `info` |
| `DATABASE_PATH` | `cachewarmer.db` | SQLite database file                         |
| `SENTRY_DSN`    | *(empty)*        | Read into `Config.sentry_dsn`; nothing else uses it |

`get_env_with_default(key, default)` returns a variable's value, or the
default when the variable is unset or empty. `setup_logging(config)`
installs the log handler and returns the level it chose.

### HTTP endpoints

All replies are JSON unless noted.

- `GET /health`: `{"status": "OK", "time": ...}`.
- `GET /pg-health`: runs a query against the database; `503` with
  `{"status": "ERROR", "error": ...}` if it fails.
- `GET /recent-crawls?limit=N`: the newest rows of `crawl_results`,
  10 unless `limit` is a positive integer.
- `GET /test-crawl?url=...`: warms one URL (`https://www.example.com`
  when `url` is missing), stores the result and returns it; `500` with
  the error if the request fails.
- `GET /reset-db`: drops the `crawl_results`, `tasks` and `jobs` tables
  and creates them again.
- `GET /site?domain=...`: discovers the domain's sitemaps, creates a job
  with one task per URL found and sets it running. The reply holds
  `job_id` and `urls_added`. A missing `domain` gives a plain-text `400`.
- `GET /job-status?job_id=...`: the job's `total`, `completed`,
  `failed`, `status` and `progress` as a percentage; plain-text `404`
  for an unknown job.

Every five seconds a background check marks running jobs as completed
once their completed and failed tasks reach the total.
`complete_finished_jobs(db)` runs that check once and returns the ids it
completed. `create_app(db, crawler)` returns the WSGI application on its
own.

## Using it as a library

```python
import sqlite3

from cachewarmer.manager import JobManager
from cachewarmer.models import Crawler, JobOptions
from cachewarmer.queue import TransactionQueue, set_db_instance
from cachewarmer.store import init_schema
from cachewarmer.worker import WorkerPool

db = sqlite3.connect("warm.db", check_same_thread=False)
init_schema(db)
set_db_instance(TransactionQueue(db))  # needed before tasks are queued or claimed

crawler = Crawler()
pool = WorkerPool(db, crawler, 5)
pool.start()

manager = JobManager(db, crawler, pool)
job = manager.create_job(JobOptions(domain="example.com", use_sitemap=True))

status = manager.get_job_status(job.id)
print(status.status.value, status.progress)

pool.stop()
```

### Modules

- `cachewarmer.models`: `JobStatus`, `TaskStatus`, the `Job`, `Task`,
  `JobOptions`, `CrawlResult` and `CrawlResultData` dataclasses, and
  `Crawler`. `Crawler.warm_url` fetches a URL and records its status,
  time in milliseconds, content type and cache status (from
  `CF-Cache-Status`, `X-Cache` or `X-Cache-Status`); responses of 400 and
  up get the error `HTTP <code>`, network failures raise `OSError`.
  `discover_sitemaps` reads `Sitemap:` lines from `robots.txt` and falls
  back to `/sitemap.xml`; `parse_sitemap` follows sitemap indexes;
  `filter_urls` keeps URLs whose path starts with an include prefix (if
  any are given) and with no exclude prefix.
- `cachewarmer.queue`: `TransactionQueue` runs callables one at a time,
  each in its own transaction. `execute_in_queue` uses the queue set by
  `set_db_instance` and raises `QueueNotInitializedError` if none is set.
  Also the transactional helpers, and `cleanup_stuck_jobs`, which
  completes pending or running jobs whose tasks have all finished.
- `cachewarmer.store`: `init_schema`, `create_job`, `create_task`,
  `get_job` (raises `JobNotFoundError`), `list_jobs`,
  `update_task_status`, `update_job_progress` and
  `get_next_pending_task`. Operations are retried with exponential
  backoff and jitter, up to five retries, while the database reports
  that it is locked or busy (`retry_db`).
- `cachewarmer.batch`: `enqueue_urls` adds URLs to a pending or running
  job in batches of 500, raising the job's total first and lowering it
  again if a batch fails; empty URLs are not inserted. `TaskBatch`
  collects finished tasks and `flush_tasks` writes them, their crawl
  results and the job counters in one transaction.
- `cachewarmer.worker`: `WorkerPool`. Workers claim pending tasks of the
  jobs added to the pool, warm them and batch the results, which are
  written every ten seconds or once 50 have gathered. A job's
  `required_workers` can grow the pool. Monitors pick up jobs with
  pending tasks, recover stale tasks and complete finished jobs.
- `cachewarmer.manager`: `JobManager` creates jobs and seeds them with
  start URLs, the sitemap (in a background thread, which starts the job
  when done) or the domain's root URL.

### Job and task rules

- `JobManager.start_job` accepts only pending or running jobs. Tasks
  left running go back to pending, with their retry count raised by one.
- `JobManager.cancel_job` accepts only running, pending or paused jobs,
  and marks their pending tasks skipped.
- Either raises `JobStateError` when the job is in the wrong state.
- A task whose request times out goes back to pending, up to five
  retries; other failures mark it failed. A task running for more than
  three minutes is stale: the recovery pass puts it back to pending, or
  fails it with `Max retries exceeded` once its retries are used up.

## What it does not do

- It does not follow links found in pages: `find_links` and `max_depth`
  are stored with a job but nothing acts on them.
- It sends nothing to an error-tracking service; `SENTRY_DSN` is only
  read.
- Storage is SQLite only, and the HTTP endpoints have no authentication
  or rate limiting.