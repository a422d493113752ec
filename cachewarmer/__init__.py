"""Cache warming service: sitemap discovery, an SQLite job and task queue, and crawl workers."""

__version__ = "0.1.0"