[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cachewarmer"
version = "0.1.0"
description = "Sitemap-driven cache warming service with an SQLite-backed job and task queue"
requires-python = ">=3.10"
dependencies = []
keywords = ["cache", "warming", "crawler", "sitemap", "cdn", "job-queue", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: Site Management",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cachewarmer = "cachewarmer.server:main"

[tool.hatch.build.targets.wheel]
packages = ["cachewarmer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
