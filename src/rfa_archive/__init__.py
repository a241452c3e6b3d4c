"""rfa-archive core library.

This package mirrors the Radio Free Asia language editions into a durable
local archive: content-addressed images and article documents, a SQLite
index, and resumable per-site crawl checkpoints.

Repo rules:
- The archive layout is the contract with the read-only web server.
- Crawls must be safe to interrupt and re-run.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
