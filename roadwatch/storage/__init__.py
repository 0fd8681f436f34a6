from __future__ import annotations

from functools import lru_cache

from roadwatch.config import get_store_backend
from roadwatch.storage.base import ReportStore
from roadwatch.storage.memory import InMemoryReportStore
from roadwatch.storage.sqlite_impl import SQLiteReportStore


@lru_cache(maxsize=1)
def get_report_store() -> ReportStore:
    backend = get_store_backend()
    if backend == "sqlite":
        return SQLiteReportStore()
    return InMemoryReportStore()


__all__ = [
    "InMemoryReportStore",
    "ReportStore",
    "SQLiteReportStore",
    "get_report_store",
]
