"""Job state persistence: JSON status files mirrored into SQLite."""

from omc_dispatch.storage.base import JobStore
from omc_dispatch.storage.json_store import JsonJobStore
from omc_dispatch.storage.sql_store import SqlJobStore
from omc_dispatch.storage.state import STALE_JOB_ERROR, JobStateStore

__all__ = [
    "STALE_JOB_ERROR",
    "JobStateStore",
    "JobStore",
    "JsonJobStore",
    "SqlJobStore",
]
