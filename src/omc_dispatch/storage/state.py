"""Dual-backend job state: JSON status files are authoritative, SQLite mirrors them."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Any

from omc_dispatch.models import (
    JobRecord,
    JobStats,
    JobStatus,
    MigrationResult,
    Provider,
    utc_now,
)
from omc_dispatch.storage.base import (
    DEFAULT_CLEANUP_MAX_AGE,
    DEFAULT_RECENT_WINDOW,
    check_update_fields,
)
from omc_dispatch.storage.common import jobs_db_path
from omc_dispatch.storage.json_store import JsonJobStore, compute_stats, pick_preferred
from omc_dispatch.storage.sql_store import SqlJobStore

logger = logging.getLogger(__name__)

STALE_JOB_ERROR = "Job exceeded maximum age and was marked stale"
SQL_PROBE_ATTEMPTS = 2
SQL_PROBE_RETRY_DELAY_SECONDS = 0.2


class JobStateStore:
    """Job persistence facade over ``JsonJobStore`` and an optional ``SqlJobStore``.

    Writes always land in the JSON status file first and are then mirrored
    into SQLite when the one-time capability probe succeeded. Reads prefer
    SQLite and fall back to scanning status files. Nothing here raises on
    I/O failure.
    """

    def __init__(
        self,
        root: Path,
        *,
        enable_sql: bool = True,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.root = root
        self.json = JsonJobStore(root)
        self.enable_sql = enable_sql
        self.busy_timeout_ms = busy_timeout_ms
        self._sql: SqlJobStore | None = None
        self._sql_probed = False
        self._probe_lock = threading.Lock()

    @property
    def sql(self) -> SqlJobStore | None:
        """SQL backend after the lazy probe, or None when unavailable."""

        if self._sql_probed:
            return self._sql
        with self._probe_lock:
            if not self._sql_probed:
                self._sql = self._probe_sql()
                self._sql_probed = True
        return self._sql

    @property
    def sql_available(self) -> bool:
        return self.sql is not None

    def close(self) -> None:
        if self._sql is not None:
            self._sql.close()

    def upsert(self, record: JobRecord) -> bool:
        stored = self.json.write(record)
        if stored is None:
            return False
        sql = self.sql
        if sql is not None:
            sql.upsert(stored)
        return True

    def get(self, provider: Provider, job_id: str) -> JobRecord | None:
        sql = self.sql
        if sql is not None:
            record = sql.get(provider, job_id)
            if record is not None:
                return record
        return self.json.get(provider, job_id)

    def find_candidates(self, provider: Provider, job_id: str) -> list[JobRecord]:
        """Every record matching the id across both backends, de-duplicated by slug."""

        by_slug: dict[str, JobRecord] = {
            record.slug: record for record in self.json.find_candidates(provider, job_id)
        }
        sql = self.sql
        if sql is not None:
            record = sql.get(provider, job_id)
            if record is not None:
                by_slug.setdefault(record.slug, record)
        return list(by_slug.values())

    def resolve(self, provider: Provider, job_id: str) -> JobRecord | None:
        """Preferred record among candidates: non-terminal first, then newest."""

        candidates = self.find_candidates(provider, job_id)
        if not candidates:
            return None
        return pick_preferred(candidates)

    def list_all(self, provider: Provider | None = None) -> list[JobRecord]:
        sql = self.sql
        if sql is not None:
            return sql.list_all(provider)
        return self.json.list_all(provider)

    def list_by_status(
        self,
        status: JobStatus,
        provider: Provider | None = None,
    ) -> list[JobRecord]:
        sql = self.sql
        if sql is not None:
            return sql.list_by_status(status, provider)
        return self.json.list_by_status(status, provider)

    def list_active(self, provider: Provider | None = None) -> list[JobRecord]:
        sql = self.sql
        if sql is not None:
            return sql.list_active(provider)
        return self.json.list_active(provider)

    def list_recent(
        self,
        provider: Provider | None = None,
        within: timedelta = DEFAULT_RECENT_WINDOW,
    ) -> list[JobRecord]:
        sql = self.sql
        if sql is not None:
            return sql.list_recent(provider, within)
        return self.json.list_recent(provider, within)

    def update(self, provider: Provider, job_id: str, **changes: Any) -> bool:
        """Partial update applied through a full JSON rewrite, then mirrored."""

        check_update_fields(changes)
        existing = self.resolve(provider, job_id)
        if existing is None:
            return False
        return self.upsert(replace(existing, **changes))

    def delete(self, provider: Provider, job_id: str) -> bool:
        deleted = self.json.delete(provider, job_id)
        sql = self.sql
        if sql is not None:
            deleted = sql.delete(provider, job_id) or deleted
        return deleted

    def cleanup_old_jobs(self, max_age: timedelta = DEFAULT_CLEANUP_MAX_AGE) -> int:
        """Delete terminal records spawned before ``now - max_age`` from both backends."""

        removed = self.json.cleanup_old_jobs(max_age)
        sql = self.sql
        if sql is not None:
            removed = max(removed, sql.cleanup_old_jobs(max_age))
        return removed

    def mark_stale_jobs(self, max_age: timedelta) -> int:
        """Move active records older than ``max_age`` to ``timeout``; nothing is deleted."""

        cutoff = utc_now() - max_age
        marked = 0
        for record in self.json.list_active():
            if record.spawned_at >= cutoff:
                continue
            stale = replace(
                record,
                status=JobStatus.TIMEOUT,
                completed_at=utc_now(),
                error=STALE_JOB_ERROR,
            )
            if self.upsert(stale):
                marked += 1
        return marked

    def stats(self) -> JobStats:
        sql = self.sql
        if sql is not None:
            stats = sql.stats()
            if stats is not None:
                return stats
        return compute_stats(self.json.list_all())

    def migrate_json_to_sql(self) -> MigrationResult:
        """Import every status file into SQLite; an explicit, offline operation."""

        result = MigrationResult()
        sql = self.sql
        if sql is None:
            return result
        try:
            paths = sorted(self.json.prompts_dir.glob("*-status-*.json"))
        except OSError as error:
            logger.warning("Failed to scan status files for migration: %s", error)
            return result

        for path in paths:
            try:
                record = JobRecord.from_json_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, TypeError) as error:
                logger.warning("Skipping status file %s during migration: %s", path.name, error)
                result.errors += 1
                continue
            if sql.upsert(record):
                result.imported += 1
            else:
                result.errors += 1
        return result

    def _probe_sql(self) -> SqlJobStore | None:
        if not self.enable_sql:
            return None
        for attempt in range(1, SQL_PROBE_ATTEMPTS + 1):
            store = SqlJobStore(jobs_db_path(self.root), busy_timeout_ms=self.busy_timeout_ms)
            try:
                store.init_schema()
            except Exception as error:  # noqa: BLE001
                store.close()
                if attempt < SQL_PROBE_ATTEMPTS:
                    logger.info(
                        "Job database probe failed (attempt %d), retrying: %s",
                        attempt,
                        error,
                    )
                    time.sleep(SQL_PROBE_RETRY_DELAY_SECONDS)
                    continue
                logger.warning(
                    "Job database unavailable, using JSON status files only: %s",
                    error,
                )
                return None
            return store
        return None
