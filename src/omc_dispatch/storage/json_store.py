"""One JSON status file per job under ``<root>/.omc/prompts``."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Any

from omc_dispatch.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStats,
    JobStatus,
    Provider,
    utc_now,
)
from omc_dispatch.persistence import PROMPTS_SUBDIR
from omc_dispatch.storage.base import (
    DEFAULT_CLEANUP_MAX_AGE,
    DEFAULT_RECENT_WINDOW,
    check_update_fields,
    merge_for_write,
    sort_newest_first,
)

logger = logging.getLogger(__name__)


class JsonJobStore:
    """Status files written by atomic temp-file rename."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    @property
    def prompts_dir(self) -> Path:
        return self.root / PROMPTS_SUBDIR

    def status_path(self, record: JobRecord) -> Path:
        return self.prompts_dir / f"{record.provider.value}-status-{record.slug}-{record.job_id}.json"

    def upsert(self, record: JobRecord) -> bool:
        return self.write(record) is not None

    def write(self, record: JobRecord) -> JobRecord | None:
        """Merge ``record`` into its status file; returns what was stored, or None."""

        with self._lock:
            existing = self._read(self.status_path(record))
            merged = merge_for_write(existing, record)
            if merged is None:
                logger.info(
                    "Ignoring write for killed job %s/%s",
                    record.provider.value,
                    record.job_id,
                )
                return None
            return merged if self._write(merged) else None

    def get(self, provider: Provider, job_id: str) -> JobRecord | None:
        candidates = self.find_candidates(provider, job_id)
        if not candidates:
            return None
        return pick_preferred(candidates)

    def find_candidates(self, provider: Provider, job_id: str) -> list[JobRecord]:
        """All status records whose file name ends in ``job_id`` for ``provider``."""

        pattern = re.compile(rf"^{re.escape(provider.value)}-status-(.+)-{re.escape(job_id)}\.json$")
        records: list[JobRecord] = []
        for path in self._status_files(f"{provider.value}-status-*-{job_id}.json"):
            if not pattern.match(path.name):
                continue
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    def list_all(self, provider: Provider | None = None) -> list[JobRecord]:
        prefix = f"{provider.value}-status-" if provider is not None else "*-status-"
        records = [
            record
            for path in self._status_files(f"{prefix}*.json")
            if (record := self._read(path)) is not None
        ]
        return sort_newest_first(records)

    def list_by_status(
        self,
        status: JobStatus,
        provider: Provider | None = None,
    ) -> list[JobRecord]:
        return [record for record in self.list_all(provider) if record.status is status]

    def list_active(self, provider: Provider | None = None) -> list[JobRecord]:
        return [record for record in self.list_all(provider) if record.status in ACTIVE_STATUSES]

    def list_recent(
        self,
        provider: Provider | None = None,
        within: timedelta = DEFAULT_RECENT_WINDOW,
    ) -> list[JobRecord]:
        cutoff = utc_now() - within
        return [record for record in self.list_all(provider) if record.spawned_at > cutoff]

    def update(self, provider: Provider, job_id: str, **changes: Any) -> bool:
        check_update_fields(changes)
        existing = self.get(provider, job_id)
        if existing is None:
            return False
        return self.upsert(replace(existing, **changes))

    def delete(self, provider: Provider, job_id: str) -> bool:
        deleted = False
        for record in self.find_candidates(provider, job_id):
            try:
                self.status_path(record).unlink()
                deleted = True
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("Failed to delete status file for %s: %s", job_id, error)
        return deleted

    def cleanup_old_jobs(self, max_age: timedelta = DEFAULT_CLEANUP_MAX_AGE) -> int:
        cutoff = utc_now() - max_age
        removed = 0
        for record in self.list_all():
            if record.status not in TERMINAL_STATUSES or record.spawned_at >= cutoff:
                continue
            try:
                self.status_path(record).unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("Failed to remove old status file %s: %s", record.job_id, error)
        return removed

    def stats(self) -> JobStats | None:
        return compute_stats(self.list_all())

    def _status_files(self, pattern: str) -> list[Path]:
        try:
            return [path for path in self.prompts_dir.glob(pattern) if path.is_file()]
        except OSError as error:
            logger.warning("Failed to scan %s: %s", self.prompts_dir, error)
            return []

    def _read(self, path: Path) -> JobRecord | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return JobRecord.from_json_dict(payload)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as error:
            logger.debug("Skipping malformed status file %s: %s", path, error)
            return None

    def _write(self, record: JobRecord) -> bool:
        target = self.status_path(record)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=target.parent,
                prefix=f".{target.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                json.dump(record.to_json_dict(), handle, indent=2)
                temp_path = Path(handle.name)
            _replace_overwriting(temp_path, target)
        except OSError as error:
            logger.warning("Failed to write job status %s: %s", target, error)
            return False
        return True


def pick_preferred(records: list[JobRecord]) -> JobRecord:
    """Prefer a non-terminal record, then the newest spawn time."""

    return max(
        records,
        key=lambda record: (record.status in ACTIVE_STATUSES, record.spawned_at),
    )


def compute_stats(records: list[JobRecord]) -> JobStats:
    stats = JobStats(total=len(records))
    for record in records:
        if record.status in ACTIVE_STATUSES:
            stats.active += 1
        elif record.status is JobStatus.COMPLETED:
            stats.completed += 1
        else:
            stats.failed += 1
    return stats


def _replace_overwriting(source: Path, target: Path) -> None:
    try:
        os.replace(source, target)
        return
    except OSError:
        pass
    # non-atomic fallback for platforms that refuse to overwrite on rename
    try:
        target.unlink(missing_ok=True)
        os.replace(source, target)
    except OSError:
        source.unlink(missing_ok=True)
        raise
