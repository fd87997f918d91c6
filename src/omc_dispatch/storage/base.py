"""Job store contract shared by the JSON-file and SQL backends."""

from __future__ import annotations

from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import timedelta
from typing import Any, Protocol

from omc_dispatch.models import JobRecord, JobStats, JobStatus, Provider

DEFAULT_RECENT_WINDOW = timedelta(hours=1)
DEFAULT_CLEANUP_MAX_AGE = timedelta(hours=24)

UPDATABLE_FIELDS: frozenset[str] = frozenset(
    field.name
    for field in dataclass_fields(JobRecord)
    if field.name not in {"provider", "job_id", "slug"}
)


class JobStore(Protocol):
    """Persistence contract for job records keyed by ``(provider, job_id)``.

    Implementations never raise on I/O failure; they log and return an empty
    result, ``False`` or ``None`` instead.
    """

    def upsert(self, record: JobRecord) -> bool: ...

    def get(self, provider: Provider, job_id: str) -> JobRecord | None: ...

    def list_all(self, provider: Provider | None = None) -> list[JobRecord]: ...

    def list_by_status(
        self,
        status: JobStatus,
        provider: Provider | None = None,
    ) -> list[JobRecord]: ...

    def list_active(self, provider: Provider | None = None) -> list[JobRecord]: ...

    def list_recent(
        self,
        provider: Provider | None = None,
        within: timedelta = DEFAULT_RECENT_WINDOW,
    ) -> list[JobRecord]: ...

    def update(self, provider: Provider, job_id: str, **changes: Any) -> bool: ...

    def delete(self, provider: Provider, job_id: str) -> bool: ...

    def cleanup_old_jobs(self, max_age: timedelta = DEFAULT_CLEANUP_MAX_AGE) -> int: ...

    def stats(self) -> JobStats | None: ...


def check_update_fields(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported job fields for update: {', '.join(sorted(unknown))}")


def merge_for_write(existing: JobRecord | None, incoming: JobRecord) -> JobRecord | None:
    """Apply write-once rules; None means the incoming write must be dropped.

    ``completed_at`` keeps its first value, and a record flagged
    ``killed_by_user`` only accepts writes that carry the flag too.
    """

    if existing is None:
        return incoming
    if existing.killed_by_user and not incoming.killed_by_user:
        return None
    if existing.completed_at is not None:
        return replace(incoming, completed_at=existing.completed_at)
    return incoming


def sort_newest_first(records: list[JobRecord]) -> list[JobRecord]:
    return sorted(records, key=lambda record: record.spawned_at, reverse=True)
