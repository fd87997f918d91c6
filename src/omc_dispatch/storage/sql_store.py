"""Relational job store backed by SQLModel + SQLite in WAL mode."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from filelock import FileLock
from sqlalchemy import case, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from omc_dispatch.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStats,
    JobStatus,
    Provider,
    from_iso,
    to_iso,
    utc_now,
)
from omc_dispatch.storage.alembic_runner import upgrade_head
from omc_dispatch.storage.base import (
    DEFAULT_CLEANUP_MAX_AGE,
    DEFAULT_RECENT_WINDOW,
    check_update_fields,
)
from omc_dispatch.storage.common import build_sqlite_engine
from omc_dispatch.storage.tables import JobRow

logger = logging.getLogger(__name__)

MIGRATION_LOCK_TIMEOUT_SECONDS = 30.0

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)
_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)
_FAILED_VALUES = (JobStatus.FAILED.value, JobStatus.TIMEOUT.value)


class SqlJobStore:
    """Job persistence over a shared SQLite file safe for concurrent processes."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self, *, lock_timeout: float = MIGRATION_LOCK_TIMEOUT_SECONDS) -> None:
        """Create the database directory and run schema migrations; raises on failure.

        Migrations run under an exclusive lock file next to the database so
        processes opening a fresh store together apply the schema one at a
        time. Waiting longer than ``lock_timeout`` raises ``filelock.Timeout``.
        """

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(str(self.migration_lock_path), timeout=lock_timeout):
            upgrade_head(self.db_path)

    @property
    def migration_lock_path(self) -> Path:
        return self.db_path.with_name(f"{self.db_path.name}.migrate.lock")

    def upsert(self, record: JobRecord) -> bool:
        """Insert or replace one record atomically.

        The conflict update keeps the first ``completed_at`` and skips rows
        already flagged ``killed_by_user`` unless the incoming row carries it.
        """

        values = _to_row_values(record)
        statement = sqlite_insert(JobRow).values(**values)
        excluded = statement.excluded
        updates: dict[str, Any] = {
            name: excluded[name] for name in values if name not in {"provider", "job_id"}
        }
        updates["completed_at"] = func.coalesce(col(JobRow.completed_at), excluded.completed_at)
        statement = statement.on_conflict_do_update(
            index_elements=[col(JobRow.provider), col(JobRow.job_id)],
            set_=updates,
            where=or_(col(JobRow.killed_by_user) == 0, excluded.killed_by_user == 1),
        )
        try:
            with Session(self.engine) as session:
                result = session.exec(statement)  # type: ignore[call-overload]
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to upsert job %s/%s: %s", record.provider.value, record.job_id, error)
            return False
        return result.rowcount > 0

    def get(self, provider: Provider, job_id: str) -> JobRecord | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(JobRow).where(
                        col(JobRow.provider) == provider.value,
                        col(JobRow.job_id) == job_id,
                    ),
                ).one_or_none()
        except SQLAlchemyError as error:
            logger.warning("Failed to read job %s/%s: %s", provider.value, job_id, error)
            return None
        return _to_record(row) if row is not None else None

    def list_all(self, provider: Provider | None = None) -> list[JobRecord]:
        return self._select(provider=provider)

    def list_by_status(
        self,
        status: JobStatus,
        provider: Provider | None = None,
    ) -> list[JobRecord]:
        return self._select(provider=provider, statuses=(status.value,))

    def list_active(self, provider: Provider | None = None) -> list[JobRecord]:
        return self._select(provider=provider, statuses=_ACTIVE_VALUES)

    def list_recent(
        self,
        provider: Provider | None = None,
        within: timedelta = DEFAULT_RECENT_WINDOW,
    ) -> list[JobRecord]:
        return self._select(provider=provider, spawned_after=utc_now() - within)

    def update(self, provider: Provider, job_id: str, **changes: Any) -> bool:
        """Partial update; ignored for killed jobs unless the change keeps the flag."""

        check_update_fields(changes)
        if not changes:
            return False
        values = _to_column_values(changes)
        if "completed_at" in values:
            values["completed_at"] = func.coalesce(
                col(JobRow.completed_at),
                values["completed_at"],
            )
        conditions = [col(JobRow.provider) == provider.value, col(JobRow.job_id) == job_id]
        if not changes.get("killed_by_user"):
            conditions.append(col(JobRow.killed_by_user) == 0)
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(JobRow).where(*conditions).values(**values),
                )  # type: ignore[call-overload]
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to update job %s/%s: %s", provider.value, job_id, error)
            return False
        return result.rowcount == 1

    def delete(self, provider: Provider, job_id: str) -> bool:
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(JobRow).where(
                        col(JobRow.provider) == provider.value,
                        col(JobRow.job_id) == job_id,
                    ),
                )  # type: ignore[call-overload]
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to delete job %s/%s: %s", provider.value, job_id, error)
            return False
        return result.rowcount > 0

    def cleanup_old_jobs(self, max_age: timedelta = DEFAULT_CLEANUP_MAX_AGE) -> int:
        cutoff = to_iso(utc_now() - max_age)
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(JobRow).where(
                        col(JobRow.status).in_(_TERMINAL_VALUES),
                        col(JobRow.spawned_at) < cutoff,
                    ),
                )  # type: ignore[call-overload]
                session.commit()
        except SQLAlchemyError as error:
            logger.warning("Failed to clean up old jobs: %s", error)
            return 0
        return int(result.rowcount or 0)

    def stats(self) -> JobStats | None:
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(
                        func.count(),
                        func.sum(case((col(JobRow.status).in_(_ACTIVE_VALUES), 1), else_=0)),
                        func.sum(case((col(JobRow.status) == JobStatus.COMPLETED.value, 1), else_=0)),
                        func.sum(case((col(JobRow.status).in_(_FAILED_VALUES), 1), else_=0)),
                    ),
                ).one()
        except SQLAlchemyError as error:
            logger.warning("Failed to compute job stats: %s", error)
            return None
        total, active, completed, failed = row
        return JobStats(
            total=int(total or 0),
            active=int(active or 0),
            completed=int(completed or 0),
            failed=int(failed or 0),
        )

    def _select(
        self,
        *,
        provider: Provider | None = None,
        statuses: tuple[str, ...] | None = None,
        spawned_after: datetime | None = None,
    ) -> list[JobRecord]:
        statement = select(JobRow)
        if provider is not None:
            statement = statement.where(col(JobRow.provider) == provider.value)
        if statuses is not None:
            statement = statement.where(col(JobRow.status).in_(statuses))
        if spawned_after is not None:
            statement = statement.where(col(JobRow.spawned_at) > to_iso(spawned_after))
        statement = statement.order_by(col(JobRow.spawned_at).desc())
        try:
            with Session(self.engine) as session:
                rows = session.exec(statement).all()
        except SQLAlchemyError as error:
            logger.warning("Failed to list jobs: %s", error)
            return []
        return [_to_record(row) for row in rows]


def _to_row_values(record: JobRecord) -> dict[str, Any]:
    return {
        "provider": record.provider.value,
        "job_id": record.job_id,
        "slug": record.slug,
        "status": record.status.value,
        "pid": record.pid,
        "prompt_file": record.prompt_file,
        "response_file": record.response_file,
        "model": record.model,
        "agent_role": record.agent_role,
        "spawned_at": to_iso(record.spawned_at),
        "completed_at": to_iso(record.completed_at) if record.completed_at else None,
        "error": record.error,
        "used_fallback": int(record.used_fallback),
        "fallback_model": record.fallback_model,
        "killed_by_user": int(record.killed_by_user),
    }


def _to_column_values(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in changes.items():
        if isinstance(value, JobStatus):
            values[name] = value.value
        elif isinstance(value, datetime):
            values[name] = to_iso(value)
        elif isinstance(value, bool):
            values[name] = int(value)
        else:
            values[name] = value
    return values


def _to_record(row: JobRow) -> JobRecord:
    return JobRecord(
        provider=Provider(row.provider),
        job_id=row.job_id,
        slug=row.slug,
        status=JobStatus(row.status),
        pid=row.pid,
        prompt_file=row.prompt_file,
        response_file=row.response_file,
        model=row.model,
        agent_role=row.agent_role,
        spawned_at=from_iso(row.spawned_at),
        completed_at=from_iso(row.completed_at) if row.completed_at else None,
        error=row.error,
        used_fallback=bool(row.used_fallback),
        fallback_model=row.fallback_model,
        killed_by_user=bool(row.killed_by_user),
    )
