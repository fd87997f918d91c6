"""Job lifecycle operations: wait, status, kill, list, summary."""

from __future__ import annotations

import logging
import signal as signals
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Literal

from omc_dispatch.executor.launcher import send_signal_to_group
from omc_dispatch.models import (
    ErrorToken,
    JobRecord,
    JobStatus,
    Provider,
    utc_now,
)
from omc_dispatch.persistence import PromptStore, is_valid_job_id
from omc_dispatch.storage import JobStateStore

logger = logging.getLogger(__name__)

ALLOWED_SIGNALS: tuple[str, ...] = ("SIGTERM", "SIGINT")
MAX_PID = 4_194_304
DEFAULT_WAIT_TIMEOUT_MS = 3_600_000
MIN_WAIT_TIMEOUT_MS = 1_000
MAX_WAIT_TIMEOUT_MS = 3_600_000
POLL_BASE_SECONDS = 0.5
POLL_FACTOR = 1.5
POLL_CAP_SECONDS = 2.0
KILL_RECHECK_ATTEMPTS = 3
KILL_RECHECK_SECONDS = 0.05
RESPONSE_PREVIEW_CHARS = 500
SUMMARY_RECENT_LIMIT = 10
SUMMARY_ERROR_CHARS = 80

StatusFilter = Literal["active", "completed", "failed", "all"]


class PidRegistry:
    """Process ids spawned by this service; only these may be signalled."""

    def __init__(self) -> None:
        self._pids: set[int] = set()
        self._lock = threading.Lock()

    def add(self, pid: int) -> None:
        with self._lock:
            self._pids.add(pid)

    def discard(self, pid: int) -> None:
        with self._lock:
            self._pids.discard(pid)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._pids

    def reset(self) -> None:
        with self._lock:
            self._pids.clear()


@dataclass(slots=True)
class JobOperationResult:
    """Structured outcome of one lifecycle operation."""

    success: bool
    message: str
    error_token: ErrorToken | None = None
    record: JobRecord | None = None
    response_preview: str | None = None
    response_path: str | None = None


class JobLifecycle:
    """Caller-facing operations over the job store of one working tree."""

    def __init__(
        self,
        *,
        store: JobStateStore,
        prompt_store: PromptStore,
        pids: PidRegistry,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.prompt_store = prompt_store
        self.pids = pids
        self._sleep = sleep
        self._clock = clock

    def check_status(self, provider: Provider, job_id: str) -> JobOperationResult:
        invalid = _check_job_id(job_id)
        if invalid is not None:
            return invalid
        record = self.store.resolve(provider, job_id)
        if record is None:
            return self._response_fallback(provider, job_id) or _not_found(job_id)
        if not record.status.is_terminal and self.prompt_store.response_exists(
            provider,
            record.slug,
            job_id,
        ):
            return self._completed(replace(record, status=JobStatus.COMPLETED))
        return JobOperationResult(
            success=True,
            message=f"Job {job_id} is {record.status.value}.",
            record=record,
        )

    def wait(
        self,
        provider: Provider,
        job_id: str,
        timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
    ) -> JobOperationResult:
        """Poll until the job reaches a terminal state or the timeout elapses.

        Polling backs off from 500 ms by a factor of 1.5 up to 2 s. The
        timeout is clamped to ``[1 s, 1 h]``. A job whose status is missing or
        still active while its response file exists is reported as completed.
        """

        invalid = _check_job_id(job_id)
        if invalid is not None:
            return invalid
        effective_ms = max(MIN_WAIT_TIMEOUT_MS, min(timeout_ms, MAX_WAIT_TIMEOUT_MS))
        deadline = self._clock() + effective_ms / 1000
        delay = POLL_BASE_SECONDS

        while True:
            record = self.store.resolve(provider, job_id)
            if record is None:
                return self._response_fallback(provider, job_id) or _not_found(job_id)
            if record.status.is_terminal:
                return self._terminal(record)
            if self.prompt_store.response_exists(provider, record.slug, job_id):
                return self._completed(replace(record, status=JobStatus.COMPLETED))

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(delay, remaining))
            delay = min(delay * POLL_FACTOR, POLL_CAP_SECONDS)

        return JobOperationResult(
            success=False,
            message=(
                f"Timed out waiting for job {job_id} after {effective_ms}ms. "
                "The job is still running; check its status later."
            ),
            error_token=ErrorToken.WAIT_TIMEOUT,
            record=record,
        )

    def kill(
        self,
        provider: Provider,
        job_id: str,
        signal: str = "SIGTERM",
    ) -> JobOperationResult:
        """Signal a running job's process group and mark it failed.

        The record is flagged ``killed_by_user`` before the signal is sent so
        the executing chain stops writing success artifacts. A racing
        completion that overwrites the failed status is re-asserted a few
        times.
        """

        if signal not in ALLOWED_SIGNALS:
            return JobOperationResult(
                success=False,
                message=f"Invalid signal: {signal}. Allowed signals: {', '.join(ALLOWED_SIGNALS)}",
                error_token=ErrorToken.INVALID_SIGNAL,
            )
        invalid = _check_job_id(job_id)
        if invalid is not None:
            return invalid

        record = self.store.resolve(provider, job_id)
        if record is None:
            return _not_found(job_id)
        if record.status.is_terminal:
            return JobOperationResult(
                success=False,
                message=(
                    f"Job {job_id} is already in terminal state: {record.status.value}. "
                    "Cannot kill."
                ),
                error_token=ErrorToken.JOB_NOT_ACTIVE,
                record=record,
            )
        pid = record.pid
        if pid is None or not 0 < pid <= MAX_PID:
            return JobOperationResult(
                success=False,
                message=f"Job {job_id} has no valid PID recorded. Cannot send signal.",
                error_token=ErrorToken.PID_NOT_OWNED,
                record=record,
            )
        if pid not in self.pids:
            logger.warning("[Security] Refusing to signal PID %s not spawned by this service", pid)
            return JobOperationResult(
                success=False,
                message=(
                    f"Job {job_id} PID {pid} was not spawned by this process. "
                    "Refusing to send signal for safety."
                ),
                error_token=ErrorToken.PID_NOT_OWNED,
                record=record,
            )

        flagged = replace(record, killed_by_user=True)
        self.store.upsert(flagged)
        killed_error = f"Killed by user (signal: {signal})"
        try:
            send_signal_to_group(pid, signals.Signals[signal])
        except ProcessLookupError:
            current = self.store.resolve(provider, job_id) or flagged
            if current.status is JobStatus.COMPLETED:
                return JobOperationResult(
                    success=True,
                    message=f"Process {pid} already exited. Job {job_id} completed successfully.",
                    record=current,
                )
            failed = _as_killed(
                current,
                f"Killed by user (process already exited, signal: {signal})",
            )
            self.store.upsert(failed)
            return JobOperationResult(
                success=True,
                message=f"Process {pid} already exited. Job marked as failed.",
                record=failed,
            )
        except OSError as error:
            logger.warning("Failed to signal job %s (pid %s): %s", job_id, pid, error)
            return JobOperationResult(
                success=False,
                message=f"Failed to kill process {pid}: {error}",
                error_token=ErrorToken.KILL_FAILED,
                record=flagged,
            )

        failed = _as_killed(flagged, killed_error)
        self.store.upsert(failed)
        for _ in range(KILL_RECHECK_ATTEMPTS):
            self._sleep(KILL_RECHECK_SECONDS)
            current = self.store.resolve(provider, job_id)
            if current is None or current.status is JobStatus.FAILED:
                break
            logger.info("Job %s status was overwritten after kill, re-asserting", job_id)
            failed = _as_killed(current, killed_error)
            self.store.upsert(failed)

        return JobOperationResult(
            success=True,
            message=f"Sent {signal} to job {job_id} (PID {pid}). Job marked as failed.",
            record=failed,
        )

    def list_jobs(
        self,
        provider: Provider,
        status_filter: StatusFilter = "active",
        limit: int = 50,
    ) -> list[JobRecord]:
        """Jobs for one provider, newest first; ``failed`` includes timeouts."""

        if status_filter == "active":
            records = self.store.list_active(provider)
        elif status_filter == "completed":
            records = self.store.list_by_status(JobStatus.COMPLETED, provider)
        elif status_filter == "failed":
            records = [
                *self.store.list_by_status(JobStatus.FAILED, provider),
                *self.store.list_by_status(JobStatus.TIMEOUT, provider),
            ]
        elif status_filter == "all":
            records = self.store.list_all(provider)
        else:
            raise ValueError(f"Unsupported status filter: {status_filter!r}")
        unique = {record.key: record for record in records}
        ordered = sorted(unique.values(), key=lambda record: record.spawned_at, reverse=True)
        return ordered[: max(limit, 0)]

    def summary_lines(self, within: timedelta = timedelta(hours=1)) -> list[str]:
        """Markdown summary of active jobs, recent terminal jobs and totals."""

        lines: list[str] = []
        now = utc_now()
        active = self.store.list_active()
        if active:
            lines.extend(["## Active Background Jobs", ""])
            for record in active:
                elapsed_min = round((now - record.spawned_at).total_seconds() / 60)
                lines.append(
                    f"- **{record.provider.value}** `{record.job_id}` "
                    f"({record.agent_role}, {record.model}): "
                    f"{record.status.value} for {elapsed_min}m",
                )
                lines.append(f"  - Prompt: `{record.prompt_file}`")
                lines.append(f"  - Response: `{record.response_file}`")
                if record.pid:
                    lines.append(f"  - PID: {record.pid}")
            lines.append("")

        terminal = [
            record for record in self.store.list_recent(within=within) if record.status.is_terminal
        ]
        if terminal:
            lines.extend(["## Recent Completed Jobs (last hour)", ""])
            lines.extend(_summary_entry(record) for record in terminal[:SUMMARY_RECENT_LIMIT])
            if len(terminal) > SUMMARY_RECENT_LIMIT:
                lines.append(f"- ... and {len(terminal) - SUMMARY_RECENT_LIMIT} more")
            lines.append("")

        stats = self.store.stats()
        if stats.total > 0:
            lines.append(
                f"**Job totals:** {stats.total} total, {stats.active} active, "
                f"{stats.completed} completed, {stats.failed} failed",
            )
        return lines

    def _terminal(self, record: JobRecord) -> JobOperationResult:
        if record.status is JobStatus.COMPLETED:
            return self._completed(record)
        if record.killed_by_user:
            token = ErrorToken.JOB_CANCELLED
        elif record.status is JobStatus.TIMEOUT:
            token = ErrorToken.PROVIDER_TIMEOUT
        else:
            token = ErrorToken.PROVIDER_FAILED
        detail = f" {record.error}" if record.error else ""
        return JobOperationResult(
            success=False,
            message=f"Job {record.job_id} {record.status.value}.{detail}",
            error_token=token,
            record=record,
        )

    def _completed(self, record: JobRecord) -> JobOperationResult:
        response = self.prompt_store.read_completed_response(
            record.provider,
            record.slug,
            record.job_id,
        )
        if response is None:
            preview = "(response file not found)"
        elif len(response) > RESPONSE_PREVIEW_CHARS:
            preview = response[:RESPONSE_PREVIEW_CHARS] + "..."
        else:
            preview = response
        return JobOperationResult(
            success=True,
            message=f"Job {record.job_id} completed.",
            record=record,
            response_preview=preview,
            response_path=record.response_file,
        )

    def _response_fallback(self, provider: Provider, job_id: str) -> JobOperationResult | None:
        found = self.prompt_store.find_response(provider, job_id)
        if found is None:
            return None
        slug, path = found
        logger.info(
            "No status for %s job %s; response file exists, reporting completed",
            provider.value,
            job_id,
        )
        readiness = self.prompt_store.check_response_ready(provider, slug, job_id)
        record = readiness.status or JobRecord(
            provider=provider,
            job_id=job_id,
            slug=slug,
            status=JobStatus.COMPLETED,
            prompt_file=str(self.prompt_store.prompt_path(provider, slug, job_id)),
            response_file=str(path),
            model="",
            agent_role="",
            spawned_at=utc_now(),
        )
        return self._completed(replace(record, status=JobStatus.COMPLETED))


def _as_killed(record: JobRecord, error: str) -> JobRecord:
    return replace(
        record,
        status=JobStatus.FAILED,
        killed_by_user=True,
        completed_at=record.completed_at or utc_now(),
        error=error,
    )


def _summary_entry(record: JobRecord) -> str:
    state = "done" if record.status is JobStatus.COMPLETED else record.status.value
    fallback = f" (fallback: {record.fallback_model})" if record.used_fallback else ""
    error_note = f" - error: {record.error[:SUMMARY_ERROR_CHARS]}" if record.error else ""
    return (
        f"- **{record.provider.value}** `{record.job_id}` "
        f"({record.agent_role}): {state}{fallback}{error_note}"
    )


def _check_job_id(job_id: str) -> JobOperationResult | None:
    if job_id and is_valid_job_id(job_id):
        return None
    return JobOperationResult(
        success=False,
        message=f"Invalid job id: {job_id!r}. Expected 8 lowercase hex characters.",
        error_token=ErrorToken.INVALID_JOB_ID,
    )


def _not_found(job_id: str) -> JobOperationResult:
    return JobOperationResult(
        success=False,
        message=f"No job found with ID: {job_id}",
        error_token=ErrorToken.JOB_NOT_FOUND,
    )


def format_record_lines(record: JobRecord) -> Iterable[str]:
    """Markdown field lines describing one job record."""

    yield f"**Job ID:** {record.job_id}"
    yield f"**Provider:** {record.provider.value}"
    yield f"**Status:** {record.status.value}"
    yield f"**Model:** {record.model}"
    yield f"**Agent Role:** {record.agent_role}"
    yield f"**Spawned At:** {record.spawned_at.isoformat()}"
    if record.completed_at is not None:
        yield f"**Completed At:** {record.completed_at.isoformat()}"
    if record.pid:
        yield f"**PID:** {record.pid}"
    yield f"**Prompt File:** {record.prompt_file}"
    yield f"**Response File:** {record.response_file}"
    if record.error:
        yield f"**Error:** {record.error}"
    if record.used_fallback:
        yield f"**Fallback Model:** {record.fallback_model}"
    if record.killed_by_user:
        yield "**Killed By User:** yes"
