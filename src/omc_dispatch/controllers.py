"""Controllers for operator CLI commands."""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from omc_dispatch.config import Settings, SettingsError
from omc_dispatch.detection import CliDetector
from omc_dispatch.executor import get_provider_spec
from omc_dispatch.lifecycle import JobOperationResult, StatusFilter, format_record_lines
from omc_dispatch.models import ErrorToken, Provider
from omc_dispatch.service import AskRequest, AskResult, DispatchService


@dataclass(slots=True)
class CommandResult:
    """Rendered CLI output and whether the command succeeded."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class DetectCommand:
    """CLI input for provider CLI detection."""

    provider: Provider


@dataclass(slots=True)
class AskCommand:
    """CLI input for a prompt dispatch."""

    provider: Provider
    workdir: Path | None
    prompt_file: str
    output_file: str
    agent_role: str
    model: str | None
    context_files: tuple[str, ...]
    system_prompt_file: Path | None
    background: bool
    wait_timeout_ms: int


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    workdir: Path | None
    provider: Provider
    status_filter: StatusFilter
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input addressing one job."""

    workdir: Path | None
    provider: Provider
    job_id: str


@dataclass(slots=True)
class JobWaitCommand:
    """CLI input for waiting on one job."""

    workdir: Path | None
    provider: Provider
    job_id: str
    timeout_ms: int


@dataclass(slots=True)
class JobKillCommand:
    """CLI input for signalling one job."""

    workdir: Path | None
    provider: Provider
    job_id: str
    signal: str


@dataclass(slots=True)
class JobsCleanupCommand:
    """CLI input for job record cleanup."""

    workdir: Path | None
    max_age_hours: int | None
    mark_stale_hours: int | None


@dataclass(slots=True)
class JobsStoreCommand:
    """CLI input for store-wide job commands."""

    workdir: Path | None


def _reports_invalid_settings(
    method: Callable[..., CommandResult],
) -> Callable[..., CommandResult]:
    """Render a configuration error as a failed command instead of a traceback."""

    @functools.wraps(method)
    def wrapper(self, command) -> CommandResult:
        try:
            return method(self, command)
        except SettingsError as error:
            return CommandResult(
                lines=[_error_line(ErrorToken.CONFIG_INVALID, f"Invalid configuration: {error}")],
                success=False,
            )

    return wrapper


class DispatchCliController:
    """Coordinates detection, dispatch and job lifecycle CLI operations."""

    def __init__(self, detector: CliDetector | None = None) -> None:
        self.detector = detector or CliDetector()

    def detect(self, command: DetectCommand) -> CommandResult:
        spec = get_provider_spec(command.provider)
        detection = self.detector.detect(spec.command, use_cache=False)
        if not detection.available:
            return CommandResult(
                lines=[
                    f"{spec.command}: not available",
                    f"Error: {detection.error}",
                    f"Install: {detection.install_hint or spec.install_hint}",
                ],
                success=False,
            )
        return CommandResult(
            lines=[
                f"{spec.command}: available",
                f"Path: {detection.path}",
                f"Version: {detection.version or 'unknown'}",
            ],
        )

    @_reports_invalid_settings
    def ask(self, command: AskCommand) -> CommandResult:
        system_prompt = None
        if command.system_prompt_file is not None:
            try:
                system_prompt = command.system_prompt_file.read_text(encoding="utf-8")
            except OSError as error:
                return CommandResult(
                    lines=[f"Failed to read system prompt file: {error}"],
                    success=False,
                )

        with self._service(command.workdir) as service:
            result = service.ask(
                command.provider,
                AskRequest(
                    prompt_file=command.prompt_file,
                    output_file=command.output_file,
                    agent_role=command.agent_role,
                    model=command.model,
                    context_files=command.context_files,
                    system_prompt=system_prompt,
                    background=command.background,
                    working_directory=command.workdir,
                ),
            )
            lines = _ask_lines(result, agent_role=command.agent_role, background=command.background)
            if not result.success or not command.background or result.job_id is None:
                return CommandResult(lines=lines, success=result.success)

            root = service.storage_root(command.workdir)
            waited = service.lifecycle_for(root).wait(
                command.provider,
                result.job_id,
                timeout_ms=command.wait_timeout_ms,
            )
        return CommandResult(lines=[*lines, "", *_operation_lines(waited)], success=waited.success)

    @_reports_invalid_settings
    def list_jobs(self, command: JobsListCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            records = service.lifecycle_for().list_jobs(
                command.provider,
                command.status_filter,
                command.limit,
            )
        if not records:
            return CommandResult(
                lines=[f"No {command.status_filter} {command.provider.value} jobs found."],
            )
        lines = [f"**{len(records)} {command.provider.value} job(s) found:**", ""]
        for record in records:
            lines.append(
                f"- **{record.job_id}** [{record.status.value}] "
                f"{record.provider.value}/{record.model} ({record.agent_role})",
            )
            lines.append(f"  Spawned: {record.spawned_at.isoformat()}")
            if record.completed_at is not None:
                lines.append(f"  Completed: {record.completed_at.isoformat()}")
            if record.error:
                lines.append(f"  Error: {record.error}")
            if record.pid:
                lines.append(f"  PID: {record.pid}")
        return CommandResult(lines=lines)

    @_reports_invalid_settings
    def status(self, command: JobCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            result = service.lifecycle_for().check_status(command.provider, command.job_id)
        return CommandResult(lines=_operation_lines(result), success=result.success)

    @_reports_invalid_settings
    def wait(self, command: JobWaitCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            result = service.lifecycle_for().wait(
                command.provider,
                command.job_id,
                timeout_ms=command.timeout_ms,
            )
        return CommandResult(lines=_operation_lines(result), success=result.success)

    @_reports_invalid_settings
    def kill(self, command: JobKillCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            result = service.lifecycle_for().kill(
                command.provider,
                command.job_id,
                signal=command.signal,
            )
        return CommandResult(lines=_operation_lines(result), success=result.success)

    @_reports_invalid_settings
    def cleanup(self, command: JobsCleanupCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            store = service.store_for(service.storage_root())
            lines: list[str] = []
            if command.mark_stale_hours is not None:
                marked = store.mark_stale_jobs(timedelta(hours=command.mark_stale_hours))
                lines.append(f"Marked stale: {marked} job(s) moved to timeout")
            max_age_hours = (
                command.max_age_hours
                if command.max_age_hours is not None
                else service.settings.storage.cleanup_max_age_hours
            )
            removed = store.cleanup_old_jobs(timedelta(hours=max_age_hours))
        lines.append(f"Cleanup: removed {removed} terminal job(s) older than {max_age_hours}h")
        return CommandResult(lines=lines)

    @_reports_invalid_settings
    def migrate(self, command: JobsStoreCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            store = service.store_for(service.storage_root())
            if not store.sql_available:
                return CommandResult(
                    lines=["Job database is unavailable; nothing was migrated."],
                    success=False,
                )
            result = store.migrate_json_to_sql()
        return CommandResult(
            lines=[f"Migration: imported={result.imported} errors={result.errors}"],
            success=result.errors == 0,
        )

    @_reports_invalid_settings
    def stats(self, command: JobsStoreCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            store = service.store_for(service.storage_root())
            stats = store.stats()
            backend = "sqlite+json" if store.sql_available else "json"
        return CommandResult(
            lines=[
                f"Backend: {backend}",
                f"Jobs: total={stats.total} active={stats.active} "
                f"completed={stats.completed} failed={stats.failed}",
            ],
        )

    @_reports_invalid_settings
    def summary(self, command: JobsStoreCommand) -> CommandResult:
        with self._service(command.workdir) as service:
            lines = service.lifecycle_for().summary_lines()
        return CommandResult(lines=lines or ["No jobs recorded."])

    @contextmanager
    def _service(self, workdir: Path | None) -> Iterator[DispatchService]:
        service = DispatchService(
            working_directory=workdir,
            settings=Settings.load(),
            detector=self.detector,
        )
        try:
            yield service
        finally:
            service.close()


def _ask_lines(result: AskResult, *, agent_role: str, background: bool) -> list[str]:
    if not result.success and result.job_id is None:
        return [_error_line(result.error_token, result.message)]

    lines: list[str] = []
    if background:
        lines.append("**Mode:** Background (non-blocking)")
    lines.append(f"**Agent Role:** {agent_role}")
    if result.job_id:
        lines.append(f"**Job ID:** {result.job_id}")
    if result.model:
        lines.append(f"**Model:** {result.model}")
    if result.fallback_chain:
        lines.append(f"**Fallback chain:** {' -> '.join(result.fallback_chain)}")
    if result.pid:
        lines.append(f"**PID:** {result.pid}")
    if result.prompt_file:
        lines.append(f"**Prompt File:** {result.prompt_file}")
    if result.response_file:
        lines.append(f"**Response File:** {result.response_file}")
    if result.status_file:
        lines.append(f"**Status File:** {result.status_file}")
    if result.output_file and not background:
        lines.append(f"**Output File:** {result.output_file}")
    lines.append("")
    if result.success:
        lines.append(result.message)
    else:
        lines.append(_error_line(result.error_token, result.message))
    return lines


def _operation_lines(result: JobOperationResult) -> list[str]:
    lines: list[str] = []
    if result.success:
        lines.append(result.message)
    else:
        lines.append(_error_line(result.error_token, result.message))
    if result.record is not None:
        lines.extend(format_record_lines(result.record))
    if result.response_preview is not None:
        lines.extend(["", "**Response preview:**", result.response_preview])
    return lines


def _error_line(token: ErrorToken | None, message: str) -> str:
    return f"Error [{token.value if token else 'unknown'}]: {message}"
