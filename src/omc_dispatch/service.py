"""Dispatch service: validate a request, persist it, run the provider chain."""

from __future__ import annotations

import logging
import os
import stat
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

from omc_dispatch.config import Settings, SettingsError
from omc_dispatch.detection import CliDetector
from omc_dispatch.executor import (
    ChainOutcome,
    ChainOutcomeKind,
    FallbackChain,
    FallbackExecutor,
    ProcessLauncher,
    ProviderSpec,
    SubprocessLauncher,
    build_fallback_chain,
    get_provider_spec,
    is_valid_model_name,
)
from omc_dispatch.lifecycle import JobLifecycle, PidRegistry
from omc_dispatch.models import ErrorToken, JobRecord, JobStatus, Provider, utc_now
from omc_dispatch.output_guard import OutputPathGuard
from omc_dispatch.persistence import PersistedPrompt, PromptStore
from omc_dispatch.prompts import (
    build_full_prompt,
    build_output_instruction,
    is_valid_role_name,
    wrap_untrusted_file_content,
)
from omc_dispatch.security import (
    PatternRegistry,
    find_worktree_root,
    is_path_within,
    validate_resource_paths,
)
from omc_dispatch.storage import JobStateStore

logger = logging.getLogger(__name__)

MAX_CONTEXT_FILES = 20
MAX_CONTEXT_FILE_BYTES = 5 * 1024 * 1024
DEFAULT_SPAWN_WAIT_SECONDS = 10.0


@dataclass(slots=True)
class AskRequest:
    """One prompt dispatch request."""

    prompt_file: str
    output_file: str
    agent_role: str
    model: str | None = None
    context_files: tuple[str, ...] = ()
    system_prompt: str | None = None
    background: bool = False
    working_directory: Path | None = None
    env_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AskResult:
    """Structured outcome of ``DispatchService.ask``."""

    success: bool
    message: str
    error_token: ErrorToken | None = None
    job_id: str | None = None
    pid: int | None = None
    model: str | None = None
    fallback_chain: tuple[str, ...] = ()
    used_fallback: bool = False
    fallback_model: str | None = None
    prompt_file: Path | None = None
    response_file: Path | None = None
    status_file: Path | None = None
    output_file: Path | None = None
    output_written_by_provider: bool = False
    response: str | None = None


@dataclass(slots=True)
class _Job:
    provider: Provider
    spec: ProviderSpec
    request: AskRequest
    workdir: Path
    store: JobStateStore
    prompt_store: PromptStore
    guard: OutputPathGuard
    persisted: PersistedPrompt
    chain: FallbackChain
    full_prompt: str
    output_target: Path
    output_mtime_before: float | None
    record: JobRecord

    @property
    def job_id(self) -> str:
        return self.persisted.job_id


class _JobObserver:
    """Writes per-attempt status and answers cancellation checks."""

    def __init__(self, job: _Job, pids: PidRegistry, spawned: threading.Event | None) -> None:
        self.job = job
        self.pids = pids
        self.spawned = spawned
        self.first_pid: int | None = None
        self.last_pid: int | None = None

    def on_spawned(self, model: str, pid: int) -> None:
        if self.last_pid is not None:
            self.pids.discard(self.last_pid)
        self.pids.add(pid)
        self.last_pid = pid
        if self.first_pid is None:
            self.first_pid = pid
        logger.info(
            "%s job %s attempt started with model %s (pid %s)",
            self.job.provider.value,
            self.job.job_id,
            model,
            pid,
        )
        store = self.job.store
        attempt = replace(self.job.record, model=model, pid=pid, status=JobStatus.SPAWNED)
        store.upsert(attempt)
        store.upsert(replace(attempt, status=JobStatus.RUNNING))
        self.job.record = replace(attempt, status=JobStatus.RUNNING)
        if self.spawned is not None:
            self.spawned.set()

    def is_cancelled(self) -> bool:
        current = self.job.store.resolve(self.job.provider, self.job.job_id)
        return current is not None and current.killed_by_user


class DispatchService:
    """Long-lived dispatcher owning settings, detection, PID registry and job stores.

    ``ask`` runs a request in the foreground and returns the response, or in
    the background, returning the job id and first PID as soon as the first
    attempt has spawned. ``reset`` clears every cache so tests can start from
    a clean state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        working_directory: Path | None = None,
        settings: Settings | None = None,
        launcher: ProcessLauncher | None = None,
        detector: CliDetector | None = None,
        enable_sql: bool = True,
        spawn_wait_seconds: float = DEFAULT_SPAWN_WAIT_SECONDS,
    ) -> None:
        self.working_directory = working_directory or Path.cwd()
        self._explicit_settings = settings
        self._settings: Settings | None = settings
        self._launcher = launcher
        self.detector = detector or CliDetector()
        self.enable_sql = enable_sql
        self.spawn_wait_seconds = spawn_wait_seconds
        self.pids = PidRegistry()
        self.patterns = PatternRegistry()
        self._stores: dict[Path, JobStateStore] = {}
        self._stores_lock = threading.Lock()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.load()
        return self._settings

    @property
    def launcher(self) -> ProcessLauncher:
        if self._launcher is not None:
            return self._launcher
        return SubprocessLauncher(env_policy=self.settings.env_var_policy)

    def reset(self) -> None:
        """Forget cached settings, CLI detections, PIDs, patterns and open stores."""

        self.detector.reset()
        self.pids.reset()
        self.patterns.reset()
        self._settings = self._explicit_settings
        self.close()

    def close(self) -> None:
        with self._stores_lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()

    def register_pattern(
        self,
        *,
        tool: str,
        pattern: str,
        description: str = "",
        source: str = "caller",
    ) -> bool:
        return self.patterns.register(
            tool=tool,
            pattern=pattern,
            description=description,
            source=source,
        )

    def unregister_patterns(self, source: str) -> int:
        return self.patterns.remove_source(source)

    def storage_root(self, directory: Path | None = None) -> Path:
        """Worktree root holding ``.omc/``, or the directory itself outside git."""

        base = Path(os.path.realpath(directory or self.working_directory))
        return find_worktree_root(base) or base

    def store_for(self, root: Path) -> JobStateStore:
        with self._stores_lock:
            store = self._stores.get(root)
            if store is None:
                store = JobStateStore(
                    root,
                    enable_sql=self.enable_sql,
                    busy_timeout_ms=self.settings.storage.sqlite_busy_timeout_ms,
                )
                self._stores[root] = store
            return store

    def lifecycle_for(self, root: Path | None = None) -> JobLifecycle:
        root = root or self.storage_root()
        return JobLifecycle(
            store=self.store_for(root),
            prompt_store=PromptStore(root),
            pids=self.pids,
        )

    def ask(self, provider: Provider, request: AskRequest) -> AskResult:  # noqa: C901, PLR0911, PLR0912
        try:
            settings = self.settings
        except SettingsError as error:
            logger.warning("Invalid dispatch configuration: %s", error)
            return _error(ErrorToken.CONFIG_INVALID, f"Invalid configuration: {error}")
        spec = get_provider_spec(provider)

        requested_dir = request.working_directory or self.working_directory
        try:
            workdir = Path(os.path.realpath(requested_dir, strict=True))
        except OSError as error:
            return _error(
                ErrorToken.WORKDIR_INVALID,
                f"working_directory '{requested_dir}' does not exist or is not accessible: {error}",
            )
        if not workdir.is_dir():
            return _error(
                ErrorToken.WORKDIR_INVALID,
                f"working_directory '{requested_dir}' is not a directory.",
            )
        if not settings.boundary.allow_external_workdir:
            project_root = self.storage_root()
            if not is_path_within(project_root, workdir):
                logger.warning(
                    "[Security] working directory %s is outside project worktree %s",
                    workdir,
                    project_root,
                )
                return _error(
                    ErrorToken.WORKDIR_INVALID,
                    (
                        f"working_directory '{requested_dir}' is outside the project worktree "
                        f"({project_root}). Set OMC_ALLOW_EXTERNAL_WORKDIR=1 to bypass."
                    ),
                )

        role = request.agent_role
        if not role or not is_valid_role_name(role) or role not in spec.valid_roles:
            return _error(
                ErrorToken.INVALID_ROLE,
                (
                    f'Invalid agent_role: "{role}". {provider.value} requires one of: '
                    f"{', '.join(spec.valid_roles)}"
                ),
            )
        if request.model and not is_valid_model_name(request.model):
            return _error(ErrorToken.INVALID_MODEL, f"Invalid model name: {request.model!r}")
        if not request.output_file or not request.output_file.strip():
            return _error(
                ErrorToken.OUTPUT_FILE_REQUIRED,
                "output_file is required. Specify a path where the response should be written.",
            )
        if not request.prompt_file or not request.prompt_file.strip():
            return _error(ErrorToken.PROMPT_FILE_REQUIRED, "prompt_file is required.")

        prompt_or_error = self._read_prompt(workdir, request.prompt_file)
        if isinstance(prompt_or_error, AskResult):
            return prompt_or_error
        prompt_text = prompt_or_error

        guard = OutputPathGuard(boundary=workdir, settings=settings.output)
        plan = guard.plan(request.output_file)
        if not plan.success or plan.actual_path is None:
            return _error(
                plan.error_token or ErrorToken.PATH_RESOLUTION_FAILED,
                plan.error_message or "Output path could not be resolved.",
            )
        output_target = plan.actual_path

        detection = self.detector.detect(spec.command)
        if not detection.available:
            return _error(
                ErrorToken.CLI_UNAVAILABLE,
                (
                    f"{spec.command} CLI is not available: {detection.error}\n\n"
                    f"{detection.install_hint or spec.install_hint}"
                ),
            )

        context_files = list(request.context_files)
        if len(context_files) > MAX_CONTEXT_FILES:
            return _error(
                ErrorToken.CONTEXT_FILE_REJECTED,
                f"Too many context files (max {MAX_CONTEXT_FILES}, got {len(context_files)})",
            )
        if context_files and not validate_resource_paths(
            workdir,
            context_files,
            label="context_files",
        ):
            return _error(
                ErrorToken.CONTEXT_FILE_REJECTED,
                "One or more context files resolve outside the working directory.",
            )
        file_context = "\n\n".join(_read_context_file(workdir, name) for name in context_files)

        user_prompt = f"{build_output_instruction(str(output_target))}\n\n{prompt_text}"
        full_prompt = build_full_prompt(
            user_prompt,
            file_context=file_context or None,
            system_prompt=request.system_prompt,
        )
        chain = build_fallback_chain(
            spec,
            explicit_model=request.model,
            default_model=settings.provider(provider).default_model,
        )

        root = self.storage_root(workdir)
        prompt_store = PromptStore(root)
        persisted = prompt_store.persist_prompt(
            provider=provider,
            agent_role=role,
            model=chain.effective_model,
            prompt=prompt_text,
            full_prompt=full_prompt,
            files=context_files,
        )
        if persisted is None:
            return _error(ErrorToken.PERSIST_FAILED, "Failed to persist prompt.")

        response_path = prompt_store.expected_response_path(
            provider,
            persisted.slug,
            persisted.job_id,
        )
        job = _Job(
            provider=provider,
            spec=spec,
            request=request,
            workdir=workdir,
            store=self.store_for(root),
            prompt_store=prompt_store,
            guard=guard,
            persisted=persisted,
            chain=chain,
            full_prompt=full_prompt,
            output_target=output_target,
            output_mtime_before=_mtime(output_target),
            record=JobRecord(
                provider=provider,
                job_id=persisted.job_id,
                slug=persisted.slug,
                status=JobStatus.SPAWNED,
                prompt_file=str(persisted.file_path),
                response_file=str(response_path),
                model=chain.models[0],
                agent_role=role,
                spawned_at=utc_now(),
            ),
        )
        if request.background:
            return self._ask_background(job)
        observer = _JobObserver(job, self.pids, spawned=None)
        outcome = self._run_chain(job, observer)
        return self._finalize(job, outcome, observer)

    def _ask_background(self, job: _Job) -> AskResult:
        spawned = threading.Event()
        observer = _JobObserver(job, self.pids, spawned=spawned)
        failure: list[AskResult] = []

        def _run() -> None:
            try:
                outcome = self._run_chain(job, observer)
                result = self._finalize(job, outcome, observer)
            except Exception as error:  # noqa: BLE001
                logger.exception("Background %s job %s crashed", job.provider.value, job.job_id)
                job.store.upsert(
                    replace(
                        job.record,
                        status=JobStatus.FAILED,
                        completed_at=utc_now(),
                        error=f"Background job crashed: {error}",
                    ),
                )
                result = _error(ErrorToken.PROVIDER_FAILED, str(error))
            if not result.success and observer.first_pid is None:
                failure.append(result)
            spawned.set()

        thread = threading.Thread(
            target=_run,
            name=f"omc-{job.provider.value}-{job.job_id}",
            daemon=True,
        )
        thread.start()
        spawned.wait(timeout=self.spawn_wait_seconds)

        paths = self._job_paths(job)
        if failure:
            first = failure[0]
            return replace(
                first,
                message=f"Failed to spawn background job: {first.message}",
                **paths,
            )
        return AskResult(
            success=True,
            message=f"Background job {job.job_id} dispatched.",
            job_id=job.job_id,
            pid=observer.first_pid,
            model=job.chain.models[0],
            fallback_chain=job.chain.models,
            **paths,
        )

    def _run_chain(self, job: _Job, observer: _JobObserver) -> ChainOutcome:
        settings = self.settings
        job.store.upsert(job.record)
        return FallbackExecutor(self.launcher).run(
            spec=job.spec,
            chain=job.chain,
            prompt=job.full_prompt,
            timeout_seconds=settings.provider(job.provider).timeout_ms / 1000,
            cwd=job.workdir,
            env_overrides=job.request.env_overrides,
            max_output_bytes=settings.max_output_bytes,
            observer=observer,
        )

    def _finalize(self, job: _Job, outcome: ChainOutcome, observer: _JobObserver) -> AskResult:
        if observer.last_pid is not None:
            self.pids.discard(observer.last_pid)
        paths = self._job_paths(job)
        common = {
            "job_id": job.job_id,
            "pid": observer.first_pid,
            "model": outcome.model,
            "fallback_chain": job.chain.models,
            **paths,
        }

        if outcome.kind is ChainOutcomeKind.CANCELLED or observer.is_cancelled():
            logger.info("%s job %s was killed by user", job.provider.value, job.job_id)
            return AskResult(
                success=False,
                message=f"Job {job.job_id} was cancelled by user.",
                error_token=ErrorToken.JOB_CANCELLED,
                **common,
            )

        if not outcome.succeeded or outcome.response is None:
            timed_out = outcome.kind is ChainOutcomeKind.TIMEOUT
            status = JobStatus.TIMEOUT if timed_out else JobStatus.FAILED
            job.store.upsert(
                replace(
                    job.record,
                    model=outcome.model,
                    status=status,
                    completed_at=utc_now(),
                    error=outcome.error,
                ),
            )
            if timed_out:
                token = ErrorToken.PROVIDER_TIMEOUT
            elif outcome.kind is ChainOutcomeKind.REFUSED:
                token = ErrorToken.SECURITY_VIOLATION
            else:
                token = ErrorToken.PROVIDER_FAILED
            return AskResult(
                success=False,
                message=f"{job.spec.command} CLI error: {outcome.error}",
                error_token=token,
                **common,
            )

        response = outcome.response
        if observer.is_cancelled():
            return AskResult(
                success=False,
                message=f"Job {job.job_id} was cancelled by user.",
                error_token=ErrorToken.JOB_CANCELLED,
                **common,
            )
        job.prompt_store.persist_response(
            provider=job.provider,
            agent_role=job.record.agent_role,
            model=outcome.model,
            job_id=job.job_id,
            slug=job.persisted.slug,
            response=response,
            used_fallback=outcome.used_fallback,
            fallback_model=outcome.fallback_model,
        )
        job.store.upsert(
            replace(
                job.record,
                model=outcome.model,
                status=JobStatus.COMPLETED,
                completed_at=utc_now(),
                used_fallback=outcome.used_fallback,
                fallback_model=outcome.fallback_model,
            ),
        )

        written_by_provider = _provider_wrote(job.output_target, job.output_mtime_before)
        output_file = job.output_target
        if not written_by_provider:
            write = job.guard.write(job.request.output_file, response)
            if not write.success:
                logger.warning(
                    "Output file for %s job %s was not written: %s",
                    job.provider.value,
                    job.job_id,
                    write.error_message,
                )
                return AskResult(
                    success=False,
                    message=write.error_message or "Failed to write output file.",
                    error_token=write.error_token or ErrorToken.WRITE_FAILED,
                    used_fallback=outcome.used_fallback,
                    fallback_model=outcome.fallback_model,
                    response=response,
                    **common,
                )
            output_file = write.actual_path or output_file

        message = f"{job.spec.command} job {job.job_id} completed."
        if outcome.used_fallback:
            message = (
                f"[Fallback: used {outcome.model} instead of {job.chain.effective_model}] "
                f"{message}"
            )
        common["output_file"] = output_file
        return AskResult(
            success=True,
            message=message,
            used_fallback=outcome.used_fallback,
            fallback_model=outcome.fallback_model,
            output_written_by_provider=written_by_provider,
            response=response,
            **common,
        )

    @staticmethod
    def _job_paths(job: _Job) -> dict[str, Path]:
        store = job.prompt_store
        slug, job_id = job.persisted.slug, job.job_id
        return {
            "prompt_file": job.persisted.file_path,
            "response_file": store.expected_response_path(job.provider, slug, job_id),
            "status_file": store.status_file_path(job.provider, slug, job_id),
            "output_file": job.output_target,
        }

    def _read_prompt(self, workdir: Path, prompt_file: str) -> str | AskResult:
        candidate = Path(os.path.normpath(workdir / prompt_file))
        external_allowed = self.settings.boundary.allow_external_prompt
        if not external_allowed and not is_path_within(workdir, prompt_file):
            logger.warning(
                "[Security] prompt_file %s escapes working directory %s",
                prompt_file,
                workdir,
            )
            return _error(
                ErrorToken.PATH_OUTSIDE_WORKDIR_PROMPT,
                f"prompt_file '{prompt_file}' is outside the working directory.",
            )
        try:
            real_path = Path(os.path.realpath(candidate, strict=True))
        except OSError as error:
            return _error(
                ErrorToken.PROMPT_FILE_UNREADABLE,
                f"Failed to resolve prompt_file '{prompt_file}': {error}",
            )
        if not external_allowed and not is_path_within(workdir, real_path):
            return _error(
                ErrorToken.PATH_OUTSIDE_WORKDIR_PROMPT,
                f"prompt_file '{prompt_file}' resolves to a path outside the working directory.",
            )
        try:
            content = real_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            return _error(
                ErrorToken.PROMPT_FILE_UNREADABLE,
                f"Failed to read prompt_file '{prompt_file}': {error}",
            )
        if not content.strip():
            return _error(ErrorToken.PROMPT_EMPTY, f"prompt_file '{prompt_file}' is empty.")
        return content


def _error(token: ErrorToken, message: str) -> AskResult:
    return AskResult(success=False, message=message, error_token=token)


def _read_context_file(workdir: Path, name: str) -> str:
    path = Path(os.path.realpath(workdir / name))
    try:
        info = path.stat()
    except OSError:
        return wrap_untrusted_file_content(name, "(Error reading file)")
    if not stat.S_ISREG(info.st_mode):
        return wrap_untrusted_file_content(name, "(Not a regular file)")
    if info.st_size > MAX_CONTEXT_FILE_BYTES:
        size_mb = info.st_size / (1024 * 1024)
        return wrap_untrusted_file_content(name, f"(File too large: {size_mb:.1f}MB, max 5MB)")
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        logger.warning("Failed to read context file %s: %s", name, error)
        return wrap_untrusted_file_content(name, "(Error reading file)")
    return wrap_untrusted_file_content(name, content)


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


def _provider_wrote(path: Path, mtime_before: float | None) -> bool:
    current = _mtime(path)
    if current is None:
        return False
    return mtime_before is None or current > mtime_before
