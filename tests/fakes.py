"""In-memory stand-ins for provider processes, CLI detection and job records."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from omc_dispatch.detection import CliDetection
from omc_dispatch.executor import AttemptResult, LaunchSpec
from omc_dispatch.models import AttemptState, JobRecord, JobStatus, Provider, utc_now


def make_record(  # noqa: PLR0913
    *,
    job_id: str = "0123abcd",
    provider: Provider = Provider.CODEX,
    slug: str = "review-the-code",
    status: JobStatus = JobStatus.RUNNING,
    spawned_at: datetime | None = None,
    pid: int | None = 4242,
    **overrides,
) -> JobRecord:
    record = JobRecord(
        provider=provider,
        job_id=job_id,
        slug=slug,
        status=status,
        prompt_file=f"/tmp/{provider.value}-prompt-{slug}-{job_id}.md",
        response_file=f"/tmp/{provider.value}-response-{slug}-{job_id}.md",
        model="gpt-5.3-codex",
        agent_role="architect",
        spawned_at=spawned_at or utc_now() - timedelta(minutes=1),
        pid=pid,
    )
    for name, value in overrides.items():
        setattr(record, name, value)
    return record


@dataclass
class ScriptedAttempt:
    """What a fake provider process reports for one model."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    state: AttemptState = AttemptState.COMPLETED
    error: str | None = None
    on_wait: Callable[[LaunchSpec], None] | None = None


class FakeHandle:
    def __init__(self, pid: int, spec: LaunchSpec, attempt: ScriptedAttempt) -> None:
        self._pid = pid
        self._spec = spec
        self._attempt = attempt
        self.state = AttemptState.RUNNING

    @property
    def pid(self) -> int:
        return self._pid

    def wait(self) -> AttemptResult:
        if self._attempt.on_wait is not None:
            self._attempt.on_wait(self._spec)
        self.state = self._attempt.state
        return AttemptResult(
            state=self._attempt.state,
            exit_code=self._attempt.exit_code,
            stdout=self._attempt.stdout,
            stderr=self._attempt.stderr,
            error=self._attempt.error,
        )


@dataclass
class FakeLauncher:
    """Launcher that answers per model from a script instead of spawning processes."""

    script: dict[str, ScriptedAttempt] = field(default_factory=dict)
    default: ScriptedAttempt = field(default_factory=lambda: ScriptedAttempt(stdout="ok"))
    spawn_error: Exception | None = None
    specs: list[LaunchSpec] = field(default_factory=list)
    _pids: itertools.count = field(default_factory=lambda: itertools.count(50_000))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def spawn(self, spec: LaunchSpec) -> FakeHandle:
        if self.spawn_error is not None:
            raise self.spawn_error
        with self._lock:
            self.specs.append(spec)
            pid = next(self._pids)
        model = spec.args[spec.args.index("--model" if "--model" in spec.args else "-m") + 1]
        return FakeHandle(pid, spec, self.script.get(model, self.default))

    @property
    def models(self) -> list[str]:
        return [
            spec.args[spec.args.index("--model" if "--model" in spec.args else "-m") + 1]
            for spec in self.specs
        ]


class StaticDetector:
    """Detector stand-in reporting every CLI as installed (or not)."""

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.calls: list[str] = []

    def detect(self, command: str, *, use_cache: bool = True) -> CliDetection:
        self.calls.append(command)
        if self.available:
            return CliDetection(available=True, path=f"/usr/bin/{command}", version="1.0.0")
        return CliDetection(
            available=False,
            error=f"Executable not found in PATH: {command}",
            install_hint=f"npm install -g {command}",
        )

    def reset(self) -> None:
        self.calls.clear()
