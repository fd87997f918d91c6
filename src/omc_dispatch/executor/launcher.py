"""Subprocess launcher: allow-listed command, filtered env, prompt on stdin."""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from omc_dispatch.executor.collector import DEFAULT_MAX_OUTPUT_BYTES, OutputCollector
from omc_dispatch.models import AttemptState, EnvVarPolicy
from omc_dispatch.security import filter_environment, validate_command

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024
_STREAM_JOIN_SECONDS = 5.0
_GRACEFUL_KILL_SECONDS = 2.0


class LaunchError(RuntimeError):
    """Process could not be started, with a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class LaunchSpec:
    """One attempt's process parameters."""

    command: str
    args: list[str]
    prompt: str
    timeout_seconds: float
    cwd: Path | None = None
    env_overrides: dict[str, str] = field(default_factory=dict)
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES


@dataclass(slots=True)
class AttemptResult:
    """Final state of one subprocess attempt."""

    state: AttemptState
    exit_code: int | None
    stdout: str
    stderr: str
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    error: str | None = None


class LaunchedProcess(Protocol):
    """Handle to a running attempt."""

    @property
    def pid(self) -> int: ...

    @property
    def state(self) -> AttemptState: ...

    def wait(self) -> AttemptResult: ...


class ProcessLauncher(Protocol):
    """Start one attempt; raises ``LaunchError`` or ``SecurityError`` when refused."""

    def spawn(self, spec: LaunchSpec) -> LaunchedProcess: ...


class SubprocessLauncher:
    """Launch provider CLIs as detached process groups."""

    def __init__(self, *, env_policy: EnvVarPolicy = EnvVarPolicy.STRIP) -> None:
        self.env_policy = env_policy

    def spawn(self, spec: LaunchSpec) -> SubprocessHandle:
        command = validate_command(spec.command)
        filtered = filter_environment(
            spec.env_overrides,
            target=command,
            policy=self.env_policy,
        )
        env = os.environ.copy()
        env.update(filtered.env)

        executable = shutil.which(command, path=env.get("PATH"))
        if executable is None:
            raise LaunchError(f"Command not found in PATH: {command}", transient=False)

        try:
            process = subprocess.Popen(  # noqa: S603
                [executable, *spec.args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=spec.cwd,
                env=env,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as error:
            raise LaunchError(f"Command not found: {command}", transient=False) from error
        except OSError as error:
            raise LaunchError(f"Failed to spawn {command}: {error}", transient=True) from error

        handle = SubprocessHandle(process=process, spec=spec)
        logger.debug(
            "Spawned %s (pid %s, %s) with args %s",
            command,
            process.pid,
            handle.state.value,
            spec.args,
        )
        return handle


class SubprocessHandle:
    """Feeds stdin, drains stdout/stderr on threads, enforces the timeout.

    ``state`` follows ``SPAWNING -> RUNNING -> COMPLETED | FAILED | TIMEOUT``.
    """

    def __init__(self, *, process: subprocess.Popen[bytes], spec: LaunchSpec) -> None:
        self._process = process
        self._spec = spec
        self._stdout = OutputCollector(spec.max_output_bytes)
        self._stderr = OutputCollector(spec.max_output_bytes)
        self._stdin_error: str | None = None
        self._state = AttemptState.SPAWNING
        self._threads = [
            threading.Thread(target=self._feed_stdin, daemon=True),
            threading.Thread(
                target=_drain,
                args=(process.stdout, self._stdout),
                daemon=True,
            ),
            threading.Thread(
                target=_drain,
                args=(process.stderr, self._stderr),
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        self._state = AttemptState.RUNNING

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def state(self) -> AttemptState:
        return self._state

    def wait(self) -> AttemptResult:
        timed_out = False
        try:
            self._process.wait(timeout=self._spec.timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(
                "%s (pid %s) timed out after %.0fs",
                self._spec.command,
                self._process.pid,
                self._spec.timeout_seconds,
            )
            _terminate_process_group(self._process)

        for thread in self._threads:
            thread.join(timeout=_STREAM_JOIN_SECONDS)

        if timed_out:
            state = AttemptState.TIMEOUT
            error = (
                f"{self._spec.command} timed out after "
                f"{int(self._spec.timeout_seconds * 1000)}ms"
            )
        elif self._process.returncode == 0:
            state = AttemptState.COMPLETED
            error = None
        else:
            state = AttemptState.FAILED
            error = self._stdin_error
        self._state = state

        return AttemptResult(
            state=state,
            exit_code=self._process.returncode,
            stdout=self._stdout.text(),
            stderr=self._stderr.text(),
            stdout_truncated=self._stdout.truncated,
            stderr_truncated=self._stderr.truncated,
            error=error,
        )

    def _feed_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            stdin.write(self._spec.prompt.encode("utf-8"))
        except (BrokenPipeError, OSError) as error:
            self._stdin_error = f"Stdin write error: {error}"
        finally:
            try:
                stdin.close()
            except OSError:
                pass


def _drain(stream: IO[bytes] | None, collector: OutputCollector) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not chunk:
                break
            collector.append(chunk)
    except (OSError, ValueError) as error:
        logger.debug("Output stream closed early: %s", error)
    finally:
        stream.close()


def send_signal_to_group(pid: int, sig: signal.Signals) -> None:
    """Signal the whole process group on POSIX, the process elsewhere."""

    if os.name == "posix":
        os.killpg(pid, sig)
    else:
        os.kill(pid, sig)


def _terminate_process_group(process: subprocess.Popen[bytes]) -> None:
    try:
        send_signal_to_group(process.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    except OSError:
        try:
            process.terminate()
        except OSError:
            return
    try:
        process.wait(timeout=_GRACEFUL_KILL_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            send_signal_to_group(process.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        except OSError:
            process.kill()
        process.wait(timeout=_GRACEFUL_KILL_SECONDS)
