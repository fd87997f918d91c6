"""Availability probes for external provider CLIs."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5
_PREVIEW_LIMIT = 200

INSTALL_HINTS: dict[str, str] = {
    "codex": "npm install -g @openai/codex",
    "gemini": "npm install -g @google/gemini-cli",
}


@dataclass(slots=True, frozen=True)
class CliDetection:
    """Probe outcome for one executable."""

    available: bool
    path: str | None = None
    version: str | None = None
    error: str | None = None
    install_hint: str | None = None


class CliDetector:
    """Resolve provider executables on PATH and cache the result per command."""

    def __init__(self, *, timeout_seconds: int = PROBE_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self._cache: dict[str, CliDetection] = {}
        self._lock = threading.Lock()

    def detect(self, command: str, *, use_cache: bool = True) -> CliDetection:
        """Return availability, path and version for ``command``; never raises."""

        if use_cache:
            with self._lock:
                cached = self._cache.get(command)
            if cached is not None:
                return cached

        detection = _probe(command, timeout_seconds=self.timeout_seconds)
        with self._lock:
            self._cache[command] = detection
        return detection

    def reset(self) -> None:
        """Drop cached results so the next detect call re-probes."""

        with self._lock:
            self._cache.clear()


def _probe(command: str, *, timeout_seconds: int) -> CliDetection:
    hint = INSTALL_HINTS.get(command)
    resolved = shutil.which(command)
    if resolved is None:
        return CliDetection(
            available=False,
            error=f"Executable not found in PATH: {command}",
            install_hint=hint,
        )

    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, "--version"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return CliDetection(
            available=False,
            path=resolved,
            error="Version probe timed out.",
            install_hint=hint,
        )
    except OSError as error:
        logger.warning("Version probe for %s failed to start: %s", resolved, error)
        return CliDetection(
            available=False,
            path=resolved,
            error=f"Version probe failed to start: {error}",
            install_hint=hint,
        )

    if completed.returncode != 0:
        return CliDetection(
            available=False,
            path=resolved,
            error=f"Version probe exited with code {completed.returncode}.",
            install_hint=hint,
        )

    version = (completed.stdout or completed.stderr).strip()
    return CliDetection(
        available=True,
        path=resolved,
        version=version[:_PREVIEW_LIMIT] or None,
    )
