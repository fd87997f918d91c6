"""Domain models for provider dispatch and job lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Provider(str, Enum):
    """Supported external AI CLI providers."""

    CODEX = "codex"
    GEMINI = "gemini"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    SPAWNED = "spawned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.SPAWNED, JobStatus.RUNNING})
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT},
)


class AttemptState(str, Enum):
    """Per-attempt subprocess states."""

    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class FailureClass(str, Enum):
    """Normalized attempt failure classes used by the fallback chain."""

    MODEL_ERROR = "model_error"
    RATE_LIMIT = "rate_limit"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"

    @property
    def retryable(self) -> bool:
        return self in {FailureClass.MODEL_ERROR, FailureClass.RATE_LIMIT}


class OutputPathPolicy(str, Enum):
    """How output paths outside the working directory are treated."""

    STRICT = "strict"
    REDIRECT_OUTPUT = "redirect_output"


class EnvVarPolicy(str, Enum):
    """What happens to blocked environment variable overrides."""

    WARN = "warn"
    STRIP = "strip"
    BLOCK = "block"


class ErrorToken(str, Enum):
    """Machine-readable error tokens returned to callers."""

    PATH_OUTSIDE_WORKDIR_OUTPUT = "E_PATH_OUTSIDE_WORKDIR_OUTPUT"
    PATH_OUTSIDE_WORKDIR_PROMPT = "E_PATH_OUTSIDE_WORKDIR_PROMPT"
    PATH_RESOLUTION_FAILED = "E_PATH_RESOLUTION_FAILED"
    WRITE_FAILED = "E_WRITE_FAILED"
    WORKDIR_INVALID = "E_WORKDIR_INVALID"
    INVALID_ROLE = "E_INVALID_ROLE"
    INVALID_MODEL = "E_INVALID_MODEL"
    CONFIG_INVALID = "E_CONFIG_INVALID"
    PROMPT_FILE_REQUIRED = "E_PROMPT_FILE_REQUIRED"
    PROMPT_FILE_UNREADABLE = "E_PROMPT_FILE_UNREADABLE"
    PROMPT_EMPTY = "E_PROMPT_EMPTY"
    OUTPUT_FILE_REQUIRED = "E_OUTPUT_FILE_REQUIRED"
    CONTEXT_FILE_REJECTED = "E_CONTEXT_FILE_REJECTED"
    CLI_UNAVAILABLE = "E_CLI_UNAVAILABLE"
    PERSIST_FAILED = "E_PERSIST_FAILED"
    SECURITY_VIOLATION = "E_SECURITY_VIOLATION"
    PROVIDER_FAILED = "E_PROVIDER_FAILED"
    PROVIDER_TIMEOUT = "E_PROVIDER_TIMEOUT"
    JOB_CANCELLED = "E_JOB_CANCELLED"
    INVALID_JOB_ID = "E_INVALID_JOB_ID"
    JOB_NOT_FOUND = "E_JOB_NOT_FOUND"
    JOB_NOT_ACTIVE = "E_JOB_NOT_ACTIVE"
    INVALID_SIGNAL = "E_INVALID_SIGNAL"
    PID_NOT_OWNED = "E_PID_NOT_OWNED"
    KILL_FAILED = "E_KILL_FAILED"
    WAIT_TIMEOUT = "E_WAIT_TIMEOUT"


@dataclass(slots=True)
class JobRecord:
    """One background or foreground provider job keyed by (provider, job_id)."""

    provider: Provider
    job_id: str
    slug: str
    status: JobStatus
    prompt_file: str
    response_file: str
    model: str
    agent_role: str
    spawned_at: datetime
    pid: int | None = None
    completed_at: datetime | None = None
    error: str | None = None
    used_fallback: bool = False
    fallback_model: str | None = None
    killed_by_user: bool = False

    @property
    def key(self) -> tuple[Provider, str]:
        return (self.provider, self.job_id)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase status-file schema."""

        payload: dict[str, Any] = {
            "provider": self.provider.value,
            "jobId": self.job_id,
            "slug": self.slug,
            "status": self.status.value,
            "pid": self.pid,
            "promptFile": self.prompt_file,
            "responseFile": self.response_file,
            "model": self.model,
            "agentRole": self.agent_role,
            "spawnedAt": to_iso(self.spawned_at),
        }
        if self.completed_at is not None:
            payload["completedAt"] = to_iso(self.completed_at)
        if self.error is not None:
            payload["error"] = self.error
        if self.used_fallback:
            payload["usedFallback"] = True
            payload["fallbackModel"] = self.fallback_model
        if self.killed_by_user:
            payload["killedByUser"] = True
        return payload

    @classmethod
    def from_json_dict(cls, payload: dict[str, Any]) -> JobRecord:
        """Parse a status-file payload; raises ``ValueError`` on missing identity fields."""

        for key in ("provider", "jobId", "promptFile"):
            if not payload.get(key):
                raise ValueError(f"Status payload is missing required field: {key}")
        pid = payload.get("pid")
        completed_at = payload.get("completedAt")
        return cls(
            provider=Provider(payload["provider"]),
            job_id=str(payload["jobId"]),
            slug=str(payload.get("slug") or ""),
            status=JobStatus(payload.get("status") or JobStatus.SPAWNED.value),
            pid=int(pid) if pid is not None else None,
            prompt_file=str(payload["promptFile"]),
            response_file=str(payload.get("responseFile") or ""),
            model=str(payload.get("model") or ""),
            agent_role=str(payload.get("agentRole") or ""),
            spawned_at=from_iso(payload["spawnedAt"]) if payload.get("spawnedAt") else utc_now(),
            completed_at=from_iso(completed_at) if completed_at else None,
            error=payload.get("error"),
            used_fallback=bool(payload.get("usedFallback", False)),
            fallback_model=payload.get("fallbackModel"),
            killed_by_user=bool(payload.get("killedByUser", False)),
        )


@dataclass(slots=True)
class MigrationResult:
    """Outcome of importing JSON status files into the SQL backend."""

    imported: int = 0
    errors: int = 0


@dataclass(slots=True)
class JobStats:
    """Aggregate job counts."""

    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class SecurityWarning:
    """Structured event emitted when a gatekeeper flags an input."""

    variable: str
    target: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    """Render a fixed-width UTC timestamp that sorts lexicographically."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds")


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed
