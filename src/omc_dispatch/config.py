"""Runtime configuration for provider dispatch and job persistence."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from omc_dispatch.models import EnvVarPolicy, OutputPathPolicy, Provider

DEFAULT_PROVIDER_TIMEOUT_MS = 3_600_000
MIN_PROVIDER_TIMEOUT_MS = 5_000
MAX_PROVIDER_TIMEOUT_MS = 3_600_000
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DEFAULT_REDIRECT_DIR = ".omc/outputs"

class SettingsError(ValueError):
    """Environment configuration that cannot be parsed or used."""


_DEFAULT_MODELS: dict[Provider, str] = {
    Provider.CODEX: "gpt-5.3-codex",
    Provider.GEMINI: "gemini-3-pro-preview",
}


@dataclass(slots=True)
class OutputSettings:
    """Where provider output files may be written."""

    path_policy: OutputPathPolicy = OutputPathPolicy.STRICT
    redirect_dir: str = DEFAULT_REDIRECT_DIR


@dataclass(slots=True)
class BoundarySettings:
    """Working-directory and prompt-file boundary relaxations."""

    allow_external_prompt: bool = False
    allow_external_workdir: bool = False


@dataclass(slots=True)
class ProviderSettings:
    """Per-provider execution defaults."""

    timeout_ms: int = DEFAULT_PROVIDER_TIMEOUT_MS
    default_model: str = ""


@dataclass(slots=True)
class StorageSettings:
    """Job store persistence settings."""

    cleanup_max_age_hours: int = 24
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Dispatch settings grouped by concern."""

    output: OutputSettings = field(default_factory=OutputSettings)
    boundary: BoundarySettings = field(default_factory=BoundarySettings)
    codex: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(default_model=_DEFAULT_MODELS[Provider.CODEX]),
    )
    gemini: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(default_model=_DEFAULT_MODELS[Provider.GEMINI]),
    )
    storage: StorageSettings = field(default_factory=StorageSettings)
    env_var_policy: EnvVarPolicy = EnvVarPolicy.STRIP
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES

    @classmethod
    def load(cls) -> Settings:
        """Load and validate settings from the environment; raises ``SettingsError``."""

        try:
            settings = cls.from_env()
            settings.validate()
        except ValueError as error:
            raise SettingsError(str(error)) from error
        return settings

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables, falling back to safe defaults."""

        return cls(
            output=OutputSettings(
                path_policy=_env_choice(
                    "OMC_MCP_OUTPUT_PATH_POLICY",
                    OutputPathPolicy,
                    default=OutputPathPolicy.STRICT,
                ),
                redirect_dir=(
                    os.getenv("OMC_MCP_OUTPUT_REDIRECT_DIR", "").strip() or DEFAULT_REDIRECT_DIR
                ),
            ),
            boundary=BoundarySettings(
                allow_external_prompt=_env_bool("OMC_MCP_ALLOW_EXTERNAL_PROMPT", default=False),
                allow_external_workdir=_env_bool("OMC_ALLOW_EXTERNAL_WORKDIR", default=False),
            ),
            codex=ProviderSettings(
                timeout_ms=_env_timeout_ms("OMC_CODEX_TIMEOUT"),
                default_model=(
                    os.getenv("OMC_CODEX_DEFAULT_MODEL", "").strip()
                    or _DEFAULT_MODELS[Provider.CODEX]
                ),
            ),
            gemini=ProviderSettings(
                timeout_ms=_env_timeout_ms("OMC_GEMINI_TIMEOUT"),
                default_model=(
                    os.getenv("OMC_GEMINI_DEFAULT_MODEL", "").strip()
                    or _DEFAULT_MODELS[Provider.GEMINI]
                ),
            ),
            storage=StorageSettings(
                cleanup_max_age_hours=_env_int("OMC_JOB_CLEANUP_MAX_AGE_HOURS", default=24),
                sqlite_busy_timeout_ms=_env_int("OMC_SQLITE_BUSY_TIMEOUT_MS", default=5_000),
            ),
            env_var_policy=_env_choice(
                "OMC_ENV_VAR_POLICY",
                EnvVarPolicy,
                default=EnvVarPolicy.STRIP,
            ),
            max_output_bytes=_env_int("OMC_MAX_OUTPUT_BYTES", default=DEFAULT_MAX_OUTPUT_BYTES),
        )

    def provider(self, provider: Provider) -> ProviderSettings:
        """Settings block for one provider."""

        if provider is Provider.CODEX:
            return self.codex
        return self.gemini

    def validate(self) -> None:
        """Raise configuration error for values that cannot be used at runtime."""

        if self.max_output_bytes <= 0:
            raise ValueError("OMC_MAX_OUTPUT_BYTES must be > 0.")
        if self.storage.cleanup_max_age_hours < 0:
            raise ValueError("OMC_JOB_CLEANUP_MAX_AGE_HOURS must be >= 0.")
        if self.storage.sqlite_busy_timeout_ms <= 0:
            raise ValueError("OMC_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        redirect = Path(self.output.redirect_dir)
        if redirect.is_absolute() or ".." in redirect.parts:
            raise ValueError(
                "OMC_MCP_OUTPUT_REDIRECT_DIR must be a relative path inside the working directory: "
                f"{self.output.redirect_dir!r}",
            )


def clamp_timeout_ms(value: int) -> int:
    """Clamp a provider timeout into the supported window."""

    return max(MIN_PROVIDER_TIMEOUT_MS, min(MAX_PROVIDER_TIMEOUT_MS, value))


def _env_int(name: str, *, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_timeout_ms(name: str) -> int:
    value = _env_int(name, default=DEFAULT_PROVIDER_TIMEOUT_MS)
    if value <= 0:
        return DEFAULT_PROVIDER_TIMEOUT_MS
    return clamp_timeout_ms(value)


def _env_choice(name: str, enum_type, *, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    normalized = raw.strip().lower()
    try:
        return enum_type(normalized)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"Invalid value for {name}: {raw!r}. Expected one of: {allowed}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
