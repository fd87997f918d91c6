"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from omc_dispatch.config import Settings

_OMC_ENV_VARS = (
    "OMC_MCP_OUTPUT_PATH_POLICY",
    "OMC_MCP_OUTPUT_REDIRECT_DIR",
    "OMC_MCP_ALLOW_EXTERNAL_PROMPT",
    "OMC_ALLOW_EXTERNAL_WORKDIR",
    "OMC_CODEX_TIMEOUT",
    "OMC_GEMINI_TIMEOUT",
    "OMC_CODEX_DEFAULT_MODEL",
    "OMC_GEMINI_DEFAULT_MODEL",
    "OMC_ENV_VAR_POLICY",
    "OMC_MAX_OUTPUT_BYTES",
    "OMC_JOB_CLEANUP_MAX_AGE_HOURS",
    "OMC_SQLITE_BUSY_TIMEOUT_MS",
)


@pytest.fixture(autouse=True)
def clean_omc_env(monkeypatch):
    """Run every test without OMC_* overrides from the developer shell."""
    for name in _OMC_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    """A git-like worktree root so job storage lands under ``tmp_path``."""
    root = tmp_path / "project"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture()
def settings() -> Settings:
    return Settings()
