from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from omc_dispatch.models import EnvVarPolicy
from omc_dispatch.security import (
    BlockedEnvironmentError,
    CommandNotAllowedError,
    PatternRegistry,
    check_regex,
    filter_environment,
    find_worktree_root,
    is_blocked_env_var,
    is_path_within,
    is_regex_safe,
    validate_command,
    validate_resource_paths,
)

pytestmark = [
    allure.epic("Security"),
    allure.feature("Gatekeepers"),
]


@pytest.mark.parametrize("command", ["codex", "gemini", "node", "python3", "uvx"])
def test_validate_command_accepts_allow_listed_names(command: str) -> None:
    assert validate_command(command) == command


def test_validate_command_rejects_unknown_executable() -> None:
    with pytest.raises(CommandNotAllowedError, match="Command not in whitelist: 'bash'"):
        validate_command("bash")


@pytest.mark.parametrize("command", ["/usr/bin/node", "./codex", "bin/gemini", "..\\node"])
def test_validate_command_rejects_paths(command: str) -> None:
    with pytest.raises(CommandNotAllowedError, match="bare executable name"):
        validate_command(command)


def test_validate_command_rejects_padded_name() -> None:
    with pytest.raises(CommandNotAllowedError):
        validate_command(" codex")


def test_blocked_env_var_lookup_is_case_insensitive() -> None:
    assert is_blocked_env_var("LD_PRELOAD")
    assert is_blocked_env_var("node_options")
    assert not is_blocked_env_var("HOME")


def test_filter_environment_strip_drops_blocked_keys_with_warning() -> None:
    filtered = filter_environment(
        {"LD_PRELOAD": "/tmp/evil.so", "OPENAI_API_KEY": "sk-test"},
        target="codex",
        policy=EnvVarPolicy.STRIP,
    )

    assert filtered.env == {"OPENAI_API_KEY": "sk-test"}
    assert [warning.variable for warning in filtered.warnings] == ["LD_PRELOAD"]
    assert filtered.warnings[0].target == "codex"
    assert filtered.warnings[0].details == {"policy": "strip"}


def test_filter_environment_warn_keeps_blocked_keys() -> None:
    filtered = filter_environment(
        {"NODE_OPTIONS": "--require /tmp/x.js"},
        target="gemini",
        policy=EnvVarPolicy.WARN,
    )

    assert filtered.env == {"NODE_OPTIONS": "--require /tmp/x.js"}
    assert len(filtered.warnings) == 1


def test_filter_environment_block_raises_with_every_offender() -> None:
    with pytest.raises(BlockedEnvironmentError, match="BASH_ENV, PYTHONPATH"):
        filter_environment(
            {"PYTHONPATH": "/tmp", "BASH_ENV": "/tmp/rc", "TERM": "xterm"},
            target="codex",
            policy=EnvVarPolicy.BLOCK,
        )


def test_filter_environment_accepts_missing_overrides() -> None:
    filtered = filter_environment(None, target="codex", policy=EnvVarPolicy.BLOCK)

    assert filtered.env == {}
    assert filtered.warnings == []


@pytest.mark.parametrize(
    ("pattern", "reason"),
    [
        ("(a+)+$", "nested quantifier"),
        ("([a-zA-Z]+)*", "nested quantifier"),
        ("(.*a){100}", "nested quantifier"),
        ("(a*)*b", "nested quantifier"),
        ("(.a|b.)*", "overlapping alternation under quantifier"),
        ("a?" * 26, "too many quantifiers"),
    ],
)
def test_check_regex_rejects_backtracking_prone_patterns(pattern: str, reason: str) -> None:
    verdict = check_regex(pattern)

    assert not verdict.safe
    assert verdict.reason == reason


@pytest.mark.parametrize(
    "pattern",
    [r"^[a-z]+$", r"\d{4}-\d{2}-\d{2}", "hello|world", "(xa|yb)*", "a?" * 25],
)
def test_check_regex_accepts_linear_patterns(pattern: str) -> None:
    assert is_regex_safe(pattern)


def test_check_regex_reports_invalid_pattern() -> None:
    verdict = check_regex("(unclosed")

    assert not verdict.safe
    assert verdict.reason is not None
    assert verdict.reason.startswith("invalid pattern:")


def test_pattern_registry_keeps_only_safe_patterns() -> None:
    registry = PatternRegistry()

    assert registry.register(tool="codex", pattern=r"error:\s+\w+", source="config")
    assert not registry.register(tool="codex", pattern="(a+)+$", source="config")

    entries = registry.patterns("codex")
    assert len(entries) == 1
    assert entries[0].description == "Safe pattern from config"
    assert registry.patterns("gemini") == []


def test_pattern_registry_matches_per_tool_and_resets() -> None:
    registry = PatternRegistry()
    registry.register(tool="codex", pattern="quota", description="quota hits")

    matched = registry.matches("codex", "daily quota reached")
    assert matched is not None
    assert matched.description == "quota hits"
    assert registry.matches("gemini", "daily quota reached") is None

    registry.reset()
    assert registry.patterns() == []


def test_pattern_registry_removes_patterns_by_source() -> None:
    registry = PatternRegistry()
    registry.register(tool="codex", pattern="quota", source="plugin-a")
    registry.register(tool="gemini", pattern="limit", source="plugin-a")
    registry.register(tool="codex", pattern="denied", source="config")

    assert registry.remove_source("plugin-a") == 2
    assert registry.remove_source("plugin-a") == 0

    assert [entry.source for entry in registry.patterns()] == ["config"]
    assert registry.matches("codex", "daily quota reached") is None


@pytest.mark.parametrize(
    ("pattern", "safe"),
    [
        (r"\d++x", True),
        (r"(?>ab|cd)x", True),
        (r"(?>a+)+$", False),
        (r"(?P<y>\d{4})-(?P=y)", True),
        (r"(?<=a)b(?!c)", True),
    ],
)
def test_check_regex_walks_current_parser_opcodes(pattern: str, safe: bool) -> None:
    assert is_regex_safe(pattern) is safe


def test_is_path_within_rejects_parent_traversal(tmp_path: Path) -> None:
    assert is_path_within(tmp_path, "notes/a.md")
    assert is_path_within(tmp_path, ".")
    assert not is_path_within(tmp_path, "../outside.md")
    assert not is_path_within(tmp_path, "notes/../../outside.md")


def test_is_path_within_rejects_symlink_escape(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret", "utf-8")
    os.symlink(outside, base / "link")

    assert not is_path_within(base, "link/secret.txt")


def test_validate_resource_paths_fails_whole_set_on_one_escape(tmp_path: Path) -> None:
    assert validate_resource_paths(tmp_path, "a.txt")
    assert validate_resource_paths(tmp_path, ["a.txt", "dir/b.txt"])
    assert not validate_resource_paths(tmp_path, ["a.txt", "../../etc/passwd"], label="context")


def test_find_worktree_root_walks_up_to_git_marker(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    nested = root / "src" / "pkg"
    nested.mkdir(parents=True)
    (root / ".git").mkdir()

    assert find_worktree_root(nested) == root.resolve()
    assert find_worktree_root(root) == root.resolve()


def test_find_worktree_root_returns_none_outside_git(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    if find_worktree_root(tmp_path) is not None:
        pytest.skip("temporary directory lives inside a git worktree")
    assert find_worktree_root(plain) is None
