"""Security gatekeepers for spawned commands, environments, patterns and paths."""

from omc_dispatch.security.commands import ALLOWED_COMMANDS, validate_command
from omc_dispatch.security.environment import (
    BLOCKED_ENV_VARS,
    FilteredEnvironment,
    filter_environment,
    is_blocked_env_var,
)
from omc_dispatch.security.errors import (
    BlockedEnvironmentError,
    CommandNotAllowedError,
    SecurityError,
)
from omc_dispatch.security.paths import find_worktree_root, is_path_within, validate_resource_paths
from omc_dispatch.security.regex_safety import PatternRegistry, check_regex, is_regex_safe

__all__ = [
    "ALLOWED_COMMANDS",
    "BLOCKED_ENV_VARS",
    "BlockedEnvironmentError",
    "CommandNotAllowedError",
    "FilteredEnvironment",
    "PatternRegistry",
    "SecurityError",
    "check_regex",
    "filter_environment",
    "find_worktree_root",
    "is_blocked_env_var",
    "is_path_within",
    "is_regex_safe",
    "validate_command",
    "validate_resource_paths",
]
