"""Allow-list for executables the launcher may spawn."""

from __future__ import annotations

import logging
import os

from omc_dispatch.security.errors import CommandNotAllowedError

logger = logging.getLogger(__name__)

ALLOWED_COMMANDS: frozenset[str] = frozenset(
    {
        "node",
        "npx",
        "python",
        "python3",
        "ruby",
        "go",
        "deno",
        "bun",
        "uvx",
        "uv",
        "cargo",
        "java",
        "dotnet",
        "codex",
        "gemini",
    },
)


def validate_command(command: str, *, allowed: frozenset[str] = ALLOWED_COMMANDS) -> str:
    """Return ``command`` unchanged when it is a bare allow-listed executable name."""

    if not command or command != command.strip():
        raise CommandNotAllowedError(f"Command not in whitelist: {command!r}")
    if os.path.isabs(command) or "/" in command or "\\" in command:
        logger.warning("[Security] Rejected command with path component: %s", command)
        raise CommandNotAllowedError(
            f"Command must be a bare executable name, not a path: {command!r}",
        )
    if command not in allowed:
        logger.warning("[Security] Rejected command outside whitelist: %s", command)
        raise CommandNotAllowedError(f"Command not in whitelist: {command!r}")
    return command
