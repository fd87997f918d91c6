"""Security gatekeeper errors."""

from __future__ import annotations


class SecurityError(RuntimeError):
    """Raised when a gatekeeper rejects an input outright."""


class CommandNotAllowedError(SecurityError):
    """Spawn command is not in the interpreter allow-list."""


class BlockedEnvironmentError(SecurityError):
    """Environment override names a blocked variable under the ``block`` policy."""
