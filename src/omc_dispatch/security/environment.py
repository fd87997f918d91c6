"""Blocklist for environment overrides passed to spawned processes."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from omc_dispatch.models import EnvVarPolicy, SecurityWarning
from omc_dispatch.security.errors import BlockedEnvironmentError

logger = logging.getLogger(__name__)

BLOCKED_ENV_VARS: frozenset[str] = frozenset(
    {
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "NODE_OPTIONS",
        "NODE_DEBUG",
        "ELECTRON_RUN_AS_NODE",
        "PYTHONSTARTUP",
        "PYTHONPATH",
        "RUBYOPT",
        "PERL5OPT",
        "BASH_ENV",
        "ENV",
        "ZDOTDIR",
    },
)


@dataclass(slots=True)
class FilteredEnvironment:
    """Overrides that survived the policy plus the warnings raised on the way."""

    env: dict[str, str] = field(default_factory=dict)
    warnings: list[SecurityWarning] = field(default_factory=list)


def is_blocked_env_var(name: str) -> bool:
    return name.upper() in BLOCKED_ENV_VARS


def filter_environment(
    overrides: Mapping[str, str] | None,
    *,
    target: str,
    policy: EnvVarPolicy,
) -> FilteredEnvironment:
    """Apply ``policy`` to blocked keys in ``overrides`` for the process named ``target``.

    ``warn`` keeps the variable, ``strip`` drops it, ``block`` raises
    ``BlockedEnvironmentError`` after collecting every offending key. A warning
    event is produced for each blocked key under every policy.
    """

    result = FilteredEnvironment()
    blocked: list[str] = []
    for name, value in (overrides or {}).items():
        if not is_blocked_env_var(name):
            result.env[name] = value
            continue

        blocked.append(name)
        message = (
            f"Environment variable {name} for {target} can hijack process startup "
            f"(policy: {policy.value})"
        )
        logger.warning("[Security] %s", message)
        result.warnings.append(
            SecurityWarning(
                variable=name,
                target=target,
                message=message,
                details={"policy": policy.value},
            ),
        )
        if policy is EnvVarPolicy.WARN:
            result.env[name] = value

    if blocked and policy is EnvVarPolicy.BLOCK:
        raise BlockedEnvironmentError(
            f"Blocked environment variables for {target}: {', '.join(sorted(blocked))}",
        )
    return result
