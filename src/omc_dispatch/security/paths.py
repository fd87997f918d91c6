"""Path containment checks for declared resources and working directories."""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)


def is_path_within(base: str | Path, target: str | Path) -> bool:
    """True when ``target`` (relative to ``base`` if not absolute) stays inside ``base``.

    The lexical check catches ``..`` segments; when the target exists its real
    path is compared against the real base as well so symlinks cannot escape.
    """

    base_abs = os.path.abspath(base)
    candidate = os.path.normpath(os.path.join(base_abs, os.fspath(target)))
    if not _is_contained(base_abs, candidate):
        return False
    if os.path.lexists(candidate):
        try:
            real_base = os.path.realpath(base_abs, strict=True)
            real_candidate = os.path.realpath(candidate, strict=True)
        except OSError:
            return False
        return _is_contained(real_base, real_candidate)
    return True


def validate_resource_paths(
    base: str | Path,
    paths: str | Path | Sequence[str | Path],
    *,
    label: str = "resource",
) -> bool:
    """Check one path or every member of a list; the whole set fails on the first escape."""

    members = [paths] if isinstance(paths, str | Path) else list(paths)
    for member in members:
        if not is_path_within(base, member):
            logger.warning(
                "[Security] Path traversal detected in %s: %s escapes %s",
                label,
                member,
                base,
            )
            return False
    return True


def find_worktree_root(start: str | Path) -> Path | None:
    """Nearest ancestor of ``start`` (inclusive) that contains a ``.git`` entry."""

    current = Path(start).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _is_contained(base: str, candidate: str) -> bool:
    if candidate == base:
        return True
    prefix = base if base.endswith(os.sep) else base + os.sep
    return candidate.startswith(prefix)
