"""Boundary-checked writes of provider output files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from omc_dispatch.config import OutputSettings
from omc_dispatch.models import ErrorToken, OutputPathPolicy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SafeWriteResult:
    """Outcome of a guarded output write, or of planning one."""

    success: bool
    actual_path: Path | None = None
    redirected: bool = False
    error_token: ErrorToken | None = None
    error_message: str | None = None


class OutputPathGuard:
    """Write files only inside one working-directory boundary.

    Under ``strict`` policy an out-of-boundary request is rejected before
    anything touches the disk. Under ``redirect_output`` it is rewritten to
    ``<boundary>/<redirect_dir>/<basename>``. Every write is re-checked against
    the real path afterwards and removed if a symlink moved it outside.
    """

    def __init__(self, *, boundary: Path, settings: OutputSettings) -> None:
        self.boundary = boundary
        self.settings = settings

    def plan(self, output_file: str | Path) -> SafeWriteResult:
        """Resolve where ``output_file`` would be written without touching the disk."""

        requested = os.fspath(output_file)
        try:
            boundary = self._real_boundary()
            target = _resolve_real(boundary / requested)
        except OSError as error:
            return _failure(
                ErrorToken.PATH_RESOLUTION_FAILED,
                f"Failed to resolve output path {requested!r}: {error}",
            )

        if _is_within(boundary, target):
            return SafeWriteResult(success=True, actual_path=target)

        basename = os.path.basename(os.path.normpath(requested))
        if self.settings.path_policy is OutputPathPolicy.STRICT:
            logger.warning(
                "Rejected output path outside working directory: %s (boundary %s)",
                target,
                boundary,
            )
            return _failure(
                ErrorToken.PATH_OUTSIDE_WORKDIR_OUTPUT,
                (
                    "Output file path resolves outside the working directory.\n"
                    f"Requested: {requested}\n"
                    f"Working directory: {boundary}\n"
                    f"Suggested: use '{self.settings.redirect_dir}/{basename or 'output.md'}' "
                    "or set OMC_MCP_OUTPUT_PATH_POLICY=redirect_output"
                ),
            )
        if basename in {"", ".", ".."}:
            return _failure(
                ErrorToken.PATH_RESOLUTION_FAILED,
                f"Output path {requested!r} has no usable file name to redirect.",
            )
        try:
            target = _resolve_real(boundary / self.settings.redirect_dir / basename)
        except OSError as error:
            return _failure(
                ErrorToken.PATH_RESOLUTION_FAILED,
                f"Failed to resolve redirect directory: {error}",
            )
        if not _is_within(boundary, target):
            return _failure(
                ErrorToken.PATH_OUTSIDE_WORKDIR_OUTPUT,
                f"Redirect directory {self.settings.redirect_dir!r} escapes {boundary}",
            )
        logger.info("Redirected output %s to %s", requested, target)
        return SafeWriteResult(success=True, actual_path=target, redirected=True)

    def write(self, output_file: str | Path, content: str) -> SafeWriteResult:
        plan = self.plan(output_file)
        if not plan.success or plan.actual_path is None:
            return plan
        target = plan.actual_path
        try:
            boundary = self._real_boundary()
            _ensure_directory(target.parent, boundary)
            target.write_text(content, encoding="utf-8")
        except _BoundaryEscapeError as error:
            return _failure(ErrorToken.PATH_OUTSIDE_WORKDIR_OUTPUT, str(error))
        except OSError as error:
            return _failure(
                ErrorToken.WRITE_FAILED,
                f"Failed to write output file {target}: {error}",
            )

        written = Path(os.path.realpath(target))
        if not _is_within(boundary, written):
            logger.warning("Output file escaped working directory after write: %s", written)
            try:
                target.unlink()
            except OSError as error:
                logger.warning("Failed to remove escaped output file %s: %s", target, error)
            return _failure(
                ErrorToken.PATH_OUTSIDE_WORKDIR_OUTPUT,
                f"Output file resolved outside working directory after write: {written}",
            )

        return SafeWriteResult(success=True, actual_path=written, redirected=plan.redirected)

    def _real_boundary(self) -> Path:
        return Path(os.path.realpath(self.boundary, strict=True))


class _BoundaryEscapeError(OSError):
    pass


def _failure(token: ErrorToken, message: str) -> SafeWriteResult:
    return SafeWriteResult(success=False, error_token=token, error_message=message)


def _resolve_real(path: Path) -> Path:
    """Real path of ``path`` even when its tail does not exist yet."""

    absolute = Path(os.path.normpath(os.path.abspath(path)))
    existing = absolute
    missing: list[str] = []
    while not os.path.lexists(existing):
        if existing.parent == existing:
            break
        missing.append(existing.name)
        existing = existing.parent
    resolved = Path(os.path.realpath(existing))
    for part in reversed(missing):
        resolved = resolved / part
    return resolved


def _ensure_directory(directory: Path, boundary: Path) -> None:
    if not _is_within(boundary, _resolve_real(directory)):
        raise _BoundaryEscapeError(f"Refusing to create directory outside {boundary}: {directory}")
    directory.mkdir(parents=True, exist_ok=True)
    if not _is_within(boundary, Path(os.path.realpath(directory))):
        raise _BoundaryEscapeError(f"Directory resolved outside {boundary}: {directory}")


def _is_within(boundary: Path, target: Path) -> bool:
    return target == boundary or target.is_relative_to(boundary)
