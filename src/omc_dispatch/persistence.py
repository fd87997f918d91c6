"""Prompt and response artifacts under ``<root>/.omc/prompts``."""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from omc_dispatch.models import JobRecord, Provider, to_iso, utc_now

logger = logging.getLogger(__name__)

PROMPTS_SUBDIR = Path(".omc") / "prompts"
MAX_SLUG_LENGTH = 40
JOB_ID_PATTERN = re.compile(r"^[0-9a-f]{8}$")
_ID_ATTEMPTS = 5
_FRONTMATTER_PATTERN = re.compile(r"^---\n.*?\n---\n\n", re.DOTALL)


def slugify(text: str | None, max_words: int = 4) -> str:
    """Filesystem-safe slug from the first ``max_words`` words of ``text``."""

    if not text or not isinstance(text, str):
        return "prompt"
    words = text.strip().split()[:max_words]
    slug = "-".join(words).lower()
    slug = re.sub(r"[^a-z0-9-]", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if len(slug) > MAX_SLUG_LENGTH:
        slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "prompt"


def generate_job_id() -> str:
    return secrets.token_hex(4)


def is_valid_job_id(job_id: str) -> bool:
    return bool(JOB_ID_PATTERN.match(job_id))


@dataclass(slots=True)
class PersistedPrompt:
    """Location and identity of a written prompt artifact."""

    file_path: Path
    job_id: str
    slug: str


@dataclass(slots=True)
class ResponseReadiness:
    """Response-file presence together with the recorded job status."""

    ready: bool
    response_path: Path
    status: JobRecord | None = None


class PromptStore:
    """Write-once prompt/response artifacts with a front-matter header."""

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def prompts_dir(self) -> Path:
        return self.root / PROMPTS_SUBDIR

    def prompt_path(self, provider: Provider, slug: str, job_id: str) -> Path:
        return self.prompts_dir / f"{provider.value}-prompt-{slug}-{job_id}.md"

    def expected_response_path(self, provider: Provider, slug: str, job_id: str) -> Path:
        return self.prompts_dir / f"{provider.value}-response-{slug}-{job_id}.md"

    def status_file_path(self, provider: Provider, slug: str, job_id: str) -> Path:
        return self.prompts_dir / f"{provider.value}-status-{slug}-{job_id}.json"

    def persist_prompt(  # noqa: PLR0913
        self,
        *,
        provider: Provider,
        agent_role: str,
        model: str,
        prompt: str,
        full_prompt: str,
        files: Sequence[str] = (),
    ) -> PersistedPrompt | None:
        """Write the assembled prompt; returns None (and logs) when the write fails."""

        slug = slugify(prompt)
        try:
            self.prompts_dir.mkdir(parents=True, exist_ok=True)
            for _ in range(_ID_ATTEMPTS):
                job_id = generate_job_id()
                file_path = self.prompt_path(provider, slug, job_id)
                if not self._id_in_use(provider, job_id):
                    break
                logger.info("Job id collision for %s %s, regenerating", provider.value, job_id)
            else:
                raise FileExistsError(f"Could not allocate a unique job id for {provider.value}")

            header = _frontmatter(
                [
                    ("provider", provider.value),
                    ("agent_role", agent_role),
                    ("model", model),
                ],
                files=files,
            )
            with file_path.open("x", encoding="utf-8") as handle:
                handle.write(f"{header}\n\n{full_prompt}")
        except OSError as error:
            logger.warning("Failed to persist prompt: %s", error)
            return None
        return PersistedPrompt(file_path=file_path, job_id=job_id, slug=slug)

    def persist_response(  # noqa: PLR0913
        self,
        *,
        provider: Provider,
        agent_role: str,
        model: str,
        job_id: str,
        slug: str,
        response: str,
        used_fallback: bool = False,
        fallback_model: str | None = None,
    ) -> Path | None:
        """Write the response next to its prompt; returns None (and logs) on failure."""

        fields: list[tuple[str, str | bool]] = [
            ("provider", provider.value),
            ("agent_role", agent_role),
            ("model", model),
            ("prompt_id", job_id),
        ]
        if used_fallback and fallback_model:
            fields.append(("used_fallback", True))
            fields.append(("fallback_model", fallback_model))
        file_path = self.expected_response_path(provider, slug, job_id)
        try:
            self.prompts_dir.mkdir(parents=True, exist_ok=True)
            file_path.write_text(f"{_frontmatter(fields)}\n\n{response}", encoding="utf-8")
        except OSError as error:
            logger.warning("Failed to persist response: %s", error)
            return None
        return file_path

    def read_completed_response(
        self,
        provider: Provider,
        slug: str,
        job_id: str,
    ) -> str | None:
        """Response body without its header, or None when it has not been written."""

        path = self.expected_response_path(provider, slug, job_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.warning("Failed to read response %s: %s", path, error)
            return None
        return _FRONTMATTER_PATTERN.sub("", content, count=1)

    def response_exists(self, provider: Provider, slug: str, job_id: str) -> bool:
        return self.expected_response_path(provider, slug, job_id).is_file()

    def check_response_ready(self, provider: Provider, slug: str, job_id: str) -> ResponseReadiness:
        """Whether the response file exists, plus whatever the status file says."""

        response_path = self.expected_response_path(provider, slug, job_id)
        status: JobRecord | None = None
        status_path = self.status_file_path(provider, slug, job_id)
        try:
            status = JobRecord.from_json_dict(json.loads(status_path.read_text(encoding="utf-8")))
        except FileNotFoundError:
            status = None
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Unreadable status file %s: %s", status_path.name, error)
        return ResponseReadiness(
            ready=response_path.is_file(),
            response_path=response_path,
            status=status,
        )

    def find_response(self, provider: Provider, job_id: str) -> tuple[str, Path] | None:
        """Locate a response file by job id alone, returning ``(slug, path)``."""

        prefix = f"{provider.value}-response-"
        suffix = f"-{job_id}.md"
        try:
            candidates = sorted(self.prompts_dir.glob(f"{prefix}*{suffix}"))
        except OSError as error:
            logger.warning("Failed to scan prompts directory: %s", error)
            return None
        for path in candidates:
            slug = path.name[len(prefix) : -len(suffix)]
            if slug:
                return slug, path
        return None

    def _id_in_use(self, provider: Provider, job_id: str) -> bool:
        return any(self.prompts_dir.glob(f"{provider.value}-*-{job_id}.*"))


def _frontmatter(fields: Sequence[tuple[str, str | bool]], *, files: Sequence[str] = ()) -> str:
    lines = ["---"]
    for name, value in fields:
        rendered = "true" if value is True else json.dumps(value)
        lines.append(f"{name}: {rendered}")
    if files:
        lines.append("files:")
        lines.extend(f"  - {json.dumps(path)}" for path in files)
    lines.append(f"timestamp: {json.dumps(to_iso(utc_now()))}")
    lines.append("---")
    return "\n".join(lines)
